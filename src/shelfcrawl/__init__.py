"""
shelfcrawl - resumable, throttled crawl control plane for e-commerce catalogs.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .orchestrator import CrawlOrchestrator, JobResult, JobSpec

__all__ = ["__version__", "Config", "CrawlOrchestrator", "DependencyContainer", "JobResult", "JobSpec"]
