"""
Defines and manages Prometheus metrics for the crawl control plane.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric creation so repeated imports during the test
# suite reuse the registered collectors instead of raising.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, use the collector that won.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "throttle_wait_seconds": Histogram(
            "shelfcrawl_throttle_wait_seconds",
            "Time spent waiting for a per-domain throttle slot",
            buckets=[0.0, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 300.0],
        ),
        "throttle_active_requests": Gauge(
            "shelfcrawl_throttle_active_requests",
            "Requests currently holding a throttle slot",
            ["domain"],
        ),
        "throttle_failures_total": Counter(
            "shelfcrawl_throttle_failures_total",
            "Failures reported to the throttle by status class",
            ["status"],
        ),
        "domain_blocks_total": Counter(
            "shelfcrawl_domain_blocks_total",
            "Times a domain was blocked after a 403",
        ),
        "circuit_state": Gauge(
            "shelfcrawl_circuit_state",
            "Circuit breaker state (0 closed, 1 half-open, 2 open)",
        ),
        "circuit_transitions_total": Counter(
            "shelfcrawl_circuit_transitions_total",
            "Circuit breaker state transitions",
            ["to_state"],
        ),
        "pagination_steps_total": Counter(
            "shelfcrawl_pagination_steps_total",
            "Pagination advance attempts by mechanism and outcome",
            ["pagination_type", "outcome"],
        ),
        "categories_processed_total": Counter(
            "shelfcrawl_categories_processed_total",
            "Categories extracted by outcome",
            ["outcome"],
        ),
        "items_extracted_total": Counter(
            "shelfcrawl_items_extracted_total",
            "Unique product records extracted",
        ),
        "checkpoint_writes_total": Counter(
            "shelfcrawl_checkpoint_writes_total",
            "Checkpoint store writes by outcome",
            ["outcome"],
        ),
        "jobs_total": Counter(
            "shelfcrawl_jobs_total",
            "Crawl jobs by final status",
            ["status"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Exposes the metric registry over HTTP."""

    def __init__(self, port: Optional[int] = None) -> None:
        self.port = port
        self.started = False
        self.logger = structlog.get_logger(self.__class__.__name__)

    def start(self) -> bool:
        if self.started or self.port is None:
            return self.started
        try:
            start_http_server(self.port)
        except OSError as e:
            self.logger.warning("Could not start metrics exporter", port=self.port, error=str(e))
            return False
        self.started = True
        self.logger.info("Metrics exporter listening", port=self.port)
        return True
