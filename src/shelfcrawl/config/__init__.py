"""Configuration models and loaders."""

from .config import (
    CheckpointConfig,
    CircuitBreakerConfig,
    Config,
    CrawlLimits,
    HttpConfig,
    MonitoringConfig,
    PaginationConfig,
    ThrottleConfig,
    find_config_file,
    settings,
)

__all__ = [
    "CheckpointConfig",
    "CircuitBreakerConfig",
    "Config",
    "CrawlLimits",
    "HttpConfig",
    "MonitoringConfig",
    "PaginationConfig",
    "ThrottleConfig",
    "find_config_file",
    "settings",
]
