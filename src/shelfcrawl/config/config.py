"""
Configuration management for shelfcrawl using Pydantic.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, ClassVar, Literal, Optional, cast

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class ThrottleConfig(BaseModel):
    """Per-domain pacing."""

    default_delay_ms: int = Field(default=2000, ge=0, description="Starting inter-request delay per domain.")
    min_delay_ms: int = Field(default=1000, ge=0, description="Floor for the adaptive delay.")
    max_delay_ms: int = Field(default=10000, ge=0, description="Ceiling for the adaptive delay.")
    max_concurrent_per_host: int = Field(default=2, ge=1, description="Concurrent requests allowed per domain.")
    jitter_ratio: float = Field(default=0.2, ge=0.0, lt=1.0, description="Random +/- spread applied to delays.")
    block_cooldown_seconds: float = Field(default=900.0, ge=0.0, description="How long a 403 blocks a domain.")
    success_decay: float = Field(default=0.9, gt=0.0, le=1.0, description="Delay multiplier applied on success.")
    target_response_time_ms: int = Field(
        default=2000, ge=1, description="Average response time above which the delay grows."
    )
    response_time_adaptation: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Share of the response-time overshoot added to the delay."
    )
    max_adaptation: float = Field(
        default=5.0, ge=1.0, description="Cap for response-time growth, as a multiple of the default delay."
    )
    idle_domain_ttl_seconds: float = Field(
        default=3600.0, ge=0.0, description="Idle time after which a domain's pacing state is dropped."
    )

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "ThrottleConfig":
        if self.min_delay_ms > self.max_delay_ms:
            raise ValueError("min_delay_ms must not exceed max_delay_ms")
        if not self.min_delay_ms <= self.default_delay_ms <= self.max_delay_ms:
            raise ValueError("default_delay_ms must lie between min_delay_ms and max_delay_ms")
        return self


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=60.0, ge=0.0)
    monitoring_window_seconds: float = Field(
        default=300.0, ge=0.0, description="Failure count resets after this long without a failure."
    )
    half_open_max_calls: int = Field(default=1, ge=1, description="Trial requests admitted while HALF_OPEN.")


class PaginationConfig(BaseModel):
    """Pagination mechanics shared by every listing traversal."""

    scroll_delay_ms: int = Field(default=2000, ge=0, description="Wait after a load-more click or scroll.")
    navigation_timeout_ms: int = Field(default=10000, ge=1, description="Timeout for a single page navigation.")
    empty_page_threshold: int = Field(default=1, ge=1, description="Consecutive empty steps before stopping.")
    item_selector: str = Field(
        default='a[href*="/product/"], a[href*="/item/"], a[href*="/p/"], a[href*="/products/"]',
        description="Selector used to count listing items for load-more and infinite scroll.",
    )


class CrawlLimits(BaseModel):
    """Per-job limits. Job submissions may override any of them."""

    max_depth: int = Field(default=4, ge=0, description="Maximum category expansion depth.")
    max_categories_per_level: int = Field(default=15, ge=1)
    max_pages: int = Field(default=20, ge=1, description="Maximum listing pages per category.")
    max_products_per_category: int = Field(default=500, ge=1)
    parallel_categories: int = Field(default=3, ge=1, description="Categories extracted concurrently.")


class CheckpointConfig(BaseModel):
    """Checkpoint persistence."""

    backend: Literal["memory", "json", "sqlite"] = Field(default="json")
    path: Path = Field(default=Path("checkpoints"), description="Directory (json) or database file (sqlite).")
    ttl_days: int = Field(default=30, ge=1, description="Checkpoint lifetime before it expires.")
    persist_retry_attempts: int = Field(default=3, ge=1)
    persist_retry_min_wait: float = Field(default=0.5, ge=0.0)
    persist_retry_max_wait: float = Field(default=8.0, ge=0.0)


class HttpConfig(BaseModel):
    """Settings for the bundled static-HTML page adapter."""

    user_agent: str = Field(default="shelfcrawl/0.1 (+https://example.invalid/shelfcrawl)")
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_connections: int = Field(default=20, ge=1)


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: Optional[int] = Field(default=None, description="Port for the metrics exporter. None to disable.")

    @field_validator("log_level")
    @classmethod
    def normalise_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Model ---


class Config(BaseSettings):
    project_name: str = "shelfcrawl"
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    crawl: CrawlLimits = Field(default_factory=CrawlLimits)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="SHELFCRAWL_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls()
        return cls(**yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("shelfcrawl.yaml", "shelfcrawl.yml", "config.yaml", "config.yml"):
        path = current_dir / name
        if path.exists():
            return path
    return None


# --- Lazy Configuration Loader ---


class LazyConfig:
    """
    A proxy for the Config object that delays loading and validation until an
    attribute is first accessed, so a bad config file cannot break imports.
    """

    _config: ClassVar[Config | None] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __getattr__(self, name: str) -> Any:
        if self.__class__._config is None:
            with self.__class__._lock:
                if self.__class__._config is None:
                    self.__class__._config = self._load_config_with_fallback()
        return getattr(self.__class__._config, name)

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._config = None

    def _load_config_with_fallback(self) -> Config:
        config_path = find_config_file()
        if config_path:
            try:
                log.info("Lazy loading configuration from: %s", config_path)
                return Config.from_yaml(config_path)
            except (ValidationError, FileNotFoundError, yaml.YAMLError) as e:
                log.error(
                    "Failed to load configuration from '%s': %s. Falling back to default settings.",
                    config_path,
                    e,
                    exc_info=log.getEffectiveLevel() <= logging.DEBUG,
                )
        else:
            log.info("No config file found. Using default settings for lazy load.")

        try:
            return Config()
        except ValidationError as e:
            log.critical("FATAL: Default configuration is invalid: %s", e, exc_info=True)
            raise RuntimeError(f"Default configuration is invalid, cannot start: {e}") from e


# --- Global Settings Instance ---
settings: "Config" = cast("Config", LazyConfig())
