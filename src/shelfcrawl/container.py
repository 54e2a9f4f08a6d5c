"""
Dependency container wiring shelfcrawl components from configuration.
"""

from __future__ import annotations

import asyncio
import importlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from shelfcrawl.checkpoint import (
    CheckpointStore,
    CrawlCheckpoint,
    JsonFileCheckpointStore,
    MemoryCheckpointStore,
    SQLiteCheckpointStore,
)
from shelfcrawl.config import Config
from shelfcrawl.crawler import DomainThrottle, HttpPageFactory
from shelfcrawl.crawler.html_collaborators import LinkCategoryDiscovery, ProductLinkExtractor
from shelfcrawl.orchestrator import CrawlOrchestrator
from shelfcrawl.pagination import PaginationController
from shelfcrawl.protocols import CategoryExplorer, ListingExtractor, NavigationDiscovery, PageFactory

T = TypeVar("T")

DEFAULT_COLLABORATORS = "shelfcrawl.container:default_collaborators"


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance, awaiting its ``initialize()`` if it has one."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            initialize = getattr(self._instance, "initialize", None)
            if callable(initialize):
                await initialize()
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        close = getattr(self._instance, "close", None)
        if self._instance is not None and callable(close):
            await close()
        self._instance = None
        self._initialized = False


@dataclass
class Collaborators:
    """Site-specific discovery and extraction strategies for one crawl."""

    navigator: NavigationDiscovery
    explorer: CategoryExplorer
    extractor: ListingExtractor


def default_collaborators(pages: PageFactory, config: Config) -> Collaborators:
    """Link-following collaborators that work on plain server-rendered HTML."""
    discovery = LinkCategoryDiscovery(pages, max_links=config.crawl.max_categories_per_level * 4)
    return Collaborators(navigator=discovery, explorer=discovery, extractor=ProductLinkExtractor())


def load_collaborator_factory(path: str) -> Callable[[PageFactory, Config], Collaborators]:
    """
    Resolve a ``module:attribute`` reference to a collaborator factory.

    Raises:
        ValueError: the reference is malformed or does not name a callable.
        ImportError: the module cannot be imported.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Collaborator factory must look like 'module:factory', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ValueError(f"{path!r} is not callable")
    return factory


def build_store(config: Config) -> CheckpointStore:
    backend = config.checkpoint.backend
    if backend == "memory":
        return MemoryCheckpointStore()
    if backend == "sqlite":
        path = config.checkpoint.path
        return SQLiteCheckpointStore(path if path.suffix else path / "checkpoints.db")
    return JsonFileCheckpointStore(config.checkpoint.path)


class DependencyContainer:
    """
    Builds and owns the long-lived components of a crawl process.

    Components are created lazily from the loaded Config and released in
    ``shutdown()``. The throttle is shared by every orchestrator the
    container builds, so all jobs against one domain respect the same pacing.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Config] = None) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.container_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
            checkpoint_backend=self.require_config().checkpoint.backend,
        )

    def load_config(self) -> Config:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()
        return self.config

    def require_config(self) -> Config:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")
        return self.config

    def _create_instances(self) -> None:
        config = self.require_config()
        self._instances = {
            "throttle": LazyInstance(DomainThrottle.from_config, config.throttle, config.circuit_breaker),
            "pagination": LazyInstance(PaginationController, config.pagination),
            "store": LazyInstance(build_store, config),
            "pages": LazyInstance(
                HttpPageFactory, config.http, navigation_timeout_ms=config.pagination.navigation_timeout_ms
            ),
        }

    async def _get(self, name: str) -> Any:
        async with self._instances_lock:
            return await self._instances[name].get()

    async def get_throttle(self) -> DomainThrottle:
        return await self._get("throttle")

    async def get_pagination(self) -> PaginationController:
        return await self._get("pagination")

    async def get_store(self) -> CheckpointStore:
        return await self._get("store")

    async def get_page_factory(self) -> HttpPageFactory:
        return await self._get("pages")

    async def get_checkpoints(self) -> CrawlCheckpoint:
        store = await self.get_store()
        return CrawlCheckpoint(store, ttl=timedelta(days=self.require_config().checkpoint.ttl_days))

    async def build_orchestrator(self, collaborators: Optional[Collaborators] = None) -> CrawlOrchestrator:
        """Assemble an orchestrator; without collaborators the link-following defaults are used."""
        config = self.require_config()
        pages = await self.get_page_factory()
        if collaborators is None:
            collaborators = default_collaborators(pages, config)
        return CrawlOrchestrator(
            throttle=await self.get_throttle(),
            pagination=await self.get_pagination(),
            checkpoints=await self.get_checkpoints(),
            navigator=collaborators.navigator,
            explorer=collaborators.explorer,
            extractor=collaborators.extractor,
            pages=pages,
            retry_attempts=config.checkpoint.persist_retry_attempts,
            retry_min_wait=config.checkpoint.persist_retry_min_wait,
            retry_max_wait=config.checkpoint.persist_retry_max_wait,
            navigation_timeout_ms=config.pagination.navigation_timeout_ms,
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", container_id=self.container_id)
        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()
        self.is_running = False

    async def _cleanup_instances(self) -> None:
        for name, instance in self._instances.items():
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "container_id": self.container_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_initialized": sorted(name for name, lazy in self._instances.items() if lazy.initialized),
            "config_path": str(self.config_path) if self.config_path else None,
        }
