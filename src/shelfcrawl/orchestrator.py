"""
Crawl orchestration for shelfcrawl.

A job runs through four checkpointed stages: navigation discovery, category
expansion, paginated extraction and finalize. The checkpoint's
``pipeline_step`` records the next stage to run, so a restarted job picks up
where the last one stopped and skips categories already processed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar
from uuid import uuid4

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from shelfcrawl.checkpoint import CheckpointRecord, CheckpointStatus, CrawlCheckpoint, JobType, PipelineStep, utcnow
from shelfcrawl.config import CrawlLimits
from shelfcrawl.crawler.throttle import DomainThrottle, domain_of, signals_backoff
from shelfcrawl.exceptions import (
    ExtractionError,
    NavigationError,
    PersistenceError,
    ShelfCrawlError,
    ThrottleRejected,
    describe_error,
)
from shelfcrawl.observability import increment
from shelfcrawl.pagination import PaginationController, PaginationSession
from shelfcrawl.protocols import (
    CategoryExplorer,
    CategoryLink,
    CategoryNode,
    ListingExtractor,
    NavigationDiscovery,
    PageFactory,
    PageInteraction,
    ProcessingStatus,
)

T = TypeVar("T")

REQUIRED_FIELDS = ("title", "price", "url")
OPTIONAL_FIELDS = ("description", "images", "availability")
REQUIRED_WEIGHT = 0.7
OPTIONAL_WEIGHT = 0.3


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) > 0
    return True


def data_quality_score(items: Sequence[Mapping[str, Any]]) -> float:
    """
    Average field completeness of extracted product records.

    Required fields (title, price, url) carry 70% of an item's score and
    optional fields (description, images, availability) the remaining 30%.
    Returns 0.0 for an empty collection, otherwise a value in [0, 1] rounded
    to two decimals.
    """
    if not items:
        return 0.0
    total = 0.0
    for item in items:
        required = sum(1 for name in REQUIRED_FIELDS if _present(item.get(name))) / len(REQUIRED_FIELDS)
        optional = sum(1 for name in OPTIONAL_FIELDS if _present(item.get(name))) / len(OPTIONAL_FIELDS)
        total += required * REQUIRED_WEIGHT + optional * OPTIONAL_WEIGHT
    return round(total / len(items), 2)


@dataclass
class JobSpec:
    """What to crawl and within which limits."""

    root_url: str
    job_id: str = field(default_factory=lambda: str(uuid4()))
    job_type: JobType = JobType.PRODUCT_CATALOG
    limits: CrawlLimits = field(default_factory=CrawlLimits)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    deadline_seconds: Optional[float] = None

    @property
    def domain(self) -> str:
        return domain_of(self.root_url)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class CategoryResult:
    """Outcome of extracting one category during this run."""

    url: str
    name: str
    status: ProcessingStatus
    items: List[Dict[str, Any]] = field(default_factory=list)
    pages_visited: int = 0
    pagination: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "name": self.name,
            "status": self.status.value,
            "items": len(self.items),
            "pages_visited": self.pages_visited,
            "pagination": self.pagination,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class JobResult:
    """Summary reported to whoever submitted the job."""

    job_id: str
    checkpoint_id: Optional[str]
    status: ProcessingStatus
    pipeline_step: int = PipelineStep.NAVIGATION.value
    categories_discovered: int = 0
    categories_processed: int = 0
    successful_categories: int = 0
    failed_categories: int = 0
    total_items: int = 0
    data_quality_score: float = 0.0
    duration_seconds: float = 0.0
    resumed: bool = False
    message: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    categories: List[CategoryResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "checkpoint_id": self.checkpoint_id,
            "status": self.status.value,
            "pipeline_step": self.pipeline_step,
            "categories_discovered": self.categories_discovered,
            "categories_processed": self.categories_processed,
            "successful_categories": self.successful_categories,
            "failed_categories": self.failed_categories,
            "total_items": self.total_items,
            "data_quality_score": self.data_quality_score,
            "duration_seconds": round(self.duration_seconds, 3),
            "resumed": self.resumed,
            "message": self.message,
            "errors": self.errors,
            "categories": [category.to_dict() for category in self.categories],
        }


class CrawlOrchestrator:
    """
    Runs crawl jobs against injected collaborators.

    Every page fetch goes through a throttle slot for the job's domain.
    Per-category failures are recorded and the job carries on; failures of
    shared infrastructure (navigation of the root page, the checkpoint
    store) fail the job and leave the checkpoint resumable.

    Args:
        throttle: Shared per-domain throttle.
        pagination: Pagination controller used for every listing.
        checkpoints: Checkpoint manager over the configured store.
        navigator: Finds top-level categories.
        explorer: Expands a category into subcategories.
        extractor: Extracts product records from a loaded listing page.
        pages: Opens page handles for listing traversal.
        retry_attempts: Attempts per checkpoint write before the job fails.
        retry_min_wait: Initial backoff between checkpoint write attempts.
        retry_max_wait: Backoff ceiling between checkpoint write attempts.
        slot_timeout: Seconds to wait for a throttle slot; ``None`` waits.
        navigation_timeout_ms: Passed to ``PageInteraction.navigate``.
    """

    def __init__(
        self,
        *,
        throttle: DomainThrottle,
        pagination: PaginationController,
        checkpoints: CrawlCheckpoint,
        navigator: NavigationDiscovery,
        explorer: CategoryExplorer,
        extractor: ListingExtractor,
        pages: PageFactory,
        retry_attempts: int = 3,
        retry_min_wait: float = 0.5,
        retry_max_wait: float = 8.0,
        slot_timeout: Optional[float] = None,
        navigation_timeout_ms: Optional[int] = None,
    ) -> None:
        self.throttle = throttle
        self.pagination = pagination
        self.checkpoints = checkpoints
        self.navigator = navigator
        self.explorer = explorer
        self.extractor = extractor
        self.pages = pages
        self.retry_attempts = max(1, retry_attempts)
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait
        self.slot_timeout = slot_timeout
        self.navigation_timeout_ms = navigation_timeout_ms
        self.logger = structlog.get_logger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def run(self, job: JobSpec) -> JobResult:
        """
        Run or resume a job and return its summary.

        Raises:
            CheckpointValidationError: the checkpoint could not be created or
                updated with valid data. Never retried.
        """
        structlog.contextvars.bind_contextvars(job_id=job.job_id)
        try:
            result = await self._run(job, time.monotonic())
        finally:
            structlog.contextvars.unbind_contextvars("job_id", "checkpoint_id")
        increment("jobs_total", labels={"status": result.status.value})
        return result

    async def _run(self, job: JobSpec, started: float) -> JobResult:
        record, resumed = await self._open_checkpoint(job)
        structlog.contextvars.bind_contextvars(checkpoint_id=record.checkpoint_id)

        if record.status is CheckpointStatus.COMPLETED:
            self.logger.info("Job already completed", checkpoint_id=record.checkpoint_id)
            return self._summarise(
                job, record, ProcessingStatus.COMPLETED, started, resumed=True, message="already completed"
            )

        self.logger.info(
            "Starting crawl job",
            root_url=job.root_url,
            domain=job.domain,
            pipeline_step=record.pipeline_step,
            resumed=resumed,
        )
        categories: List[CategoryResult] = []
        deferred = 0
        try:
            async with asyncio.timeout(job.deadline_seconds):
                if record.pipeline_step <= PipelineStep.NAVIGATION.value and not job.cancelled:
                    record = await self._discover(job, record)
                if record.pipeline_step == PipelineStep.CATEGORY_EXPANSION.value and not job.cancelled:
                    record = await self._expand(job, record)
                if record.pipeline_step == PipelineStep.EXTRACTION.value and not job.cancelled:
                    categories = await self._extract(job, record)
                    record = await self._persist(self.checkpoints.load, record.checkpoint_id)
                    deferred = sum(1 for category in categories if category.status is ProcessingStatus.DEFERRED)
                    if not job.cancelled and not deferred:
                        record = await self._persist(
                            self.checkpoints.record_progress,
                            record.checkpoint_id,
                            pipeline_step=PipelineStep.FINALIZE.value,
                        )
        except TimeoutError:
            self.logger.warning("Job deadline exceeded", deadline_seconds=job.deadline_seconds)
            record = await self._reload(record)
            return self._summarise(
                job, record, ProcessingStatus.CANCELLED, started, resumed, "deadline exceeded", categories
            )
        except ThrottleRejected as e:
            self.logger.warning("Job deferred by throttle", reason=str(e), pipeline_step=record.pipeline_step)
            record = await self._reload(record)
            return self._summarise(job, record, ProcessingStatus.DEFERRED, started, resumed, str(e), categories)
        except (NavigationError, PersistenceError) as e:
            return await self._fail(job, record, e, started, resumed, categories)

        if job.cancelled:
            self.logger.info("Job cancelled", pipeline_step=record.pipeline_step)
            return self._summarise(job, record, ProcessingStatus.CANCELLED, started, resumed, "cancelled", categories)
        if deferred:
            self.logger.warning("Categories deferred by throttle, checkpoint left active", deferred=deferred)
            message = f"{deferred} categories deferred by throttle"
            return self._summarise(job, record, ProcessingStatus.DEFERRED, started, resumed, message, categories)

        try:
            record = await self._persist(self.checkpoints.mark_completed, record.checkpoint_id)
        except PersistenceError as e:
            return await self._fail(job, record, e, started, resumed, categories)

        result = self._summarise(job, record, ProcessingStatus.COMPLETED, started, resumed, None, categories)
        self.logger.info(
            "Crawl job completed",
            categories=result.categories_processed,
            failed_categories=result.failed_categories,
            items=result.total_items,
            data_quality_score=result.data_quality_score,
            duration_seconds=round(result.duration_seconds, 2),
        )
        return result

    async def _open_checkpoint(self, job: JobSpec) -> Tuple[CheckpointRecord, bool]:
        """Resume the job's latest checkpoint when possible, otherwise start a new one."""
        latest = await self._persist(self.checkpoints.find_latest, job.job_id)
        fields: Dict[str, Any] = {
            "site_domain": job.domain,
            "job_type": job.job_type,
            "job_id": job.job_id,
            "metadata": {"root_url": job.root_url},
        }
        if latest is None:
            return await self._persist(self.checkpoints.create, **fields), False

        if latest.status is CheckpointStatus.ACTIVE:
            if not self.checkpoints.is_expired(latest):
                self.logger.info(
                    "Resuming checkpoint",
                    checkpoint_id=latest.checkpoint_id,
                    pipeline_step=latest.pipeline_step,
                    processed=len(latest.pipeline_data.urls_processed),
                )
                return latest, True
            await self._persist(self.checkpoints.mark_expired, latest.checkpoint_id)
            self.logger.info("Checkpoint expired, starting over", checkpoint_id=latest.checkpoint_id)
        elif latest.status is CheckpointStatus.COMPLETED:
            return latest, True
        elif latest.status is CheckpointStatus.FAILED:
            fields["pipeline_step"] = latest.pipeline_step
            fields["pipeline_data"] = latest.pipeline_data.model_dump()
            fields["metadata"]["resumed_from"] = latest.checkpoint_id
            record = await self._persist(self.checkpoints.create, **fields)
            self.logger.info(
                "Retrying failed job from its checkpoint",
                failed_checkpoint_id=latest.checkpoint_id,
                checkpoint_id=record.checkpoint_id,
                pipeline_step=record.pipeline_step,
            )
            return record, True

        return await self._persist(self.checkpoints.create, **fields), False

    async def _fail(
        self,
        job: JobSpec,
        record: CheckpointRecord,
        error: Exception,
        started: float,
        resumed: bool,
        categories: List[CategoryResult],
    ) -> JobResult:
        self.logger.error("Crawl job failed", error=str(error), error_type=type(error).__name__)
        try:
            record = await self._persist(self.checkpoints.mark_failed, record.checkpoint_id, error)
        except PersistenceError as mark_error:
            self.logger.error("Could not mark checkpoint failed", error=str(mark_error))
        return self._summarise(job, record, ProcessingStatus.FAILED, started, resumed, str(error), categories)

    async def _reload(self, record: CheckpointRecord) -> CheckpointRecord:
        try:
            return await self._persist(self.checkpoints.load, record.checkpoint_id)
        except ShelfCrawlError as e:
            self.logger.warning("Could not reload checkpoint", error=str(e))
            return record

    # ------------------------------------------------------------------
    # Persistence with retry
    # ------------------------------------------------------------------

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        self.logger.warning(
            "Checkpoint write failed, retrying",
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome else None,
        )

    async def _persist(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Call a checkpoint operation, retrying PersistenceError with exponential backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_min_wait, min=self.retry_min_wait, max=self.retry_max_wait),
            retry=retry_if_exception_type(PersistenceError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        result: Any = None
        async for attempt in retrying:
            with attempt:
                result = await operation(*args, **kwargs)
        return result

    # ------------------------------------------------------------------
    # Stage 1: navigation discovery
    # ------------------------------------------------------------------

    async def _discover(self, job: JobSpec, record: CheckpointRecord) -> CheckpointRecord:
        domain = job.domain
        async with self.throttle.slot(domain, timeout=self.slot_timeout):
            began = time.monotonic()
            try:
                raw_links = await self.navigator.discover_top_level(job.root_url)
            except NavigationError as e:
                await self.throttle.record_failure(domain, e.status_code)
                raise
            except Exception as e:
                await self.throttle.record_failure(domain)
                raise NavigationError(job.root_url, f"navigation discovery failed: {e}") from e
            elapsed_ms = (time.monotonic() - began) * 1000.0
        await self.throttle.record_success(domain, response_time_ms=elapsed_ms)

        links: Dict[str, CategoryLink] = {}
        for raw in raw_links:
            link = CategoryLink.coerce(raw)
            links.setdefault(link.url, link)
        if not links:
            raise NavigationError(job.root_url, "no top-level categories found")

        urls = list(links)
        self.logger.info("Navigation discovered", categories=len(urls))
        return await self._persist(
            self.checkpoints.record_progress,
            record.checkpoint_id,
            pipeline_step=PipelineStep.CATEGORY_EXPANSION.value,
            discovered=urls,
            main_categories=urls,
            category_names={url: link.name for url, link in links.items()},
        )

    # ------------------------------------------------------------------
    # Stage 2: category expansion
    # ------------------------------------------------------------------

    async def _expand(self, job: JobSpec, record: CheckpointRecord) -> CheckpointRecord:
        data = record.pipeline_data
        names: Dict[str, str] = dict(data.category_names)
        targets: List[str] = []
        visited: set = set()

        async def visit(link: CategoryLink, depth: int) -> None:
            if link.url in visited or job.cancelled:
                return
            visited.add(link.url)
            if depth >= job.limits.max_depth:
                targets.append(link.url)
                return

            children = await self._expand_one(job, link, depth)
            if not children:
                targets.append(link.url)
                return
            for child in children:
                names.setdefault(child.url, child.name)
                if child.has_products:
                    if child.url not in visited:
                        visited.add(child.url)
                        targets.append(child.url)
                else:
                    await visit(CategoryLink(name=child.name, url=child.url), depth + 1)

        for url in data.main_categories:
            await visit(CategoryLink(name=names.get(url, url), url=url), 0)

        if job.cancelled:
            return record

        targets = list(dict.fromkeys(targets))
        self.logger.info("Categories expanded", targets=len(targets), visited=len(visited))
        return await self._persist(
            self.checkpoints.record_progress,
            record.checkpoint_id,
            pipeline_step=PipelineStep.EXTRACTION.value,
            discovered=targets,
            categories=targets,
            category_names=names,
        )

    async def _expand_one(self, job: JobSpec, link: CategoryLink, depth: int) -> List[CategoryNode]:
        """Children of one category, capped per level. Unexpandable categories are treated as leaves."""
        domain = job.domain
        try:
            async with self.throttle.slot(domain, timeout=self.slot_timeout):
                raw_children = await self.explorer.expand_category(link, depth)
        except ThrottleRejected as e:
            self.logger.warning("Expansion skipped", url=link.url, reason=str(e))
            return []
        except Exception as e:
            status = getattr(e, "status_code", None)
            if status is None or signals_backoff(status):
                await self.throttle.record_failure(domain, status)
            self.logger.warning("Category expansion failed", url=link.url, depth=depth, error=str(e))
            return []
        await self.throttle.record_success(domain)
        children = [CategoryNode.coerce(child) for child in raw_children]
        return children[: job.limits.max_categories_per_level]

    # ------------------------------------------------------------------
    # Stage 3: paginated extraction
    # ------------------------------------------------------------------

    async def _extract(self, job: JobSpec, record: CheckpointRecord) -> List[CategoryResult]:
        data = record.pipeline_data
        processed = set(data.urls_processed)
        pending = [url for url in data.categories if url not in processed]
        batch_size = max(1, job.limits.parallel_categories)
        self.logger.info("Extracting categories", pending=len(pending), skipped=len(processed), batch_size=batch_size)

        results: List[CategoryResult] = []
        for start in range(0, len(pending), batch_size):
            if job.cancelled:
                break
            batch = pending[start : start + batch_size]
            results.extend(await self._run_batch(job, record.checkpoint_id, batch, data.category_names))
        return results

    async def _run_batch(
        self, job: JobSpec, checkpoint_id: str, batch: List[str], names: Mapping[str, str]
    ) -> List[CategoryResult]:
        escalated: Optional[BaseException] = None
        tasks: List[asyncio.Task] = []
        try:
            async with asyncio.TaskGroup() as tg:
                for url in batch:
                    tasks.append(tg.create_task(self._category_task(job, checkpoint_id, url, names.get(url, url))))
        except* ShelfCrawlError as eg:
            for e in eg.exceptions:
                self.logger.error("Category task escalated", error=str(e), error_type=type(e).__name__)
            escalated = eg.exceptions[0]
        if escalated is not None:
            raise escalated
        return [task.result() for task in tasks]

    async def _category_task(self, job: JobSpec, checkpoint_id: str, url: str, name: str) -> CategoryResult:
        result = await self._extract_category(job, url, name)
        if result.status in (ProcessingStatus.CANCELLED, ProcessingStatus.DEFERRED):
            return result
        increment("categories_processed_total", labels={"outcome": result.status.value})
        increment("items_extracted_total", len(result.items))
        await self._persist(
            self.checkpoints.record_progress,
            checkpoint_id,
            processed=[url],
            results=result.items,
            errors=[result.error] if result.error else [],
            pagination_state={url: result.pagination},
        )
        return result

    async def _extract_category(self, job: JobSpec, url: str, name: str) -> CategoryResult:
        """Walk one category's listing pages. Errors are captured in the result, never raised."""
        started = time.monotonic()
        session = self.pagination.new_session(
            url, max_pages=job.limits.max_pages, max_items=job.limits.max_products_per_category
        )
        items: List[Dict[str, Any]] = []
        status = ProcessingStatus.SUCCESS
        error: Optional[Dict[str, Any]] = None
        try:
            async with self.pages.open() as page:
                await self._navigate(job.domain, page, url)
                session.pagination_type = await self.pagination.detect_type(page)
                while True:
                    items.extend(await self._collect(page, session, url))
                    if self.pagination.should_stop(session):
                        break
                    if job.cancelled:
                        status = ProcessingStatus.CANCELLED
                        break
                    if not await self._advance(job.domain, page, session):
                        break
        except ThrottleRejected as e:
            status = ProcessingStatus.DEFERRED
            self.logger.info("Category deferred by throttle", url=url, reason=str(e))
        except Exception as e:
            status = ProcessingStatus.ERROR
            error = describe_error(e, url=url, name=name, timestamp=utcnow().isoformat())
            self.logger.warning("Category extraction failed", url=url, error=str(e), code=error["code"])

        result = CategoryResult(
            url=url,
            name=name,
            status=status,
            items=items,
            pages_visited=session.current_page,
            pagination=session.to_state(),
            error=error,
            duration_seconds=time.monotonic() - started,
        )
        self.logger.debug(
            "Category finished",
            url=url,
            status=status.value,
            items=len(items),
            pagination_type=session.pagination_type.value,
            stop_reason=session.stop_reason,
        )
        return result

    async def _navigate(self, domain: str, page: PageInteraction, url: str) -> None:
        async with self.throttle.slot(domain, timeout=self.slot_timeout):
            began = time.monotonic()
            loaded = await page.navigate(url, self.navigation_timeout_ms)
            elapsed_ms = (time.monotonic() - began) * 1000.0
        if not loaded:
            status = page.last_status
            # A missing listing page says nothing about the site's health.
            if status is None or signals_backoff(status):
                await self.throttle.record_failure(domain, status)
            raise NavigationError(url, "could not load listing page", status)
        await self.throttle.record_success(domain, response_time_ms=elapsed_ms)

    async def _collect(self, page: PageInteraction, session: PaginationSession, url: str) -> List[Dict[str, Any]]:
        try:
            raw_items = await self.extractor.extract_listing_page(page)
        except ShelfCrawlError:
            raise
        except Exception as e:
            raise ExtractionError(url, f"listing extraction failed: {e}") from e
        new_items = self.pagination.record_items(session, [item for item in raw_items if item.get("url")])
        for item in new_items:
            item.setdefault("category_url", url)
        return new_items

    async def _advance(self, domain: str, page: PageInteraction, session: PaginationSession) -> bool:
        async with self.throttle.slot(domain, timeout=self.slot_timeout):
            moved = await self.pagination.advance(page, session)
        status = page.last_status
        if status is not None and status >= 400:
            if signals_backoff(status):
                await self.throttle.record_failure(domain, status)
            else:
                self.logger.debug("Pagination stopped on error page", url=page.url, status_code=status)
            return False
        if moved:
            await self.throttle.record_success(domain)
        return moved

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _summarise(
        self,
        job: JobSpec,
        record: CheckpointRecord,
        status: ProcessingStatus,
        started: float,
        resumed: bool,
        message: Optional[str] = None,
        categories: Optional[List[CategoryResult]] = None,
    ) -> JobResult:
        data = record.pipeline_data
        failed_urls = {error.get("url") for error in data.category_errors}
        processed = data.urls_processed
        return JobResult(
            job_id=job.job_id,
            checkpoint_id=record.checkpoint_id,
            status=status,
            pipeline_step=record.pipeline_step,
            categories_discovered=len(data.categories),
            categories_processed=len(processed),
            successful_categories=sum(1 for url in processed if url not in failed_urls),
            failed_categories=sum(1 for url in processed if url in failed_urls),
            total_items=len(data.extraction_results),
            data_quality_score=data_quality_score(data.extraction_results),
            duration_seconds=time.monotonic() - started,
            resumed=resumed,
            message=message,
            errors=list(data.category_errors),
            categories=list(categories or []),
        )
