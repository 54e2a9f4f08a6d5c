"""
Integration tests for CrawlOrchestrator over a static in-memory storefront.

The real throttle, pagination controller and checkpoint manager run against
stub discovery/extraction collaborators and a selectolax-backed static page.
"""

import asyncio

import pytest
from shelfcrawl.checkpoint import CheckpointStatus, CrawlCheckpoint, MemoryCheckpointStore
from shelfcrawl.config import CircuitBreakerConfig, CrawlLimits, ThrottleConfig
from shelfcrawl.crawler import CircuitState, DomainThrottle
from shelfcrawl.exceptions import NavigationError
from shelfcrawl.orchestrator import CrawlOrchestrator, JobSpec
from shelfcrawl.protocols import ProcessingStatus

from tests.helpers import (
    ROOT,
    FlakyStore,
    RecordingStore,
    StaticSiteFactory,
    StubExplorer,
    StubExtractor,
    StubNavigator,
    listing_html,
    next_link,
    numbered_pagination,
)

SHOES = "https://shop.example.com/c/shoes"
BAGS = "https://shop.example.com/c/bags"
HATS = "https://shop.example.com/c/hats"
LINKS = [{"name": "Shoes", "url": SHOES}, {"name": "Bags", "url": BAGS}, {"name": "Hats", "url": HATS}]

SITE = {
    SHOES: listing_html(["s1", "s2"], pagination=numbered_pagination(1, 2)),
    f"{SHOES}?page=2": listing_html(["s3"], pagination=numbered_pagination(2, 2)),
    BAGS: listing_html(["b1"]),
    HATS: listing_html(["h1", "h2"]),
}


class StoreFailingAfter(MemoryCheckpointStore):
    """Accepts the first ``healthy_writes`` upserts, then fails every write."""

    def __init__(self, healthy_writes):
        super().__init__()
        self.healthy_writes = healthy_writes
        self.upserts = 0

    async def upsert(self, checkpoint_id, record):
        self.upserts += 1
        if self.upserts > self.healthy_writes:
            raise OSError("disk full")
        await super().upsert(checkpoint_id, record)


class CancellingExtractor(StubExtractor):
    """Sets the job's cancel event after the first listing page."""

    def __init__(self, job):
        super().__init__()
        self.job = job

    async def extract_listing_page(self, page):
        records = await super().extract_listing_page(page)
        self.job.cancel_event.set()
        return records


class SlowNavigator(StubNavigator):
    async def discover_top_level(self, url):
        await asyncio.sleep(5)
        return await super().discover_top_level(url)


def blocking_throttle(failure_threshold=50):
    """No spacing, but a 403 blocks the domain for fifteen minutes of real time."""
    return DomainThrottle.from_config(
        ThrottleConfig(
            default_delay_ms=0,
            min_delay_ms=0,
            max_delay_ms=0,
            jitter_ratio=0.0,
            block_cooldown_seconds=900.0,
            max_concurrent_per_host=4,
        ),
        CircuitBreakerConfig(failure_threshold=failure_threshold, recovery_timeout_seconds=60.0),
    )


@pytest.fixture
def build(fast_throttle, pagination_controller):
    def _build(
        store,
        *,
        navigator=None,
        explorer=None,
        extractor=None,
        site=SITE,
        statuses=None,
        retry_attempts=2,
        throttle=None,
        slot_timeout=None,
    ):
        factory = StaticSiteFactory(site, statuses)
        orchestrator = CrawlOrchestrator(
            throttle=throttle or fast_throttle,
            pagination=pagination_controller,
            checkpoints=CrawlCheckpoint(store),
            navigator=navigator or StubNavigator(LINKS),
            explorer=explorer or StubExplorer(),
            extractor=extractor or StubExtractor(),
            pages=factory,
            retry_attempts=retry_attempts,
            retry_min_wait=0,
            retry_max_wait=0,
            slot_timeout=slot_timeout,
        )
        return orchestrator, factory

    return _build


@pytest.mark.integration
class TestHappyPath:
    @pytest.mark.asyncio
    async def test_failing_category_does_not_fail_the_job(self, build):
        """One category erroring mid-batch is recorded; its siblings still finish."""
        store = RecordingStore()
        extractor = StubExtractor(errors={BAGS: RuntimeError("layout changed")})
        orchestrator, factory = build(store, extractor=extractor)

        result = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-batch"))

        assert result.status is ProcessingStatus.COMPLETED
        assert result.pipeline_step == 4
        assert result.categories_discovered == 3
        assert result.categories_processed == 3
        assert result.successful_categories == 2
        assert result.failed_categories == 1
        assert result.total_items == 5
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error["url"] == BAGS
        assert error["name"] == "Bags"
        assert error["code"] == "EXTRACTION_ERROR"
        assert "layout changed" in error["message"]

        statuses = [record.status for record in store.history]
        assert statuses[-1] is CheckpointStatus.COMPLETED
        assert all(status is CheckpointStatus.ACTIVE for status in statuses[:-1])
        assert factory.opened == factory.closed == 3

    @pytest.mark.asyncio
    async def test_pagination_and_checkpoint_contents(self, build):
        store = MemoryCheckpointStore()
        orchestrator, factory = build(store)

        result = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-pages"))

        record = await store.get(result.checkpoint_id)
        data = record.pipeline_data
        assert record.status is CheckpointStatus.COMPLETED
        assert data.main_categories == [SHOES, BAGS, HATS]
        assert sorted(data.urls_processed) == sorted([SHOES, BAGS, HATS])
        assert data.category_names[SHOES] == "Shoes"
        assert data.pagination_state[SHOES]["pagination_type"] == "numbered"
        assert data.pagination_state[SHOES]["current_page"] == 2
        assert data.pagination_state[HATS]["pagination_type"] == "single-page"
        shoes_items = [item for item in data.extraction_results if item["category_url"] == SHOES]
        assert [item["title"] for item in shoes_items] == ["S1", "S2", "S3"]
        assert f"{SHOES}?page=2" in factory.navigations

        shoes = next(category for category in result.categories if category.url == SHOES)
        assert shoes.status is ProcessingStatus.SUCCESS
        assert shoes.pages_visited == 2
        assert result.to_dict()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_max_pages_limit(self, build):
        store = MemoryCheckpointStore()
        orchestrator, factory = build(store)
        job = JobSpec(root_url=ROOT, limits=CrawlLimits(max_pages=1))

        result = await orchestrator.run(job)

        shoes = next(category for category in result.categories if category.url == SHOES)
        assert len(shoes.items) == 2
        assert shoes.pagination["stop_reason"] == "max_pages_reached"
        assert result.total_items == 5
        assert f"{SHOES}?page=2" not in factory.navigations

    @pytest.mark.asyncio
    async def test_data_quality_score(self, build):
        extractor = StubExtractor(fields={"price": 19.99, "description": "Comfortable"})
        orchestrator, _ = build(MemoryCheckpointStore(), extractor=extractor)

        result = await orchestrator.run(JobSpec(root_url=ROOT))

        # title, price and url present; one of three optional fields
        assert result.data_quality_score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_category_expansion(self, build):
        explorer = StubExplorer(
            tree={
                SHOES: [
                    {"name": "Running", "url": f"{SHOES}/running"},
                    {"name": "Boots", "url": f"{SHOES}/boots", "has_products": True},
                ],
                f"{SHOES}/running": [{"name": "Trail", "url": f"{SHOES}/running/trail"}],
            },
            errors={BAGS: NavigationError(BAGS, status_code=500)},
        )
        site = {
            **SITE,
            f"{SHOES}/running": listing_html(["r1"]),
            f"{SHOES}/boots": listing_html(["t1"]),
        }
        store = MemoryCheckpointStore()
        orchestrator, _ = build(store, explorer=explorer, site=site)

        result = await orchestrator.run(JobSpec(root_url=ROOT, limits=CrawlLimits(max_depth=1)))

        record = await store.get(result.checkpoint_id)
        assert record.pipeline_data.categories == [f"{SHOES}/running", f"{SHOES}/boots", BAGS, HATS]
        assert record.pipeline_data.category_names[f"{SHOES}/boots"] == "Boots"
        assert (SHOES, 0) in explorer.calls
        assert all(url != f"{SHOES}/running" for url, _ in explorer.calls)
        assert result.total_items == 5


@pytest.mark.integration
class TestResumption:
    @pytest.mark.asyncio
    async def test_resume_skips_processed_categories(self, build):
        store = MemoryCheckpointStore()
        checkpoints = CrawlCheckpoint(store)
        await checkpoints.create(
            site_domain="shop.example.com",
            job_id="job-resume",
            pipeline_step=3,
            pipeline_data={
                "urls_discovered": [SHOES, BAGS, HATS],
                "main_categories": [SHOES, BAGS, HATS],
                "categories": [SHOES, BAGS, HATS],
                "urls_processed": [SHOES],
                "extraction_results": [{"url": "https://shop.example.com/product/s1", "title": "S1"}],
            },
        )
        navigator = StubNavigator(LINKS)
        orchestrator, factory = build(store, navigator=navigator)

        result = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-resume"))

        assert result.resumed
        assert result.status is ProcessingStatus.COMPLETED
        assert navigator.calls == []
        assert SHOES not in factory.navigations
        assert result.categories_processed == 3
        assert result.total_items == 4

    @pytest.mark.asyncio
    async def test_completed_job_short_circuits(self, build):
        store = MemoryCheckpointStore()
        navigator = StubNavigator(LINKS)
        orchestrator, _ = build(store, navigator=navigator)

        first = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-twice"))
        second = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-twice"))

        assert first.status is second.status is ProcessingStatus.COMPLETED
        assert second.message == "already completed"
        assert second.checkpoint_id == first.checkpoint_id
        assert second.total_items == first.total_items
        assert len(navigator.calls) == 1

    @pytest.mark.asyncio
    async def test_cancellation_leaves_checkpoint_resumable(self, build):
        store = MemoryCheckpointStore()
        job = JobSpec(root_url=ROOT, job_id="job-cancel", limits=CrawlLimits(parallel_categories=1))
        orchestrator, _ = build(store, extractor=CancellingExtractor(job))

        cancelled = await orchestrator.run(job)

        assert cancelled.status is ProcessingStatus.CANCELLED
        record = await store.get(cancelled.checkpoint_id)
        assert record.status is CheckpointStatus.ACTIVE
        assert record.pipeline_step == 3
        assert record.pipeline_data.urls_processed == []

        resumed_orchestrator, _ = build(store)
        finished = await resumed_orchestrator.run(JobSpec(root_url=ROOT, job_id="job-cancel"))

        assert finished.status is ProcessingStatus.COMPLETED
        assert finished.checkpoint_id == cancelled.checkpoint_id
        assert finished.total_items == 6

    @pytest.mark.asyncio
    async def test_deadline(self, build):
        store = MemoryCheckpointStore()
        orchestrator, _ = build(store, navigator=SlowNavigator(LINKS))

        result = await orchestrator.run(JobSpec(root_url=ROOT, deadline_seconds=0.05))

        assert result.status is ProcessingStatus.CANCELLED
        assert result.message == "deadline exceeded"
        assert (await store.get(result.checkpoint_id)).status is CheckpointStatus.ACTIVE


@pytest.mark.integration
class TestFailures:
    @pytest.mark.asyncio
    async def test_navigation_failure_fails_job(self, build):
        store = MemoryCheckpointStore()
        navigator = StubNavigator(error=NavigationError(ROOT, "root page down", status_code=503))
        orchestrator, factory = build(store, navigator=navigator)

        result = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-nav"))

        assert result.status is ProcessingStatus.FAILED
        assert "root page down" in result.message
        record = await store.get(result.checkpoint_id)
        assert record.status is CheckpointStatus.FAILED
        assert record.error_details.code == "NAVIGATION_ERROR"
        assert factory.opened == 0

    @pytest.mark.asyncio
    async def test_no_categories_fails_job(self, build):
        orchestrator, _ = build(MemoryCheckpointStore(), navigator=StubNavigator([]))

        result = await orchestrator.run(JobSpec(root_url=ROOT))

        assert result.status is ProcessingStatus.FAILED
        assert "no top-level categories" in result.message

    @pytest.mark.asyncio
    async def test_failed_job_retries_from_new_checkpoint(self, build):
        store = MemoryCheckpointStore()
        broken, _ = build(store, navigator=StubNavigator(error=RuntimeError("dns failure")))
        failed = await broken.run(JobSpec(root_url=ROOT, job_id="job-retry"))
        assert failed.status is ProcessingStatus.FAILED

        healthy, _ = build(store)
        retried = await healthy.run(JobSpec(root_url=ROOT, job_id="job-retry"))

        assert retried.status is ProcessingStatus.COMPLETED
        assert retried.resumed
        assert retried.checkpoint_id != failed.checkpoint_id
        record = await store.get(retried.checkpoint_id)
        assert record.metadata["resumed_from"] == failed.checkpoint_id
        assert (await store.get(failed.checkpoint_id)).status is CheckpointStatus.FAILED

    @pytest.mark.asyncio
    async def test_persistence_exhaustion_fails_job(self, build):
        store = StoreFailingAfter(healthy_writes=1)
        orchestrator, _ = build(store, retry_attempts=2)

        result = await orchestrator.run(JobSpec(root_url=ROOT))

        assert result.status is ProcessingStatus.FAILED
        assert "upsert failed" in result.message
        # create, two discovery attempts, two attempts to mark the checkpoint failed
        assert store.upserts == 5

    @pytest.mark.asyncio
    async def test_transient_store_failure_is_retried(self, build):
        store = FlakyStore(failures=1)
        orchestrator, _ = build(store, retry_attempts=3)

        result = await orchestrator.run(JobSpec(root_url=ROOT))

        assert result.status is ProcessingStatus.COMPLETED
        assert store.statuses[-1] == "completed"


@pytest.mark.integration
class TestThrottleDeferral:
    @pytest.mark.asyncio
    async def test_blocked_domain_defers_categories_without_finishing(self, build):
        """Categories that never get a slot stay pending and the checkpoint stays active."""
        store = MemoryCheckpointStore()
        explorer = StubExplorer(errors={SHOES: NavigationError(SHOES, "forbidden", status_code=403)})
        orchestrator, factory = build(store, explorer=explorer, throttle=blocking_throttle(), slot_timeout=0.2)

        deferred = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-blocked"))

        assert deferred.status is ProcessingStatus.DEFERRED
        assert deferred.message == "3 categories deferred by throttle"
        assert deferred.pipeline_step == 3
        assert factory.navigations == []
        record = await store.get(deferred.checkpoint_id)
        assert record.status is CheckpointStatus.ACTIVE
        assert record.pipeline_step == 3
        assert record.pipeline_data.urls_processed == []
        assert sorted(record.pipeline_data.categories) == sorted([SHOES, BAGS, HATS])

        resumed_orchestrator, _ = build(store)
        finished = await resumed_orchestrator.run(JobSpec(root_url=ROOT, job_id="job-blocked"))

        assert finished.status is ProcessingStatus.COMPLETED
        assert finished.checkpoint_id == deferred.checkpoint_id
        assert finished.categories_processed == 3
        assert finished.total_items == 6

    @pytest.mark.asyncio
    async def test_blocked_discovery_leaves_checkpoint_active(self, build):
        store = MemoryCheckpointStore()
        throttle = blocking_throttle()
        await throttle.record_failure("shop.example.com", 403)
        navigator = StubNavigator(LINKS)
        orchestrator, _ = build(store, navigator=navigator, throttle=throttle, slot_timeout=0.2)

        deferred = await orchestrator.run(JobSpec(root_url=ROOT, job_id="job-blocked-root"))

        assert deferred.status is ProcessingStatus.DEFERRED
        assert navigator.calls == []
        record = await store.get(deferred.checkpoint_id)
        assert record.status is CheckpointStatus.ACTIVE
        assert record.pipeline_step == 1
        assert record.error_details is None

        resumed_orchestrator, _ = build(store)
        finished = await resumed_orchestrator.run(JobSpec(root_url=ROOT, job_id="job-blocked-root"))

        assert finished.status is ProcessingStatus.COMPLETED
        assert finished.checkpoint_id == deferred.checkpoint_id


@pytest.mark.integration
class TestBreakerSignals:
    @pytest.mark.asyncio
    async def test_last_numbered_page_is_not_a_failure(self, build):
        """Walking several paginated categories to their end leaves the breaker closed."""
        names = ["shoes", "bags", "hats", "socks", "belts", "scarves"]
        site = {}
        links = []
        for name in names:
            url = f"https://shop.example.com/c/{name}"
            links.append({"name": name.title(), "url": url})
            site[url] = listing_html([f"{name}-1"], pagination=numbered_pagination(1, 2))
            site[f"{url}?page=2"] = listing_html([f"{name}-2"], pagination=numbered_pagination(2, 2))
        throttle = blocking_throttle(failure_threshold=5)
        orchestrator, factory = build(
            MemoryCheckpointStore(), navigator=StubNavigator(links), site=site, throttle=throttle
        )

        result = await orchestrator.run(JobSpec(root_url=ROOT, limits=CrawlLimits(parallel_categories=2)))

        assert result.status is ProcessingStatus.COMPLETED
        assert result.total_items == 12
        assert throttle.breaker.state is CircuitState.CLOSED
        assert throttle.breaker.failure_count == 0
        assert not any("page=3" in url for url in factory.navigations)

    @pytest.mark.asyncio
    async def test_missing_next_page_does_not_count_against_breaker(self, build):
        site = dict(SITE)
        site[BAGS] = listing_html(["b1"], pagination=next_link("/c/bags?cursor=gone"))
        throttle = blocking_throttle(failure_threshold=1)
        orchestrator, factory = build(MemoryCheckpointStore(), site=site, throttle=throttle)

        result = await orchestrator.run(JobSpec(root_url=ROOT))

        assert result.status is ProcessingStatus.COMPLETED
        assert f"{BAGS}?cursor=gone" in factory.navigations
        assert result.failed_categories == 0
        assert throttle.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_server_error_on_next_page_counts_against_breaker(self, build):
        site = dict(SITE)
        site[BAGS] = listing_html(["b1"], pagination=next_link("/c/bags?cursor=2"))
        site[f"{BAGS}?cursor=2"] = listing_html(["b2"])
        throttle = blocking_throttle()
        orchestrator, _ = build(
            MemoryCheckpointStore(), site=site, statuses={f"{BAGS}?cursor=2": 503}, throttle=throttle
        )

        result = await orchestrator.run(JobSpec(root_url=ROOT))

        assert result.status is ProcessingStatus.COMPLETED
        assert throttle.breaker.failure_count == 1
        assert throttle.get_domain_stats("shop.example.com")["total_failures"] == 1
