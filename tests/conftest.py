"""
Shared test configuration for shelfcrawl.

Provides deterministic clocks, fast throttle settings and in-memory
checkpoint stores so control-plane tests never wait on real time.
"""

# Standard library imports
import asyncio
import os
from typing import AsyncGenerator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from shelfcrawl.checkpoint import CrawlCheckpoint, MemoryCheckpointStore
from shelfcrawl.config import CircuitBreakerConfig, PaginationConfig, ThrottleConfig
from shelfcrawl.config.config import LazyConfig
from shelfcrawl.crawler import DomainThrottle
from shelfcrawl.pagination import PaginationController
from tests.helpers import FakeClock, FakeSleep

# Keep developer configuration out of the test run
os.environ["SHELFCRAWL_TEST_MODE"] = "1"

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    os.environ["SHELFCRAWL_TEST_MODE"] = "1"
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test leaves behind so it cannot leak into the next test."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture(autouse=True)
def reset_settings():
    """Drop the cached module-level settings between tests."""
    LazyConfig.reset()
    yield
    LazyConfig.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def fast_throttle_config() -> ThrottleConfig:
    """No spacing, no jitter, no block cooldown."""
    return ThrottleConfig(
        default_delay_ms=0,
        min_delay_ms=0,
        max_delay_ms=0,
        jitter_ratio=0.0,
        block_cooldown_seconds=0.0,
        max_concurrent_per_host=4,
    )


@pytest.fixture
def fast_throttle(fast_throttle_config: ThrottleConfig) -> DomainThrottle:
    return DomainThrottle.from_config(
        fast_throttle_config, CircuitBreakerConfig(failure_threshold=50, recovery_timeout_seconds=0.0)
    )


@pytest.fixture
def pagination_controller(sleep: FakeSleep) -> PaginationController:
    return PaginationController(PaginationConfig(scroll_delay_ms=0), sleep=sleep)


@pytest.fixture
def memory_store() -> MemoryCheckpointStore:
    return MemoryCheckpointStore()


@pytest.fixture
def checkpoints(memory_store: MemoryCheckpointStore) -> CrawlCheckpoint:
    return CrawlCheckpoint(memory_store)
