"""
Unit tests for the shared circuit breaker.
"""

import pytest
from shelfcrawl.crawler.circuit_breaker import CircuitBreaker, CircuitState

from tests.helpers import FakeClock


class TestCircuitBreaker:
    """Test CLOSED -> OPEN -> HALF_OPEN -> CLOSED transitions."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=3, recovery_timeout=60.0, monitoring_window=300.0, clock=clock)

    @pytest.mark.asyncio
    async def test_initial_state(self, breaker):
        """A new breaker is closed and lets requests through."""
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        """Reaching the failure threshold while closed opens the circuit."""
        await breaker.record_failure()
        await breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

        await breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert not await breaker.can_execute()
        assert breaker.retry_after() == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self, breaker, clock):
        """OPEN moves to HALF_OPEN lazily once the recovery timeout has elapsed."""
        for _ in range(3):
            await breaker.record_failure()

        clock.advance(59)
        assert breaker.state is CircuitState.OPEN

        clock.advance(1)
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.retry_after() == 0.0
        assert await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_half_open_admits_one_trial_call(self, breaker, clock):
        """While the trial call is out, further callers are held back."""
        for _ in range(3):
            await breaker.record_failure()
        clock.advance(60)

        assert await breaker.can_execute()
        assert not await breaker.can_execute()
        assert breaker.retry_after() == pytest.approx(60.0)
        assert breaker.get_state()["trials_in_flight"] == 1

        await breaker.record_success()

        assert breaker.state is CircuitState.CLOSED
        assert await breaker.can_execute()
        assert await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_silent_trial_call_frees_its_place(self, breaker, clock):
        """A trial call that never reports back stops blocking after the recovery timeout."""
        for _ in range(3):
            await breaker.record_failure()
        clock.advance(60)
        assert await breaker.can_execute()

        clock.advance(59)
        assert not await breaker.can_execute()

        clock.advance(1)
        assert await breaker.can_execute()
        assert breaker.state is CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_trial_call_limit_is_configurable(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10.0, half_open_max_calls=2, clock=clock)
        await breaker.record_failure()
        clock.advance(10)

        assert await breaker.can_execute()
        assert await breaker.can_execute()
        assert not await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_trial_failure_reopens_and_blocks(self, breaker, clock):
        for _ in range(3):
            await breaker.record_failure()
        clock.advance(60)
        assert await breaker.can_execute()

        await breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        assert not await breaker.can_execute()

    @pytest.mark.asyncio
    async def test_half_open_success_closes_and_resets(self, breaker, clock):
        """One success in HALF_OPEN closes the circuit with a zero failure count."""
        for _ in range(3):
            await breaker.record_failure()
        clock.advance(60)

        await breaker.record_success()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        """A failed trial call sends the circuit straight back to OPEN."""
        for _ in range(3):
            await breaker.record_failure()
        clock.advance(60)
        assert breaker.state is CircuitState.HALF_OPEN

        await breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after() == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_success_while_closed_keeps_count(self, breaker):
        """Successes while CLOSED do not reset the failure count."""
        await breaker.record_failure()
        await breaker.record_success()
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_monitoring_window_resets_closed_count(self, breaker, clock):
        """Failures spread wider than the monitoring window never open the circuit."""
        await breaker.record_failure()
        await breaker.record_failure()
        clock.advance(301)

        await breaker.record_failure()

        assert breaker.failure_count == 1
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_force_open_and_reset(self, breaker):
        """Manual controls override the automatic transitions."""
        await breaker.force_open()
        assert breaker.state is CircuitState.OPEN

        await breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.get_state()["failure_count"] == 0
