"""
Circuit breaker guarding all outbound crawl traffic.

Stops every throttle request after repeated failures and tests for
recovery once a cooldown has elapsed. OPEN moves to HALF_OPEN lazily: the
transition happens the next time the state is inspected after
``recovery_timeout`` has passed, so no timer task is needed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from shelfcrawl.observability import gauge, increment


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, blocking requests
    HALF_OPEN = "half_open"  # Testing if the target recovered


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None
    trials_in_flight: int = 0
    trials_started_at: Optional[float] = None


class CircuitBreaker:
    """
    Three-state breaker shared by every domain a throttle serves.

    Args:
        failure_threshold: Failures that open the circuit while CLOSED.
        recovery_timeout: Seconds the circuit stays OPEN before probing.
        monitoring_window: Seconds without a failure after which the
            CLOSED failure count starts again from zero.
        success_threshold: Successes needed in HALF_OPEN to close.
        half_open_max_calls: Requests admitted while HALF_OPEN. A trial call that
            never reports back frees its place after ``recovery_timeout``.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        monitoring_window: float = 300.0,
        success_threshold: int = 1,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.monitoring_window = monitoring_window
        self.success_threshold = success_threshold
        self.half_open_max_calls = max(1, half_open_max_calls)
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = asyncio.Lock()
        self.logger = structlog.get_logger(self.__class__.__name__)

    @property
    def state(self) -> CircuitState:
        """Current state, applying the lazy OPEN -> HALF_OPEN transition."""
        self._maybe_half_open()
        return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    def retry_after(self) -> float:
        """Seconds until a request may be admitted; 0 when one would be now."""
        state = self.state
        if state is CircuitState.OPEN and self._state.opened_at is not None:
            return max(0.0, self._state.opened_at + self.recovery_timeout - self._clock())
        if state is CircuitState.HALF_OPEN and self._trials_exhausted():
            started = self._state.trials_started_at or self._clock()
            return max(0.0, started + self.recovery_timeout - self._clock())
        return 0.0

    async def can_execute(self) -> bool:
        """
        Check if a request can pass through the breaker.

        While HALF_OPEN only ``half_open_max_calls`` requests are admitted
        until one of them reports a success or a failure.
        """
        async with self._lock:
            state = self.state
            if state is CircuitState.OPEN:
                return False
            if state is CircuitState.HALF_OPEN:
                if self._trials_exhausted():
                    return False
                if self._state.trials_in_flight == 0:
                    self._state.trials_started_at = self._clock()
                self._state.trials_in_flight += 1
            return True

    def _trials_exhausted(self) -> bool:
        if self._state.trials_in_flight < self.half_open_max_calls:
            return False
        started = self._state.trials_started_at
        if started is not None and self._clock() - started >= self.recovery_timeout:
            # Trial calls that never reported back release their places.
            self._state.trials_in_flight = 0
            self._state.trials_started_at = None
            return False
        return True

    async def record_success(self) -> None:
        async with self._lock:
            state = self.state
            if state is CircuitState.HALF_OPEN:
                self._state.success_count += 1
                self._state.trials_in_flight = max(0, self._state.trials_in_flight - 1)
                if self._state.success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
                    self._state.failure_count = 0
                    self._state.success_count = 0
                    self._state.opened_at = None
                    self._reset_trials()
                    self.logger.info("Circuit breaker closed, target recovered")

    async def record_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            state = self.state
            if (
                state is CircuitState.CLOSED
                and self._state.last_failure_at is not None
                and now - self._state.last_failure_at > self.monitoring_window
            ):
                self._state.failure_count = 0

            self._state.failure_count += 1
            self._state.last_failure_at = now

            if state is CircuitState.HALF_OPEN:
                self._open(now)
                self.logger.warning("Circuit breaker re-opened, trial call failed", failures=self._state.failure_count)
            elif state is CircuitState.CLOSED and self._state.failure_count >= self.failure_threshold:
                self._open(now)
                self.logger.warning(
                    "Circuit breaker opened",
                    failures=self._state.failure_count,
                    recovery_timeout=self.recovery_timeout,
                )

    async def reset(self) -> None:
        """Manually reset the breaker to CLOSED."""
        async with self._lock:
            self._transition(CircuitState.CLOSED)
            self._state = CircuitBreakerState()
            self.logger.info("Circuit breaker manually reset")

    async def force_open(self) -> None:
        async with self._lock:
            self._open(self._clock())
            self.logger.warning("Circuit breaker manually forced open")

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for monitoring."""
        return {
            "state": self.state.value,
            "failure_count": self._state.failure_count,
            "success_count": self._state.success_count,
            "trials_in_flight": self._state.trials_in_flight,
            "last_failure_at": self._state.last_failure_at,
            "retry_after": self.retry_after(),
        }

    def _maybe_half_open(self) -> None:
        if (
            self._state.state is CircuitState.OPEN
            and self._state.opened_at is not None
            and self._clock() - self._state.opened_at >= self.recovery_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
            self._state.success_count = 0
            self._reset_trials()
            self.logger.info("Circuit breaker half-open, testing recovery")

    def _open(self, now: float) -> None:
        self._transition(CircuitState.OPEN)
        self._state.opened_at = now
        self._state.success_count = 0
        self._reset_trials()

    def _reset_trials(self) -> None:
        self._state.trials_in_flight = 0
        self._state.trials_started_at = None

    def _transition(self, new_state: CircuitState) -> None:
        if self._state.state is new_state:
            return
        self._state.state = new_state
        increment("circuit_transitions_total", labels={"to_state": new_state.value})
        gauge("circuit_state", _STATE_GAUGE[new_state])
