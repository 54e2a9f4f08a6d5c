"""
Per-domain adaptive throttle with a shared circuit breaker.

Every outbound page fetch goes through ``DomainThrottle.await_slot``. The
throttle enforces three things per domain:

- at most ``max_concurrent_per_host`` requests in flight
- a minimum spacing between request starts that grows with consecutive
  failures, with 429/403/503 responses and with slow responses, and
  decays on success
- no traffic while the domain is blocked (403 cooldown) or while the
  global circuit breaker is OPEN

Delay bounds come from ThrottleConfig unless ``configure_domain`` set
overrides for a host. Pacing state for domains idle longer than
``idle_domain_ttl_seconds`` is dropped when new domains are tracked;
overrides are kept.

State is only mutated from synchronous sections (no ``await`` in between
read and write), so concurrent tasks on one event loop see consistent
values. Spacing is serialised by a per-domain lock held across the sleep,
which makes the lock the single point that orders request starts.
"""

from __future__ import annotations

import asyncio
import random
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import structlog

from shelfcrawl.config.config import CircuitBreakerConfig, ThrottleConfig
from shelfcrawl.crawler.circuit_breaker import CircuitBreaker, CircuitState
from shelfcrawl.exceptions import CircuitOpen, ThrottleRejected
from shelfcrawl.observability import gauge, histogram, increment

# Exponent cap for the failure backoff; 2**32 * any sane delay is past max_delay_ms.
_MAX_BACKOFF_EXPONENT = 32
_MIN_POLL_SECONDS = 0.05
# Weight of the newest sample in the response-time moving average.
_RESPONSE_TIME_WEIGHT = 0.2

ESCALATION_FACTORS: Dict[int, float] = {
    429: 2.0,
    403: 3.0,
    503: 1.5,
}


def signals_backoff(status_code: Optional[int]) -> bool:
    """True for statuses that mean the site is pushing back (403, 429, 5xx)."""
    return status_code is not None and (status_code in (403, 429) or status_code >= 500)


def domain_of(target: str) -> str:
    """Normalise a URL or host name to the lowercase host used as the throttle key."""
    value = target.strip()
    if "://" in value:
        value = urlparse(value).hostname or value
    return value.lower().rstrip(".")


@dataclass
class DomainState:
    """Pacing state for one domain. Owned by DomainThrottle."""

    domain: str
    base_delay_ms: float
    last_request_at: Optional[float] = None
    active_requests: int = 0
    consecutive_failures: int = 0
    is_blocked: bool = False
    blocked_until: Optional[float] = None
    last_failure_at: Optional[float] = None
    total_requests: int = 0
    total_failures: int = 0
    avg_response_time_ms: Optional[float] = None
    waiting: int = 0


@dataclass(frozen=True)
class DomainLimits:
    """Delay bounds for one domain, in milliseconds."""

    default_delay_ms: float
    min_delay_ms: float
    max_delay_ms: float


class DomainThrottle:
    """
    Gate outbound requests per domain and trip a breaker on systemic failure.

    One instance is shared by every worker of a job (or of a process); it
    owns the DomainState map and the circuit breaker. Clock, sleep and the
    jitter source are injectable so pacing can be tested without real time.
    """

    def __init__(
        self,
        config: Optional[ThrottleConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or ThrottleConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.breaker = breaker or CircuitBreaker(clock=clock)

        self._domains: Dict[str, DomainState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._overrides: Dict[str, DomainLimits] = {}
        self._last_prune_at: Optional[float] = None

        self.logger = structlog.get_logger(self.__class__.__name__)

    @classmethod
    def from_config(
        cls,
        throttle: ThrottleConfig,
        circuit_breaker: CircuitBreakerConfig,
        **kwargs: Any,
    ) -> "DomainThrottle":
        clock = kwargs.get("clock", time.monotonic)
        breaker = CircuitBreaker(
            failure_threshold=circuit_breaker.failure_threshold,
            recovery_timeout=circuit_breaker.recovery_timeout_seconds,
            monitoring_window=circuit_breaker.monitoring_window_seconds,
            half_open_max_calls=circuit_breaker.half_open_max_calls,
            clock=clock,
        )
        return cls(throttle, breaker, **kwargs)

    # ------------------------------------------------------------------
    # Per-domain bookkeeping
    # ------------------------------------------------------------------

    def _get_domain_state(self, domain: str) -> DomainState:
        state = self._domains.get(domain)
        if state is None:
            self._maybe_prune()
            state = DomainState(domain=domain, base_delay_ms=self.limits_for(domain).default_delay_ms)
            self._domains[domain] = state
            self.logger.debug("Tracking new domain", domain=domain)
        return state

    def limits_for(self, domain: str) -> DomainLimits:
        """Delay bounds in force for ``domain``."""
        override = self._overrides.get(domain_of(domain))
        if override is not None:
            return override
        return DomainLimits(
            default_delay_ms=float(self.config.default_delay_ms),
            min_delay_ms=float(self.config.min_delay_ms),
            max_delay_ms=float(self.config.max_delay_ms),
        )

    def configure_domain(
        self,
        domain: str,
        *,
        base_delay_ms: Optional[float] = None,
        min_delay_ms: Optional[float] = None,
        max_delay_ms: Optional[float] = None,
    ) -> DomainLimits:
        """
        Override the delay bounds for one domain.

        Unset values keep the domain's current bounds. ``base_delay_ms``
        becomes both the starting delay and the floor successes decay to.

        Raises:
            ValueError: the bounds are inconsistent.
        """
        domain = domain_of(domain)
        current = self.limits_for(domain)
        low = current.min_delay_ms if min_delay_ms is None else float(min_delay_ms)
        high = current.max_delay_ms if max_delay_ms is None else float(max_delay_ms)
        base = min(max(current.default_delay_ms, low), high) if base_delay_ms is None else float(base_delay_ms)
        if low < 0 or low > high:
            raise ValueError(f"min_delay_ms {low} must lie between 0 and max_delay_ms {high}")
        if not low <= base <= high:
            raise ValueError(f"base_delay_ms {base} must lie between {low} and {high}")

        limits = DomainLimits(default_delay_ms=base, min_delay_ms=low, max_delay_ms=high)
        self._overrides[domain] = limits
        state = self._domains.get(domain)
        if state is not None:
            state.base_delay_ms = base if base_delay_ms is not None else self._clamp(state.base_delay_ms, limits)
        self.logger.info(
            "Domain limits configured", domain=domain, base_delay_ms=base, min_delay_ms=low, max_delay_ms=high
        )
        return limits

    def _maybe_prune(self) -> None:
        now = self._clock()
        ttl = self.config.idle_domain_ttl_seconds
        if self._last_prune_at is not None and now - self._last_prune_at < ttl:
            return
        self._last_prune_at = now
        self.prune_idle()

    def prune_idle(self, max_idle_seconds: Optional[float] = None) -> int:
        """
        Drop pacing state for domains with nothing in flight and no recent traffic.

        A domain is never dropped while blocked or before its longest possible
        spacing has elapsed, so pruning cannot shorten a required delay.
        Returns the number of domains dropped.
        """
        ttl = self.config.idle_domain_ttl_seconds if max_idle_seconds is None else max_idle_seconds
        now = self._clock()
        stale = [domain for domain, state in self._domains.items() if self._is_idle(state, now, ttl)]
        for domain in stale:
            self._domains.pop(domain, None)
            self._locks.pop(domain, None)
            self._semaphores.pop(domain, None)
        if stale:
            self.logger.debug("Pruned idle domains", count=len(stale), tracked=len(self._domains))
        return len(stale)

    def _is_idle(self, state: DomainState, now: float, ttl: float) -> bool:
        if state.active_requests or state.waiting or self.is_blocked(state.domain):
            return False
        seen = [t for t in (state.last_request_at, state.last_failure_at) if t is not None]
        if not seen:
            return True
        horizon = max(ttl, self.limits_for(state.domain).max_delay_ms / 1000.0)
        return now - max(seen) >= horizon

    def _get_domain_lock(self, domain: str) -> asyncio.Lock:
        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()
        return self._locks[domain]

    def _get_domain_semaphore(self, domain: str) -> asyncio.Semaphore:
        if domain not in self._semaphores:
            self._semaphores[domain] = asyncio.Semaphore(self.config.max_concurrent_per_host)
        return self._semaphores[domain]

    def _clamp(self, delay_ms: float, limits: DomainLimits) -> float:
        return min(max(delay_ms, limits.min_delay_ms), limits.max_delay_ms)

    # ------------------------------------------------------------------
    # Delay calculation
    # ------------------------------------------------------------------

    def required_delay_ms(self, domain: str, *, jitter: bool = True) -> float:
        """
        Spacing required before the next request to ``domain`` may start.

        ``min(base * 2**consecutive_failures, max_delay_ms)`` with a random
        +/- ``jitter_ratio`` spread. Falls back to ``default_delay_ms`` if
        the calculation itself fails.
        """
        state = self._get_domain_state(domain)
        try:
            exponent = min(state.consecutive_failures, _MAX_BACKOFF_EXPONENT)
            delay = min(state.base_delay_ms * (2**exponent), self.limits_for(domain).max_delay_ms)
            if jitter and self.config.jitter_ratio:
                spread = self.config.jitter_ratio
                delay *= 1.0 + self._rng.uniform(-spread, spread)
            return max(0.0, delay)
        except Exception as e:
            self.logger.warning("Delay calculation failed, using default delay", domain=domain, error=str(e))
            return float(self.config.default_delay_ms)

    def _remaining_spacing_ms(self, state: DomainState) -> float:
        if state.last_request_at is None:
            return 0.0
        required = self.required_delay_ms(state.domain)
        try:
            elapsed_ms = (self._clock() - state.last_request_at) * 1000.0
        except Exception as e:
            self.logger.warning("Clock read failed, using default delay", domain=state.domain, error=str(e))
            return float(self.config.default_delay_ms)
        return max(0.0, required - elapsed_ms)

    # ------------------------------------------------------------------
    # Slot acquisition
    # ------------------------------------------------------------------

    async def await_slot(self, domain: str, *, wait_if_open: bool = True, timeout: Optional[float] = None) -> float:
        """
        Wait until a request to ``domain`` may start and claim a slot.

        Returns the delay applied in milliseconds. The caller must call
        ``release(domain)`` afterwards; prefer ``async with throttle.slot(domain)``.

        Raises:
            CircuitOpen: the breaker is OPEN and ``wait_if_open`` is False.
            ThrottleRejected: no slot became available within ``timeout`` seconds.
        """
        domain = domain_of(domain)
        try:
            async with asyncio.timeout(timeout):
                waited_ms = await self._acquire(domain, wait_if_open)
        except TimeoutError as e:
            raise ThrottleRejected(domain, f"no slot within {timeout}s") from e

        histogram("throttle_wait_seconds", waited_ms / 1000.0)
        return waited_ms

    async def _acquire(self, domain: str, wait_if_open: bool) -> float:
        state = self._get_domain_state(domain)
        semaphore = self._get_domain_semaphore(domain)

        state.waiting += 1
        try:
            await semaphore.acquire()
        finally:
            state.waiting -= 1
        state.active_requests += 1
        try:
            async with self._get_domain_lock(domain):
                waited_ms = await self._wait_while_closed(state, wait_if_open)

                spacing_ms = self._remaining_spacing_ms(state)
                if spacing_ms > 0:
                    self.logger.debug("Spacing request", domain=domain, delay_ms=round(spacing_ms))
                    await self._sleep(spacing_ms / 1000.0)
                    waited_ms += spacing_ms

                try:
                    state.last_request_at = self._clock()
                except Exception as e:
                    self.logger.warning("Clock read failed while granting slot", domain=domain, error=str(e))
                state.total_requests += 1
        except BaseException:
            state.active_requests -= 1
            semaphore.release()
            raise

        gauge("throttle_active_requests", state.active_requests, labels={"domain": domain})
        return waited_ms

    async def _wait_while_closed(self, state: DomainState, wait_if_open: bool) -> float:
        """Wait out an OPEN circuit and a blocked domain. Returns milliseconds slept."""
        waited = 0.0
        while True:
            if not await self.breaker.can_execute():
                retry_after = self.breaker.retry_after()
                if not wait_if_open:
                    raise CircuitOpen(state.domain, retry_after)
                self.logger.info("Circuit open, waiting", domain=state.domain, retry_after=round(retry_after, 2))
                pause = max(retry_after, _MIN_POLL_SECONDS)
            elif self.is_blocked(state.domain):
                pause = max((state.blocked_until or 0.0) - self._clock(), _MIN_POLL_SECONDS)
                self.logger.info("Domain blocked, waiting out cooldown", domain=state.domain, remaining=round(pause))
            else:
                return waited
            await self._sleep(pause)
            waited += pause * 1000.0

    def release(self, domain: str) -> None:
        """Return the slot claimed by ``await_slot``."""
        domain = domain_of(domain)
        state = self._get_domain_state(domain)
        if state.active_requests <= 0:
            self.logger.warning("Release without matching acquire", domain=domain)
            return
        state.active_requests -= 1
        self._get_domain_semaphore(domain).release()
        gauge("throttle_active_requests", state.active_requests, labels={"domain": domain})

    @asynccontextmanager
    async def slot(
        self, domain: str, *, wait_if_open: bool = True, timeout: Optional[float] = None
    ) -> AsyncIterator[float]:
        """Scoped acquisition: the slot is released on every exit path."""
        waited = await self.await_slot(domain, wait_if_open=wait_if_open, timeout=timeout)
        try:
            yield waited
        finally:
            self.release(domain)

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def record_success(self, domain: str, response_time_ms: Optional[float] = None) -> None:
        """
        Register a successful request.

        The base delay decays towards the domain default. When
        ``response_time_ms`` is given it feeds a moving average; while that
        average exceeds ``target_response_time_ms`` the delay grows by a share
        of the overshoot, capped at ``max_adaptation`` times the default.
        """
        domain = domain_of(domain)
        state = self._get_domain_state(domain)
        limits = self.limits_for(domain)
        state.consecutive_failures = 0
        state.is_blocked = False
        state.blocked_until = None
        delay = max(state.base_delay_ms * self.config.success_decay, limits.default_delay_ms)
        if response_time_ms is not None and response_time_ms >= 0:
            delay = max(delay, self._adapt_to_response_time(state, float(response_time_ms), limits))
        state.base_delay_ms = self._clamp(delay, limits)
        await self.breaker.record_success()

    def _adapt_to_response_time(self, state: DomainState, response_time_ms: float, limits: DomainLimits) -> float:
        if state.avg_response_time_ms is None:
            state.avg_response_time_ms = response_time_ms
        else:
            state.avg_response_time_ms = (
                state.avg_response_time_ms * (1.0 - _RESPONSE_TIME_WEIGHT) + response_time_ms * _RESPONSE_TIME_WEIGHT
            )
        target = float(self.config.target_response_time_ms)
        if state.avg_response_time_ms <= target:
            return 0.0
        overshoot = state.avg_response_time_ms / target - 1.0
        factor = 1.0 + overshoot * self.config.response_time_adaptation
        ceiling = limits.default_delay_ms * self.config.max_adaptation
        adapted = min(state.base_delay_ms * factor, ceiling)
        if adapted > state.base_delay_ms:
            self.logger.debug(
                "Slow responses, widening spacing",
                domain=state.domain,
                avg_response_time_ms=round(state.avg_response_time_ms),
                base_delay_ms=round(adapted),
            )
        return adapted

    async def record_failure(self, domain: str, status_code: Optional[int] = None) -> None:
        """
        Register a failed request.

        429 doubles the base delay, 403 triples it and blocks the domain for
        the cooldown, 503 multiplies it by 1.5. Other failures only count.
        """
        domain = domain_of(domain)
        state = self._get_domain_state(domain)
        now = self._clock()
        state.consecutive_failures += 1
        state.total_failures += 1
        state.last_failure_at = now

        factor = ESCALATION_FACTORS.get(status_code or 0)
        if factor is not None:
            state.base_delay_ms = self._clamp(state.base_delay_ms * factor, self.limits_for(domain))
        if status_code == 403:
            state.is_blocked = True
            state.blocked_until = now + self.config.block_cooldown_seconds
            increment("domain_blocks_total")
            self.logger.warning(
                "Domain blocked", domain=domain, cooldown_seconds=self.config.block_cooldown_seconds
            )

        increment("throttle_failures_total", labels={"status": str(status_code) if status_code else "other"})
        self.logger.debug(
            "Recorded failure",
            domain=domain,
            status_code=status_code,
            consecutive_failures=state.consecutive_failures,
            base_delay_ms=round(state.base_delay_ms),
        )
        await self.breaker.record_failure()

    def is_blocked(self, domain: str) -> bool:
        """True while a 403 cooldown is running. Clears and resets the delay once it ends."""
        domain = domain_of(domain)
        state = self._domains.get(domain)
        if state is None or not state.is_blocked:
            return False
        if state.blocked_until is not None and self._clock() < state.blocked_until:
            return True
        state.is_blocked = False
        state.blocked_until = None
        state.base_delay_ms = self.limits_for(domain).default_delay_ms
        self.logger.info("Domain block expired", domain=domain)
        return False

    @property
    def circuit_state(self) -> CircuitState:
        return self.breaker.state

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def get_domain_stats(self, domain: str) -> Dict[str, Any]:
        domain = domain_of(domain)
        if domain not in self._domains:
            return {"exists": False}
        stats = asdict(self._domains[domain])
        stats["exists"] = True
        stats["blocked"] = self.is_blocked(domain)
        stats["required_delay_ms"] = self.required_delay_ms(domain, jitter=False)
        return stats

    def get_all_stats(self) -> Dict[str, Any]:
        return {
            "circuit": self.breaker.get_state(),
            "domains": {domain: self.get_domain_stats(domain) for domain in list(self._domains)},
        }

    def reset_domain(self, domain: str) -> None:
        """Forget pacing state for a domain. In-flight slots are unaffected."""
        domain = domain_of(domain)
        state = self._domains.get(domain)
        if state is not None and state.active_requests:
            self.logger.warning("Resetting domain with requests in flight", domain=domain)
            state.base_delay_ms = self.limits_for(domain).default_delay_ms
            state.consecutive_failures = 0
            state.avg_response_time_ms = None
            state.is_blocked = False
            state.blocked_until = None
            return
        self._domains.pop(domain, None)
        self._locks.pop(domain, None)
        self._semaphores.pop(domain, None)
        self.logger.info("Reset throttle state", domain=domain)
