"""Request pacing, circuit breaking and the static-HTML page adapter."""

from .circuit_breaker import CircuitBreaker, CircuitState
from .http_page import HttpPage, HttpPageFactory
from .throttle import DomainLimits, DomainState, DomainThrottle, domain_of, signals_backoff

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "DomainLimits",
    "DomainState",
    "DomainThrottle",
    "HttpPage",
    "HttpPageFactory",
    "domain_of",
    "signals_backoff",
]
