"""
Exception hierarchy for the crawl control plane.

Validation errors are fatal and surface immediately. Throttle rejections are
backpressure. Navigation and extraction errors are local to one category and
are recorded rather than raised out of a job. Persistence errors are retried
by the orchestrator and fail the job once retries are exhausted.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ShelfCrawlError(Exception):
    """Base class for all shelfcrawl errors."""


class CheckpointValidationError(ShelfCrawlError):
    """A checkpoint record failed schema validation."""

    def __init__(self, message: str, fields: Optional[List[str]] = None) -> None:
        self.fields = list(fields or [])
        if self.fields:
            message = f"{message} (fields: {', '.join(self.fields)})"
        super().__init__(message)


class TerminalCheckpointError(CheckpointValidationError):
    """Attempted to mutate a completed, failed or expired checkpoint."""

    def __init__(self, checkpoint_id: str, status: str) -> None:
        self.checkpoint_id = checkpoint_id
        self.status = status
        super().__init__(f"Checkpoint {checkpoint_id} is {status} and cannot be modified", ["status"])


class CheckpointNotFound(ShelfCrawlError):
    """No checkpoint exists for the given id."""

    def __init__(self, checkpoint_id: str) -> None:
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint not found: {checkpoint_id}")


class ThrottleRejected(ShelfCrawlError):
    """A throttle slot could not be granted within the caller's limits."""

    def __init__(self, domain: str, reason: str) -> None:
        self.domain = domain
        self.reason = reason
        super().__init__(f"Throttle rejected request to {domain}: {reason}")


class CircuitOpen(ThrottleRejected):
    """The circuit breaker is open and the caller opted out of waiting."""

    def __init__(self, domain: str, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(domain, f"circuit open, retry in {retry_after:.1f}s")


class NavigationError(ShelfCrawlError):
    """A page or collaborator failed to load a URL."""

    def __init__(self, url: str, message: str = "navigation failed", status_code: Optional[int] = None) -> None:
        self.url = url
        self.status_code = status_code
        detail = f"{message}: {url}"
        if status_code is not None:
            detail = f"{detail} (HTTP {status_code})"
        super().__init__(detail)


class ExtractionError(ShelfCrawlError):
    """The field-extraction collaborator failed on a listing page."""

    def __init__(self, url: str, message: str = "extraction failed") -> None:
        self.url = url
        super().__init__(f"{message}: {url}")


class PersistenceError(ShelfCrawlError):
    """The checkpoint store rejected or failed a read or write."""

    def __init__(self, operation: str, checkpoint_id: Optional[str], cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.checkpoint_id = checkpoint_id
        self.cause = cause
        message = f"Checkpoint store {operation} failed"
        if checkpoint_id:
            message = f"{message} for {checkpoint_id}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


def error_code(error: BaseException) -> str:
    """Stable short code used when an error is recorded in checkpoint data."""
    codes: Dict[type, str] = {
        CircuitOpen: "CIRCUIT_OPEN",
        ThrottleRejected: "THROTTLE_REJECTED",
        NavigationError: "NAVIGATION_ERROR",
        ExtractionError: "EXTRACTION_ERROR",
        PersistenceError: "PERSISTENCE_ERROR",
        TerminalCheckpointError: "TERMINAL_CHECKPOINT",
        CheckpointValidationError: "VALIDATION_ERROR",
        TimeoutError: "TIMEOUT",
    }
    for error_type in type(error).__mro__:
        if error_type in codes:
            return codes[error_type]
    return "UNEXPECTED_ERROR"


def describe_error(error: BaseException, **context: Any) -> Dict[str, Any]:
    """Flatten an exception into the dict shape stored alongside category results."""
    info: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "message": str(error) or type(error).__name__,
        "code": error_code(error),
    }
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        info["status_code"] = status_code
    info.update(context)
    return info
