"""
CrawlCheckpoint: validated, resumable persistence of crawl progress.
"""

from __future__ import annotations

import asyncio
import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import structlog

from shelfcrawl.checkpoint.schema import (
    DEFAULT_TTL,
    CheckpointRecord,
    CheckpointStatus,
    ErrorDetails,
    checkpoint_age,
    is_expired,
    utcnow,
    validate_record,
)
from shelfcrawl.checkpoint.stores import CheckpointStore
from shelfcrawl.exceptions import (
    CheckpointNotFound,
    CheckpointValidationError,
    PersistenceError,
    ShelfCrawlError,
    TerminalCheckpointError,
    error_code,
)
from shelfcrawl.observability import increment

_IMMUTABLE_FIELDS = ("created_at", "job_type", "site_domain")


def _coerce_status(value: Any) -> CheckpointStatus:
    try:
        return CheckpointStatus(value)
    except ValueError:
        raise CheckpointValidationError(f"Unknown status {value!r}", ["status"]) from None


def _merge_unique(existing: List[Any], additions: Iterable[Any]) -> List[Any]:
    merged = list(existing)
    seen = set(merged)
    for value in additions:
        if value not in seen:
            seen.add(value)
            merged.append(value)
    return merged


class CrawlCheckpoint:
    """
    Creates, updates and closes checkpoint records over a CheckpointStore.

    Every write validates the full record first, so a store never holds a
    record that breaks the schema. Writes to one checkpoint are serialised
    for the duration of a single read-merge-upsert; nothing is locked across
    calls. Store failures surface as PersistenceError.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._counters: Dict[str, int] = {
            "created": 0,
            "updated": 0,
            "completed": 0,
            "failed": 0,
            "expired": 0,
            "deleted": 0,
        }
        self.logger = structlog.get_logger(self.__class__.__name__)

    def _get_lock(self, checkpoint_id: str) -> asyncio.Lock:
        if checkpoint_id not in self._locks:
            self._locks[checkpoint_id] = asyncio.Lock()
        return self._locks[checkpoint_id]

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def _write(self, record: CheckpointRecord) -> None:
        try:
            await self.store.upsert(record.checkpoint_id, record)
        except ShelfCrawlError:
            increment("checkpoint_writes_total", labels={"outcome": "error"})
            raise
        except Exception as e:
            increment("checkpoint_writes_total", labels={"outcome": "error"})
            self.logger.error("Checkpoint write failed", checkpoint_id=record.checkpoint_id, error=str(e))
            raise PersistenceError("upsert", record.checkpoint_id, e) from e
        increment("checkpoint_writes_total", labels={"outcome": "ok"})

    async def _read(self, checkpoint_id: str) -> CheckpointRecord:
        try:
            record = await self.store.get(checkpoint_id)
        except ShelfCrawlError:
            raise
        except Exception as e:
            raise PersistenceError("get", checkpoint_id, e) from e
        if record is None:
            self._locks.pop(checkpoint_id, None)
            raise CheckpointNotFound(checkpoint_id)
        return record

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, **fields: Any) -> CheckpointRecord:
        """
        Validate and persist a new checkpoint.

        Defaults: ``status=active``, ``pipeline_step=1``, a fresh UUID v4 id
        and ``expires_at = now + ttl``.

        Raises:
            CheckpointValidationError: listing every offending field.
            PersistenceError: the store rejected the write.
        """
        now = self._clock()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        if fields.get("expires_at") is None:
            fields["expires_at"] = fields["created_at"] + self.ttl
        status = fields.get("status", CheckpointStatus.ACTIVE)
        if _coerce_status(status) is not CheckpointStatus.ACTIVE:
            raise CheckpointValidationError("New checkpoints must be active", ["status"])

        record = validate_record(fields)
        await self._write(record)
        self._counters["created"] += 1
        self.logger.info(
            "Checkpoint created",
            checkpoint_id=record.checkpoint_id,
            site_domain=record.site_domain,
            job_type=record.job_type.value,
            job_id=record.job_id,
        )
        return record

    async def load(self, checkpoint_id: str) -> CheckpointRecord:
        return await self._read(checkpoint_id)

    async def update(self, partial: Mapping[str, Any]) -> CheckpointRecord:
        """
        Merge ``partial`` into the stored record and persist the result.

        ``pipeline_data`` is merged key by key; other fields are replaced.
        Status changes go through ``mark_completed`` / ``mark_failed``.

        Raises:
            CheckpointValidationError: missing id, invalid merge, a status
                change, or a decreasing ``pipeline_step``.
            TerminalCheckpointError: the record is completed, failed or expired.
        """
        checkpoint_id = partial.get("checkpoint_id")
        if not checkpoint_id:
            raise CheckpointValidationError("checkpoint_id is required for updates", ["checkpoint_id"])
        changed = [name for name in _IMMUTABLE_FIELDS if name in partial]
        if changed:
            raise CheckpointValidationError("Fields cannot be changed after creation", changed)

        async with self._get_lock(checkpoint_id):
            current = await self._read(checkpoint_id)
            self._ensure_mutable(current)
            if "status" in partial and _coerce_status(partial["status"]) is not current.status:
                raise CheckpointValidationError("Use mark_completed or mark_failed to change status", ["status"])

            merged = current.model_dump()
            for key, value in partial.items():
                if key == "pipeline_data" and isinstance(value, Mapping):
                    merged["pipeline_data"] = {**merged["pipeline_data"], **value}
                else:
                    merged[key] = value
            merged["updated_at"] = self._clock()

            record = validate_record(merged)
            if record.pipeline_step < current.pipeline_step:
                raise CheckpointValidationError(
                    f"pipeline_step cannot move back from {current.pipeline_step} to {record.pipeline_step}",
                    ["pipeline_step"],
                )
            await self._write(record)

        self._counters["updated"] += 1
        return record

    async def record_progress(
        self,
        checkpoint_id: str,
        *,
        pipeline_step: Optional[int] = None,
        discovered: Iterable[str] = (),
        processed: Iterable[str] = (),
        results: Iterable[Mapping[str, Any]] = (),
        errors: Iterable[Mapping[str, Any]] = (),
        main_categories: Iterable[str] = (),
        categories: Iterable[str] = (),
        category_names: Optional[Mapping[str, str]] = None,
        pagination_state: Optional[Mapping[str, Any]] = None,
        current_page: Optional[int] = None,
    ) -> CheckpointRecord:
        """
        Append-only progress delta.

        Lists are unioned in order, names merged, and ``pipeline_step`` only
        moves forward, so concurrent deltas commute regardless of which
        category finished first.
        """
        async with self._get_lock(checkpoint_id):
            current = await self._read(checkpoint_id)
            self._ensure_mutable(current)
            data = current.pipeline_data.model_dump()

            data["urls_discovered"] = _merge_unique(data["urls_discovered"], discovered)
            data["urls_processed"] = _merge_unique(data["urls_processed"], processed)
            data["main_categories"] = _merge_unique(data["main_categories"], main_categories)
            data["categories"] = _merge_unique(data["categories"], categories)
            data["extraction_results"] = data["extraction_results"] + [dict(r) for r in results]
            data["category_errors"] = data["category_errors"] + [dict(e) for e in errors]
            if category_names:
                data["category_names"] = {**data["category_names"], **category_names}
            if pagination_state is not None:
                data["pagination_state"] = {**data["pagination_state"], **pagination_state}
            if current_page is not None:
                data["current_page"] = current_page

            merged = current.model_dump()
            merged["pipeline_data"] = data
            merged["updated_at"] = self._clock()
            if pipeline_step is not None:
                merged["pipeline_step"] = max(current.pipeline_step, pipeline_step)

            record = validate_record(merged)
            await self._write(record)

        self._counters["updated"] += 1
        return record

    async def mark_completed(self, checkpoint_id: str) -> CheckpointRecord:
        """Terminal success. A no-op on records that are already terminal."""
        return await self._finish(checkpoint_id, CheckpointStatus.COMPLETED)

    async def mark_failed(
        self, checkpoint_id: str, error: Union[BaseException, Mapping[str, Any], str]
    ) -> CheckpointRecord:
        """Terminal failure with error details. A no-op on records that are already terminal."""
        return await self._finish(checkpoint_id, CheckpointStatus.FAILED, self._error_details(error))

    async def mark_expired(self, checkpoint_id: str) -> CheckpointRecord:
        return await self._finish(checkpoint_id, CheckpointStatus.EXPIRED)

    async def _finish(
        self, checkpoint_id: str, status: CheckpointStatus, error_details: Optional[ErrorDetails] = None
    ) -> CheckpointRecord:
        async with self._get_lock(checkpoint_id):
            current = await self._read(checkpoint_id)
            if current.is_terminal:
                self.logger.debug(
                    "Checkpoint already terminal",
                    checkpoint_id=checkpoint_id,
                    status=current.status.value,
                    requested=status.value,
                )
            else:
                merged = current.model_dump()
                merged["status"] = status
                merged["updated_at"] = self._clock()
                if error_details is not None:
                    merged["error_details"] = error_details.model_dump()
                record = validate_record(merged)
                await self._write(record)

        # Terminal records reject writes; their lock is dead weight.
        self._locks.pop(checkpoint_id, None)
        if current.is_terminal:
            return current

        self._counters[status.value] += 1
        log = self.logger.warning if status is CheckpointStatus.FAILED else self.logger.info
        log(
            "Checkpoint closed",
            checkpoint_id=checkpoint_id,
            status=status.value,
            error=error_details.message if error_details else None,
        )
        return record

    def _ensure_mutable(self, record: CheckpointRecord) -> None:
        if record.is_terminal:
            raise TerminalCheckpointError(record.checkpoint_id, record.status.value)

    def _error_details(self, error: Union[BaseException, Mapping[str, Any], str]) -> ErrorDetails:
        if isinstance(error, BaseException):
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__)) or None
            return ErrorDetails(
                message=str(error) or type(error).__name__,
                code=error_code(error),
                stack=stack,
                timestamp=self._clock(),
            )
        if isinstance(error, Mapping):
            details = {"timestamp": self._clock(), **error}
            return ErrorDetails.model_validate(details)
        return ErrorDetails(message=str(error), timestamp=self._clock())

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def is_expired(self, record: CheckpointRecord) -> bool:
        return is_expired(record, self._clock())

    def age(self, record: CheckpointRecord) -> int:
        """Seconds since the record was created."""
        return checkpoint_age(record, self._clock())

    async def find_latest(self, job_id: str) -> Optional[CheckpointRecord]:
        """Most recently created checkpoint for a job, if any."""
        try:
            records = await self.store.find_by_job(job_id)
        except ShelfCrawlError:
            raise
        except Exception as e:
            raise PersistenceError("find_by_job", None, e) from e
        return records[0] if records else None

    async def list_records(self) -> List[CheckpointRecord]:
        try:
            return await self.store.list_records()
        except ShelfCrawlError:
            raise
        except Exception as e:
            raise PersistenceError("list", None, e) from e

    async def delete(self, checkpoint_id: str) -> bool:
        try:
            deleted = await self.store.delete(checkpoint_id)
        except Exception as e:
            raise PersistenceError("delete", checkpoint_id, e) from e
        if deleted:
            self._counters["deleted"] += 1
        self._locks.pop(checkpoint_id, None)
        return deleted

    async def clear_expired(self) -> Dict[str, int]:
        """
        Expire active records past ``expires_at`` and delete terminal ones.

        Returns counts of records marked expired and records deleted.
        """
        expired = deleted = 0
        for record in await self.list_records():
            if not self.is_expired(record):
                continue
            if record.status is CheckpointStatus.ACTIVE:
                await self.mark_expired(record.checkpoint_id)
                expired += 1
            elif await self.delete(record.checkpoint_id):
                deleted += 1
        if expired or deleted:
            self.logger.info("Expired checkpoints cleared", expired=expired, deleted=deleted)
        return {"expired": expired, "deleted": deleted}

    def stats(self) -> Dict[str, Any]:
        return {**self._counters, "tracked_locks": len(self._locks)}

    @staticmethod
    def get_resume_point(record: CheckpointRecord) -> Dict[str, Any]:
        """Where a job should pick up from this checkpoint."""
        data = record.pipeline_data
        processed = set(data.urls_processed)
        remaining = [url for url in data.categories if url not in processed]
        return {
            "checkpoint_id": record.checkpoint_id,
            "pipeline_step": record.pipeline_step,
            "status": record.status.value,
            "discovered_count": len(data.urls_discovered),
            "processed_count": len(data.urls_processed),
            "remaining_categories": remaining,
            "results_count": len(data.extraction_results),
        }
