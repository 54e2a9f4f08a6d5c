"""
Checkpoint store adapters.

Every adapter offers an atomic upsert keyed by checkpoint id, a point read
and a delete, plus job lookup and listing for resumption and maintenance.
Adapters raise their native errors; CrawlCheckpoint wraps them into
PersistenceError.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import aiofiles
import aiosqlite
import structlog

from shelfcrawl.checkpoint.schema import (
    CheckpointRecord,
    prepare_for_document_store,
    record_from_document,
    validate_record,
)
from shelfcrawl.exceptions import CheckpointValidationError
from shelfcrawl.utils.atomic import atomic_write_json, remove_stale_temp_files

logger = structlog.get_logger(__name__)


@runtime_checkable
class CheckpointStore(Protocol):
    """Persistent checkpoint store contract."""

    async def upsert(self, checkpoint_id: str, record: CheckpointRecord) -> None:
        ...

    async def get(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        ...

    async def delete(self, checkpoint_id: str) -> bool:
        ...

    async def find_by_job(self, job_id: str) -> List[CheckpointRecord]:
        ...

    async def list_records(self) -> List[CheckpointRecord]:
        ...

    async def close(self) -> None:
        ...


def _newest_first(records: List[CheckpointRecord]) -> List[CheckpointRecord]:
    return sorted(records, key=lambda record: record.created_at, reverse=True)


class MemoryCheckpointStore:
    """Process-local store. Records are kept in serialised form so callers never share objects."""

    def __init__(self) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}

    async def upsert(self, checkpoint_id: str, record: CheckpointRecord) -> None:
        self._documents[checkpoint_id] = record.model_dump(mode="json")

    async def get(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        document = self._documents.get(checkpoint_id)
        return validate_record(document) if document is not None else None

    async def delete(self, checkpoint_id: str) -> bool:
        return self._documents.pop(checkpoint_id, None) is not None

    async def find_by_job(self, job_id: str) -> List[CheckpointRecord]:
        return _newest_first([r for r in await self.list_records() if r.job_id == job_id])

    async def list_records(self) -> List[CheckpointRecord]:
        return [validate_record(document) for document in self._documents.values()]

    async def close(self) -> None:
        return None


class JsonFileCheckpointStore:
    """One JSON file per checkpoint, replaced atomically on every write."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        remove_stale_temp_files(self.directory)

    def _path(self, checkpoint_id: str) -> Path:
        return self.directory / f"{checkpoint_id}.json"

    async def upsert(self, checkpoint_id: str, record: CheckpointRecord) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, atomic_write_json, self._path(checkpoint_id), record.model_dump(mode="json"))

    async def _read(self, path: Path) -> Optional[CheckpointRecord]:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        return validate_record(json.loads(content))

    async def get(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        return await self._read(self._path(checkpoint_id))

    async def delete(self, checkpoint_id: str) -> bool:
        path = self._path(checkpoint_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    async def find_by_job(self, job_id: str) -> List[CheckpointRecord]:
        return _newest_first([r for r in await self.list_records() if r.job_id == job_id])

    async def list_records(self) -> List[CheckpointRecord]:
        records: List[CheckpointRecord] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                record = await self._read(path)
            except (ValueError, OSError, CheckpointValidationError) as e:
                logger.warning("Skipping unreadable checkpoint file", path=str(path), error=str(e))
                continue
            if record is not None:
                records.append(record)
        return records

    async def close(self) -> None:
        return None


class SQLiteCheckpointStore:
    """Checkpoints in a single SQLite table, one row per checkpoint."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS checkpoints (
                checkpoint_id TEXT PRIMARY KEY,
                job_id TEXT,
                site_domain TEXT NOT NULL,
                status TEXT NOT NULL,
                pipeline_step INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT,
                document TEXT NOT NULL
            )
            """
        )
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_checkpoints_job ON checkpoints(job_id)")
        await self._db.commit()

    async def _connection(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        assert self._db is not None
        return self._db

    async def upsert(self, checkpoint_id: str, record: CheckpointRecord) -> None:
        document = record.model_dump(mode="json")
        db = await self._connection()
        async with self._lock:
            await db.execute(
                """
                INSERT INTO checkpoints
                    (checkpoint_id, job_id, site_domain, status, pipeline_step, created_at, expires_at, document)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(checkpoint_id) DO UPDATE SET
                    job_id = excluded.job_id,
                    site_domain = excluded.site_domain,
                    status = excluded.status,
                    pipeline_step = excluded.pipeline_step,
                    expires_at = excluded.expires_at,
                    document = excluded.document
                """,
                (
                    checkpoint_id,
                    record.job_id,
                    record.site_domain,
                    record.status.value,
                    int(record.pipeline_step),
                    document["created_at"],
                    document["expires_at"],
                    json.dumps(document),
                ),
            )
            await db.commit()

    async def get(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        db = await self._connection()
        async with db.execute("SELECT document FROM checkpoints WHERE checkpoint_id = ?", (checkpoint_id,)) as cursor:
            row = await cursor.fetchone()
        return validate_record(json.loads(row[0])) if row else None

    async def delete(self, checkpoint_id: str) -> bool:
        db = await self._connection()
        async with self._lock:
            cursor = await db.execute("DELETE FROM checkpoints WHERE checkpoint_id = ?", (checkpoint_id,))
            await db.commit()
        return cursor.rowcount > 0

    async def find_by_job(self, job_id: str) -> List[CheckpointRecord]:
        db = await self._connection()
        async with db.execute(
            "SELECT document FROM checkpoints WHERE job_id = ? ORDER BY created_at DESC", (job_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [validate_record(json.loads(row[0])) for row in rows]

    async def list_records(self) -> List[CheckpointRecord]:
        db = await self._connection()
        async with db.execute("SELECT document FROM checkpoints ORDER BY created_at") as cursor:
            rows = await cursor.fetchall()
        return [validate_record(json.loads(row[0])) for row in rows]

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None


class DocumentCheckpointStore:
    """
    Adapter for a MongoDB-style async collection (for example a motor collection).

    Only ``replace_one``, ``find_one``, ``delete_one`` and ``find`` are used,
    so any object offering the same coroutine API works. Documents go through
    ``prepare_for_document_store`` so integer fields keep integer typing and
    timestamps are stored natively, which lets a TTL index on ``expires_at``
    expire records server side.
    """

    def __init__(self, collection: Any) -> None:
        self.collection = collection

    async def upsert(self, checkpoint_id: str, record: CheckpointRecord) -> None:
        document = prepare_for_document_store(record)
        await self.collection.replace_one({"_id": checkpoint_id}, document, upsert=True)

    async def get(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        document = await self.collection.find_one({"_id": checkpoint_id})
        return record_from_document(document) if document else None

    async def delete(self, checkpoint_id: str) -> bool:
        result = await self.collection.delete_one({"_id": checkpoint_id})
        return bool(getattr(result, "deleted_count", 0))

    async def _find(self, query: Dict[str, Any]) -> List[CheckpointRecord]:
        cursor = self.collection.find(query)
        documents = await cursor.to_list(length=None)
        return [record_from_document(document) for document in documents]

    async def find_by_job(self, job_id: str) -> List[CheckpointRecord]:
        return _newest_first(await self._find({"job_id": job_id}))

    async def list_records(self) -> List[CheckpointRecord]:
        return await self._find({})

    async def close(self) -> None:
        return None
