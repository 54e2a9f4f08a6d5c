"""Checkpoint schema, persistence adapters and the CrawlCheckpoint manager."""

from .manager import CrawlCheckpoint
from .schema import (
    DEFAULT_TTL,
    CheckpointRecord,
    CheckpointStatus,
    ErrorDetails,
    JobType,
    PipelineData,
    PipelineStep,
    checkpoint_age,
    is_expired,
    prepare_for_document_store,
    record_from_document,
    utcnow,
    validate_record,
)
from .stores import (
    CheckpointStore,
    DocumentCheckpointStore,
    JsonFileCheckpointStore,
    MemoryCheckpointStore,
    SQLiteCheckpointStore,
)

__all__ = [
    "DEFAULT_TTL",
    "CheckpointRecord",
    "CheckpointStatus",
    "CheckpointStore",
    "CrawlCheckpoint",
    "DocumentCheckpointStore",
    "ErrorDetails",
    "JobType",
    "JsonFileCheckpointStore",
    "MemoryCheckpointStore",
    "PipelineData",
    "PipelineStep",
    "SQLiteCheckpointStore",
    "checkpoint_age",
    "is_expired",
    "prepare_for_document_store",
    "record_from_document",
    "utcnow",
    "validate_record",
]
