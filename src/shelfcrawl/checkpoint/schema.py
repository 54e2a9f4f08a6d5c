"""
Checkpoint record schema.

A checkpoint is one job's persisted progress through the four pipeline
steps. Validation is strict: unknown fields are rejected, ids must be UUID
v4 strings, domains must look like real host names, and integer fields
truncate non-integer numeric input (2.7 becomes 2) before range checks so
that what is stored always has integer typing.
"""

from __future__ import annotations

import copy
import math
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from shelfcrawl.exceptions import CheckpointValidationError

UUID_V4_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
DOMAIN_PATTERN = re.compile(r"^([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}$", re.IGNORECASE)

DEFAULT_TTL = timedelta(days=30)
MIN_STEP = 1
MAX_STEP = 4


class JobType(Enum):
    PRODUCT_CATALOG = "product_catalog"
    PRODUCT_DETAIL = "product_detail"
    CATEGORY_DISCOVERY = "category_discovery"
    SEARCH_RESULTS = "search_results"


class CheckpointStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not CheckpointStatus.ACTIVE


class PipelineStep(Enum):
    NAVIGATION = 1
    CATEGORY_EXPANSION = 2
    EXTRACTION = 3
    FINALIZE = 4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate_int(value: Any) -> Any:
    """Truncate finite floats toward zero; leave anything else for pydantic to judge."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a valid integer")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError("integer field must be finite")
        return math.trunc(value)
    return value


def _aware(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ErrorDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str = Field(min_length=1)
    code: Optional[str] = None
    stack: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp", mode="before")
    @classmethod
    def assume_utc(cls, v: Any) -> Any:
        return _aware(v)


class PipelineData(BaseModel):
    """Work-in-progress data carried between pipeline steps."""

    model_config = ConfigDict(extra="forbid")

    urls_discovered: List[str] = Field(default_factory=list)
    urls_processed: List[str] = Field(default_factory=list)
    current_page: int = Field(default=1, ge=1)
    pagination_state: Dict[str, Any] = Field(default_factory=dict)
    extraction_results: List[Dict[str, Any]] = Field(default_factory=list)
    main_categories: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    category_names: Dict[str, str] = Field(default_factory=dict)
    category_errors: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("current_page", mode="before")
    @classmethod
    def truncate_page(cls, v: Any) -> Any:
        return truncate_int(v)

    @field_validator("extraction_results")
    @classmethod
    def results_have_urls(cls, v: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for index, result in enumerate(v):
            if not result.get("url"):
                raise ValueError(f"extraction result {index} has no url")
        return v

    @model_validator(mode="after")
    def processed_subset_of_discovered(self) -> "PipelineData":
        discovered = set(self.urls_discovered)
        stray = [url for url in self.urls_processed if url not in discovered]
        if stray:
            raise ValueError(f"urls_processed contains undiscovered urls: {stray[:3]}")
        return self


class CheckpointRecord(BaseModel):
    """Persisted progress of one crawl job."""

    model_config = ConfigDict(extra="forbid")

    checkpoint_id: str = Field(default_factory=lambda: str(uuid4()))
    site_domain: str = Field(min_length=4, max_length=253)
    job_type: JobType = JobType.PRODUCT_CATALOG
    pipeline_step: int = Field(default=MIN_STEP, ge=MIN_STEP, le=MAX_STEP)
    pipeline_data: PipelineData = Field(default_factory=PipelineData)
    status: CheckpointStatus = CheckpointStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    error_details: Optional[ErrorDetails] = None
    job_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("checkpoint_id")
    @classmethod
    def check_uuid_v4(cls, v: str) -> str:
        if not UUID_V4_PATTERN.match(v):
            raise ValueError("checkpoint_id must be a UUID v4")
        return v.lower()

    @field_validator("site_domain", mode="before")
    @classmethod
    def normalise_domain(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("site_domain")
    @classmethod
    def check_domain(cls, v: str) -> str:
        if not DOMAIN_PATTERN.match(v):
            raise ValueError("site_domain must be a valid domain name")
        return v

    @field_validator("pipeline_step", mode="before")
    @classmethod
    def truncate_step(cls, v: Any) -> Any:
        return truncate_int(v)

    @field_validator("created_at", "updated_at", "expires_at", mode="before")
    @classmethod
    def assume_utc(cls, v: Any) -> Any:
        return _aware(v)

    @model_validator(mode="after")
    def default_expiry(self) -> "CheckpointRecord":
        if self.expires_at is None:
            self.expires_at = self.created_at + DEFAULT_TTL
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


def _field_names(error: ValidationError) -> List[str]:
    names: List[str] = []
    for detail in error.errors():
        name = ".".join(str(part) for part in detail.get("loc", ())) or "__root__"
        if name not in names:
            names.append(name)
    return names


def validate_record(data: Union[Mapping[str, Any], CheckpointRecord]) -> CheckpointRecord:
    """Validate raw fields into a record, raising CheckpointValidationError on any violation."""
    if isinstance(data, CheckpointRecord):
        data = data.model_dump()
    try:
        return CheckpointRecord.model_validate(dict(data))
    except ValidationError as e:
        raise CheckpointValidationError(f"Invalid checkpoint: {e.error_count()} error(s)", _field_names(e)) from e


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def prepare_for_document_store(record: Union[CheckpointRecord, Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Shape a checkpoint for a document database.

    Enum members become their values, datetimes stay native, ``_id`` mirrors
    ``checkpoint_id`` and integer fields are truncated so the store never
    sees 2.7 where it expects an integer. Missing ``expires_at`` is filled in.
    """
    if isinstance(record, CheckpointRecord):
        document = _plain(record.model_dump())
    else:
        document = _plain(copy.deepcopy(dict(record)))

    if "pipeline_step" in document and document["pipeline_step"] is not None:
        document["pipeline_step"] = int(truncate_int(document["pipeline_step"]))
    pipeline_data = document.get("pipeline_data")
    if isinstance(pipeline_data, dict) and pipeline_data.get("current_page") is not None:
        pipeline_data["current_page"] = int(truncate_int(pipeline_data["current_page"]))

    if document.get("expires_at") is None:
        created = _aware(document.get("created_at")) or utcnow()
        document["expires_at"] = created + DEFAULT_TTL
    if document.get("checkpoint_id"):
        document["_id"] = document["checkpoint_id"]
    return document


def record_from_document(document: Mapping[str, Any]) -> CheckpointRecord:
    data = {key: value for key, value in document.items() if key != "_id"}
    return validate_record(data)


def is_expired(record: CheckpointRecord, now: Optional[datetime] = None) -> bool:
    if record.expires_at is None:
        return False
    return (now or utcnow()) > record.expires_at


def checkpoint_age(record: CheckpointRecord, now: Optional[datetime] = None) -> int:
    """Whole seconds since the record was created."""
    return max(0, math.floor(((now or utcnow()) - record.created_at).total_seconds()))
