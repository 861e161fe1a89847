"""Domain models for durable jobs and their audit trail."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DEAD_LETTERED},
)


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    HANDLER_ERROR = "handler_error"
    NON_RETRYABLE = "non_retryable"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    FAN_OUT_THRESHOLD = "fan_out_threshold"
    STALE_CLAIM = "stale_claim"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    queue_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    subject_id: str | None = None
    dedup_key: str | None = None
    priority: int = 100
    max_attempts: int = 3
    available_at: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for services, workers and the CLI."""

    job_id: str
    queue_name: str
    subject_id: str | None
    dedup_key: str | None
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    available_at: datetime
    payload: dict[str, Any]
    result: Any
    last_error: str | None
    failure_class: FailureClass | None
    worker_id: str | None
    claim_token: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class EnqueueResult:
    """Outcome of an enqueue; ``created`` is false for a deduplicated submit."""

    job: JobView
    created: bool


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class SubmitOptions:
    """Per-submit overrides; queue defaults apply where unset."""

    delay_seconds: float = 0.0
    dedup_key: str | None = None
    priority: int | None = None
    subject_id: str | None = None
