"""Persistent queue repository for pipeline jobs."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from creation_jobs.jobs.models import (
    TERMINAL_STATUSES,
    EnqueueResult,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
)
from creation_jobs.storage.alembic_runner import upgrade_head
from creation_jobs.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from creation_jobs.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StaleRecoveryResult:
    """Jobs whose abandoned claims were requeued or exhausted."""

    requeued: list[str] = field(default_factory=list)
    dead_lettered: list[JobView] = field(default_factory=list)


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: JobCreate) -> EnqueueResult:
        """Create a queued job, or return the retained job sharing its dedup key."""

        now = self.clock()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                queue_name=payload.queue_name,
                subject_id=payload.subject_id,
                dedup_key=payload.dedup_key,
                priority=payload.priority,
                status=JobStatus.QUEUED.value,
                attempts=0,
                max_attempts=payload.max_attempts,
                available_at=to_db_datetime(payload.available_at or now),
                payload_json=_dump_json(payload.payload),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "queue_name": payload.queue_name,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                    "dedup_key": payload.dedup_key,
                },
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if payload.dedup_key is None:
                    raise
                existing = session.exec(
                    select(Job).where(
                        Job.queue_name == payload.queue_name,
                        Job.dedup_key == payload.dedup_key,
                    ),
                ).one_or_none()
                if existing is None:
                    raise
                logger.debug(
                    "Deduplicated enqueue on %s with key %s -> %s",
                    payload.queue_name,
                    payload.dedup_key,
                    existing.job_id,
                )
                return EnqueueResult(job=_to_job_view(existing), created=False)
            session.refresh(row)
            return EnqueueResult(job=_to_job_view(row), created=True)

    def claim_next_ready(self, *, queue_name: str, worker_id: str) -> JobView | None:
        """Atomically claim one job of ``queue_name`` ready for execution."""

        while True:
            now = self.clock()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        Job.queue_name == queue_name,
                        Job.status == JobStatus.QUEUED.value,
                        Job.available_at <= to_db_datetime(now),
                    )
                    .order_by(
                        col(Job.priority).asc(),
                        col(Job.available_at).asc(),
                        col(Job.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                claim_token = uuid4().hex
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts=col(Job.attempts) + 1,
                        started_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        claim_token=claim_token,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(Job)
                    .where(Job.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempts},
                )
                session.commit()
                session.refresh(claimed)
                return _to_job_view(claimed)

    def complete(
        self,
        *,
        job_id: str,
        claim_token: str | None,
        result: Any,
        event_details: dict[str, object] | None = None,
    ) -> bool:
        """Mark an active job as completed and persist its result."""

        now = self.clock()
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.ACTIVE.value,
                    col(Job.claim_token) == claim_token,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=_dump_json(result),
                    finished_at=to_db_datetime(now),
                    claim_token=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.COMPLETED,
                details=event_details or {},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        claim_token: str | None,
        available_at: datetime,
        failure_class: FailureClass,
        error_summary: str,
        event_details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue an active job for automatic retry after a backoff delay."""

        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.ACTIVE.value,
                    col(Job.claim_token) == claim_token,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    available_at=to_db_datetime(available_at),
                    failure_class=failure_class.value,
                    last_error=error_summary,
                    started_at=None,
                    worker_id=None,
                    claim_token=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.QUEUED,
                details={
                    "available_at": to_utc_aware_datetime(available_at).isoformat(),
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(event_details or {}),
                },
            )
            session.commit()
            return True

    def fail(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        claim_token: str | None,
        status: JobStatus,
        failure_class: FailureClass,
        error_summary: str,
        event_details: dict[str, object] | None = None,
    ) -> bool:
        """Mark an active job as terminally failed or dead-lettered."""

        if status not in {JobStatus.FAILED, JobStatus.DEAD_LETTERED}:
            raise ValueError(f"Unsupported failure status: {status}")

        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.ACTIVE.value,
                    col(Job.claim_token) == claim_token,
                )
                .values(
                    status=status.value,
                    failure_class=failure_class.value,
                    last_error=error_summary,
                    finished_at=to_db_datetime(now),
                    claim_token=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="dead_lettered" if status == JobStatus.DEAD_LETTERED else "failed",
                status_from=JobStatus.ACTIVE,
                status_to=status,
                details={
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(event_details or {}),
                },
            )
            session.commit()
            return True

    def recover_stale_active(
        self,
        *,
        stale_after: timedelta,
        queue_name: str | None = None,
    ) -> StaleRecoveryResult:
        """Requeue active jobs whose claim is older than ``stale_after``.

        Jobs that already used their whole attempt budget are dead-lettered
        instead, so a crash loop cannot run a job more than ``max_attempts``
        times.
        """

        now = self.clock()
        cutoff = now - stale_after
        recovery = StaleRecoveryResult()
        with Session(self.engine) as session:
            statement = select(Job).where(
                Job.status == JobStatus.ACTIVE.value,
                col(Job.started_at) <= to_db_datetime(cutoff),
            )
            if queue_name is not None:
                statement = statement.where(Job.queue_name == queue_name)
            candidates = session.exec(statement).all()
            stale = [(row.job_id, row.claim_token, row.attempts, row.max_attempts) for row in candidates]

        for job_id, claim_token, attempts, max_attempts in stale:
            summary = f"Claim expired after {int(stale_after.total_seconds())}s without completion"
            if attempts >= max_attempts:
                if self.fail(
                    job_id=job_id,
                    claim_token=claim_token,
                    status=JobStatus.DEAD_LETTERED,
                    failure_class=FailureClass.STALE_CLAIM,
                    error_summary=summary,
                    event_details={"terminal": True, "attempts": attempts},
                ):
                    job = self.get_job(job_id=job_id)
                    if job is not None:
                        recovery.dead_lettered.append(job)
                continue
            if self._requeue_stale(job_id=job_id, claim_token=claim_token, summary=summary):
                recovery.requeued.append(job_id)

        if recovery.requeued or recovery.dead_lettered:
            logger.warning(
                "Recovered stale claims: requeued=%d dead_lettered=%d",
                len(recovery.requeued),
                len(recovery.dead_lettered),
            )
        return recovery

    def _requeue_stale(self, *, job_id: str, claim_token: str | None, summary: str) -> bool:
        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.ACTIVE.value,
                    col(Job.claim_token) == claim_token,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    available_at=to_db_datetime(now),
                    failure_class=FailureClass.STALE_CLAIM.value,
                    last_error=summary,
                    started_at=None,
                    worker_id=None,
                    claim_token=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="stale_requeued",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.QUEUED,
                details={"failure_class": FailureClass.STALE_CLAIM.value},
            )
            session.commit()
            return True

    def purge_terminal(self, *, statuses: set[JobStatus], finished_before: datetime) -> int:
        """Delete terminal jobs (and their events) finished before the cutoff."""

        invalid = statuses - TERMINAL_STATUSES
        if invalid:
            raise ValueError(f"Only terminal jobs can be purged, got {sorted(invalid)}")
        if not statuses:
            return 0

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.status).in_([status.value for status in statuses]),
                    col(Job.finished_at) < to_db_datetime(finished_before),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append a non-transition audit event for a job."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        queue_name: str | None = None,
        subject_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(Job)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if queue_name is not None:
                statement = statement.where(Job.queue_name == queue_name)
            if subject_id is not None:
                statement = statement.where(Job.subject_id == subject_id)
            statement = statement.order_by(col(Job.created_at).desc()).limit(limit)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if job is None:
                return None

            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            view = _to_job_view(job)

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )

        return JobDetails(job=view, events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(self.clock()),
            ),
        )


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _to_job_view(row: Job) -> JobView:
    payload = _load_json(row.payload_json)
    return JobView(
        job_id=row.job_id,
        queue_name=row.queue_name,
        subject_id=row.subject_id,
        dedup_key=row.dedup_key,
        priority=row.priority,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        available_at=to_utc_aware_datetime(row.available_at),
        payload=payload if isinstance(payload, dict) else {},
        result=_load_json(row.result_json),
        last_error=row.last_error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        worker_id=row.worker_id,
        claim_token=row.claim_token,
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
