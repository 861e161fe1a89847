"""Execution context handed to job handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from creation_jobs.jobs.models import JobView, SubmitOptions
from creation_jobs.jobs.repository import JobRepository
from creation_jobs.notifier import ProgressSink

logger = logging.getLogger(__name__)


class JobSubmitter(Protocol):
    def submit(
        self,
        queue_name: str,
        payload: dict[str, Any],
        options: SubmitOptions | None = None,
    ) -> str: ...


@dataclass(slots=True)
class JobContext:
    """Claimed job plus the capabilities a handler may use."""

    job: JobView
    progress: ProgressSink
    submitter: JobSubmitter
    repository: JobRepository

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def subject_id(self) -> str | None:
        return self.job.subject_id

    @property
    def payload(self) -> dict[str, Any]:
        return self.job.payload

    @property
    def attempt(self) -> int:
        return self.job.attempts

    def report_progress(
        self,
        phase: str,
        percent: int,
        message: str = "",
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.progress.emit(phase, percent, message, payload)

    def enqueue(  # noqa: PLR0913
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0.0,
        dedup_key: str | None = None,
        priority: int | None = None,
        subject_id: str | None = None,
    ) -> str:
        """Chain a follow-on job; it inherits this job's subject unless overridden.

        Pass a ``dedup_key`` derived from this job so a redelivered handler
        does not chain the same work twice.
        """

        child_id = self.submitter.submit(
            queue_name,
            payload,
            SubmitOptions(
                delay_seconds=delay_seconds,
                dedup_key=dedup_key,
                priority=priority,
                subject_id=subject_id or self.job.subject_id,
            ),
        )
        self.record_event(
            "chained",
            {"queue_name": queue_name, "child_job_id": child_id, "dedup_key": dedup_key},
        )
        logger.info("Job %s chained %s job %s", self.job.job_id, queue_name, child_id)
        return child_id

    def record_event(self, event_type: str, details: dict[str, object]) -> None:
        self.repository.add_job_event(
            job_id=self.job.job_id,
            event_type=event_type,
            details=details,
        )
