"""Use-case services for submitting and inspecting jobs."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from creation_jobs.config import QueueConfig
from creation_jobs.errors import UnknownQueueError
from creation_jobs.jobs.models import (
    EnqueueResult,
    JobCreate,
    JobDetails,
    JobStatus,
    JobView,
    SubmitOptions,
)
from creation_jobs.jobs.repository import JobRepository
from creation_jobs.notifier import ProgressEvent, ProgressNotifier

logger = logging.getLogger(__name__)


class JobService:
    """Validates submissions against the queue table and inserts jobs."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        queue_configs: Mapping[str, QueueConfig],
        notifier: ProgressNotifier | None = None,
    ) -> None:
        self.repository = repository
        self.queue_configs = dict(queue_configs)
        self.notifier = notifier

    def submit(
        self,
        queue_name: str,
        payload: dict[str, Any],
        options: SubmitOptions | None = None,
    ) -> str:
        """Enqueue a job and return its id (the retained job's id on dedup)."""

        return self.submit_job(queue_name, payload, options).job.job_id

    def submit_job(
        self,
        queue_name: str,
        payload: dict[str, Any],
        options: SubmitOptions | None = None,
    ) -> EnqueueResult:
        config = self.queue_configs.get(queue_name)
        if config is None:
            raise UnknownQueueError(queue_name)
        if not isinstance(payload, dict):
            raise TypeError(f"Job payload must be a JSON object, got {type(payload).__name__}")
        options = options or SubmitOptions()
        if options.delay_seconds < 0:
            raise ValueError(f"Job delay must be >= 0, got {options.delay_seconds}")

        available_at = self.repository.clock() + timedelta(seconds=options.delay_seconds)
        result = self.repository.enqueue(
            JobCreate(
                queue_name=queue_name,
                payload=payload,
                subject_id=options.subject_id,
                dedup_key=options.dedup_key,
                priority=options.priority if options.priority is not None else config.priority,
                max_attempts=config.retry_policy.max_attempts,
                available_at=available_at,
            ),
        )
        job = result.job
        if not result.created:
            logger.info(
                "Job submit to %s deduplicated by key %s -> %s (%s)",
                queue_name,
                options.dedup_key,
                job.job_id,
                job.status.value,
            )
            return result

        logger.info(
            "Job dispatched: job_id=%s queue=%s subject=%s",
            job.job_id,
            queue_name,
            job.subject_id,
        )
        if self.notifier is not None:
            self.notifier.publish(
                ProgressEvent(
                    job_id=job.job_id,
                    subject_id=job.subject_id,
                    phase="queued",
                    percent=0,
                    message=f"Queued on {queue_name}",
                ),
            )
        return result

    def get_status(self, job_id: str) -> JobView | None:
        return self.repository.get_job(job_id=job_id)

    def get_job_details(self, job_id: str) -> JobDetails | None:
        return self.repository.get_job_details(job_id=job_id)

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        queue_name: str | None = None,
        subject_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_jobs(
            status=status,
            queue_name=queue_name,
            subject_id=subject_id,
            limit=limit,
        )
