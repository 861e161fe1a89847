"""Escalation of dead-lettered jobs to an external error sink."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from creation_jobs.config import ReportingSettings
from creation_jobs.jobs.failure_classifier import summarize_error
from creation_jobs.jobs.models import JobView

logger = logging.getLogger(__name__)


class FatalReporter(Protocol):
    def report_fatal(self, job: JobView, error: BaseException) -> None: ...


class LoggingFatalReporter:
    """Report dead-lettered jobs to the application log."""

    def report_fatal(self, job: JobView, error: BaseException) -> None:
        logger.error(
            "Job %s on %s dead-lettered after %d/%d attempts: %s",
            job.job_id,
            job.queue_name,
            job.attempts,
            job.max_attempts,
            summarize_error(error),
        )


class WebhookFatalReporter:
    """POST dead-letter reports to a webhook; delivery failures are only logged."""

    def __init__(
        self,
        *,
        webhook_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self._fallback = LoggingFatalReporter()
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport or httpx.HTTPTransport(retries=1),
        )

    def report_fatal(self, job: JobView, error: BaseException) -> None:
        self._fallback.report_fatal(job, error)
        body = {
            "job_id": job.job_id,
            "queue_name": job.queue_name,
            "subject_id": job.subject_id,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "error_type": type(error).__name__,
            "error": summarize_error(error),
        }
        try:
            response = self._client.post(self.webhook_url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Fatal report delivery failed for job %s: %s", job.job_id, exc)
            return
        if not response.is_success:
            logger.warning(
                "Fatal report webhook answered HTTP %d for job %s",
                response.status_code,
                job.job_id,
            )

    def close(self) -> None:
        self._client.close()


def resolve_fatal_reporter(settings: ReportingSettings) -> FatalReporter:
    if settings.webhook_url:
        return WebhookFatalReporter(
            webhook_url=settings.webhook_url,
            timeout_seconds=settings.request_timeout_seconds,
        )
    return LoggingFatalReporter()
