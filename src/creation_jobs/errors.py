"""Exception hierarchy shared by the worker, coordinator and handlers."""

from __future__ import annotations


class JobError(Exception):
    """Base error raised from job handlers; retried by the worker pool."""


class NonRetryableJobError(JobError):
    """Handler failure that must end the job without further attempts."""


class InsufficientCreditsError(NonRetryableJobError):
    """Resource pool could not cover the amount a job needs."""

    def __init__(self, *, owner_id: str, resource_type: str, amount: int) -> None:
        super().__init__(
            f"Insufficient {resource_type} credits for owner {owner_id}: need {amount}",
        )
        self.owner_id = owner_id
        self.resource_type = resource_type
        self.amount = amount


class FanOutFailedError(JobError):
    """Too many sub-tasks of a decomposition failed or timed out."""

    def __init__(self, *, failures: int, total: int) -> None:
        super().__init__(f"{failures}/{total} sub-tasks failed")
        self.failures = failures
        self.total = total


class TolerantParseError(ValueError):
    """No JSON value could be recovered from model output."""


class UnknownQueueError(LookupError):
    """Job was submitted to a queue that is not configured."""

    def __init__(self, queue_name: str) -> None:
        super().__init__(f"Unknown queue: {queue_name}")
        self.queue_name = queue_name


class ProviderError(JobError):
    """External provider call failed."""
