from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from creation_jobs.config import default_queue_configs
from creation_jobs.errors import UnknownQueueError
from creation_jobs.jobs.models import JobStatus, SubmitOptions

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Submission"),
]


def test_submit_applies_queue_defaults(service, clock) -> None:
    job_id = service.submit("crm-sync", {"event": "user.created"})

    job = service.get_status(job_id)
    configs = default_queue_configs()
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.priority == configs["crm-sync"].priority
    assert job.max_attempts == configs["crm-sync"].retry_policy.max_attempts
    assert job.available_at == clock()


def test_submit_overrides_delay_priority_and_subject(service, clock) -> None:
    job_id = service.submit(
        "email-send",
        {"to": "a@example.com", "template": "welcome"},
        SubmitOptions(delay_seconds=30, priority=0, subject_id="brand-1"),
    )

    job = service.get_status(job_id)
    assert job is not None
    assert job.priority == 0
    assert job.subject_id == "brand-1"
    assert job.available_at == clock() + timedelta(seconds=30)


def test_submit_rejects_invalid_input(service) -> None:
    with pytest.raises(UnknownQueueError, match="Unknown queue: nope"):
        service.submit("nope", {})
    with pytest.raises(TypeError, match="JSON object"):
        service.submit("crm-sync", ["not", "a", "dict"])  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="delay must be >= 0"):
        service.submit("crm-sync", {}, SubmitOptions(delay_seconds=-1))
    assert service.list_jobs() == []


def test_submit_publishes_queued_event_once_per_dedup_key(service, notifier) -> None:
    options = SubmitOptions(dedup_key="welcome:user-1", subject_id="brand-1")
    with notifier.subscribe("brand-1") as subscription:
        first = service.submit_job("email-send", {"to": "a@example.com"}, options)
        second = service.submit_job("email-send", {"to": "a@example.com"}, options)
        events = subscription.drain()

    assert first.created is True
    assert second.created is False
    assert second.job.job_id == first.job.job_id
    assert [(event.phase, event.percent) for event in events] == [("queued", 0)]


def test_job_details_include_queued_event(service) -> None:
    job_id = service.submit("cleanup", {"kind": "expired-pools"})

    details = service.get_job_details(job_id)

    assert details is not None
    assert details.job.job_id == job_id
    assert details.events[0].status_to == JobStatus.QUEUED
    assert service.get_job_details("missing") is None
