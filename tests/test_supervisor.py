from __future__ import annotations

import time

import allure
import pytest

from creation_jobs.config import QueueConfig, RetryPolicy
from creation_jobs.jobs.context import JobContext
from creation_jobs.jobs.models import FailureClass, JobStatus, SubmitOptions
from creation_jobs.jobs.services import JobService
from creation_jobs.jobs.supervisor import Supervisor

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Supervisor Lifecycle"),
]

FAST = QueueConfig(name="fast", concurrency=2, retry_policy=RetryPolicy(max_attempts=1))
PARENT = QueueConfig(name="parent", concurrency=1)
CHILD = QueueConfig(name="child", concurrency=1)
CONFIGS = {config.name: config for config in (FAST, PARENT, CHILD)}


@pytest.fixture()
def queue_service(repository, notifier) -> JobService:
    return JobService(repository=repository, queue_configs=CONFIGS, notifier=notifier)


@pytest.fixture()
def supervisor(repository, queue_service, notifier, reporter) -> Supervisor:
    return Supervisor(
        repository=repository,
        submitter=queue_service,
        notifier=notifier,
        reporter=reporter,
        worker_id="supervisor-test",
        poll_interval_seconds=0.01,
        stale_after_seconds=60,
    )


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        time.sleep(0.01)


def test_start_and_drain_processes_every_job(supervisor, queue_service, repository) -> None:
    supervisor.register("fast", lambda context: {"echo": context.payload["n"]})
    job_ids = [queue_service.submit("fast", {"n": index}) for index in range(3)]

    supervisor.start(CONFIGS)
    assert supervisor.running
    _wait_for(
        lambda: all(
            (job := repository.get_job(job_id=job_id)) is not None
            and job.status == JobStatus.COMPLETED
            for job_id in job_ids
        ),
    )
    drained = supervisor.shutdown(drain=True, timeout=5.0)

    assert drained is True
    assert not supervisor.running
    assert supervisor.last_summaries["fast"].succeeded == 3
    assert [repository.get_job(job_id=job_id).result for job_id in job_ids] == [
        {"echo": 0},
        {"echo": 1},
        {"echo": 2},
    ]


def test_lifecycle_guards(supervisor) -> None:
    with pytest.raises(RuntimeError, match="No handlers registered"):
        supervisor.start(CONFIGS)

    supervisor.register("fast", lambda context: None)
    with pytest.raises(ValueError, match="already registered"):
        supervisor.register("fast", lambda context: None)
    with pytest.raises(ValueError, match="No handler registered for queue 'parent'"):
        supervisor.run_once(CONFIGS, queue_name="parent")

    supervisor.start(CONFIGS)
    try:
        with pytest.raises(RuntimeError, match="already started"):
            supervisor.start(CONFIGS)
        with pytest.raises(RuntimeError, match="before start"):
            supervisor.register("parent", lambda context: None)
    finally:
        supervisor.shutdown(drain=True, timeout=5.0)


def test_shutdown_without_drain_returns_immediately(supervisor, queue_service, repository) -> None:
    started = []

    def slow(context: JobContext) -> dict[str, int]:
        started.append(context.job_id)
        time.sleep(1.0)
        return {"slept": 1}

    supervisor.register("fast", slow)
    job_id = queue_service.submit("fast", {})
    supervisor.start(CONFIGS)
    _wait_for(lambda: bool(started))

    began = time.monotonic()
    drained = supervisor.shutdown(drain=False)
    elapsed = time.monotonic() - began

    assert drained is False
    assert elapsed < 0.2
    assert not supervisor.running
    assert "fast" in supervisor.last_summaries
    _wait_for(lambda: repository.get_job(job_id=job_id).status == JobStatus.COMPLETED)
    assert repository.get_job(job_id=job_id).result == {"slept": 1}

    supervisor.start(CONFIGS)
    try:
        assert supervisor.running
    finally:
        assert supervisor.shutdown(drain=True, timeout=5.0)


def test_handler_without_queue_config_is_rejected(supervisor) -> None:
    supervisor.register("unknown", lambda context: None)

    with pytest.raises(ValueError, match="No queue configuration"):
        supervisor.start(CONFIGS)


def test_recover_stale_claims_dead_letters_exhausted_jobs(
    supervisor,
    queue_service,
    repository,
    reporter,
    clock,
) -> None:
    exhausted = queue_service.submit("fast", {})
    retryable = queue_service.submit("parent", {})
    assert repository.claim_next_ready(queue_name="fast", worker_id="crashed")
    assert repository.claim_next_ready(queue_name="parent", worker_id="crashed")
    clock.advance(120)

    assert supervisor.recover_stale_claims() == 2

    dead = repository.get_job(job_id=exhausted)
    assert dead is not None
    assert dead.status == JobStatus.DEAD_LETTERED
    assert dead.failure_class == FailureClass.STALE_CLAIM
    requeued = repository.get_job(job_id=retryable)
    assert requeued is not None and requeued.status == JobStatus.QUEUED
    assert [job.job_id for job, _ in reporter.reports] == [exhausted]


def test_subject_subscription_follows_chained_jobs(supervisor, queue_service, notifier) -> None:
    def parent(context: JobContext) -> dict[str, str]:
        child_id = context.enqueue("child", {"from": context.job_id}, dedup_key=f"child:{context.job_id}")
        context.report_progress("chained", 50, "Child submitted")
        return {"child_id": child_id}

    supervisor.register("parent", parent)
    supervisor.register("child", lambda context: {"parent": context.payload["from"]})

    with notifier.subscribe("brand-1") as subscription:
        parent_id = queue_service.submit("parent", {}, SubmitOptions(subject_id="brand-1"))
        summary = supervisor.run_once(CONFIGS)
        events = subscription.drain()

    assert summary.succeeded == 2
    job_ids = {event.job_id for event in events}
    assert parent_id in job_ids
    assert len(job_ids) == 2
    assert [event.phase for event in events if event.job_id == parent_id] == [
        "queued",
        "active",
        "chained",
        "completed",
    ]
    child_phases = [event.phase for event in events if event.job_id != parent_id]
    assert child_phases == ["queued", "active", "completed"]
