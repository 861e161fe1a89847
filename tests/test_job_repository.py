from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from creation_jobs.jobs.models import FailureClass, JobCreate, JobStatus
from creation_jobs.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Durable Job Store"),
]


def test_enqueue_and_claim_increments_attempts(repository: JobRepository) -> None:
    created = repository.enqueue(JobCreate(queue_name="email-send", payload={"to": "a@b.c"}))
    assert created.created is True
    assert created.job.status == JobStatus.QUEUED
    assert created.job.attempts == 0

    claimed = repository.claim_next_ready(queue_name="email-send", worker_id="w-1")
    assert claimed is not None
    assert claimed.job_id == created.job.job_id
    assert claimed.status == JobStatus.ACTIVE
    assert claimed.attempts == 1
    assert claimed.worker_id == "w-1"
    assert claimed.claim_token

    assert repository.claim_next_ready(queue_name="email-send", worker_id="w-2") is None


def test_claim_respects_queue_priority_and_availability(repository: JobRepository, clock) -> None:
    later = repository.enqueue(
        JobCreate(queue_name="q", payload={}, priority=1, available_at=clock() + timedelta(seconds=30)),
    )
    low = repository.enqueue(JobCreate(queue_name="q", payload={"n": "low"}, priority=50))
    high = repository.enqueue(JobCreate(queue_name="q", payload={"n": "high"}, priority=5))
    repository.enqueue(JobCreate(queue_name="other", payload={}, priority=0))

    first = repository.claim_next_ready(queue_name="q", worker_id="w")
    second = repository.claim_next_ready(queue_name="q", worker_id="w")
    assert first is not None and second is not None
    assert [first.job_id, second.job_id] == [high.job.job_id, low.job.job_id]
    assert repository.claim_next_ready(queue_name="q", worker_id="w") is None

    clock.advance(30)
    delayed = repository.claim_next_ready(queue_name="q", worker_id="w")
    assert delayed is not None
    assert delayed.job_id == later.job.job_id


def test_dedup_key_returns_retained_job(repository: JobRepository) -> None:
    first = repository.enqueue(JobCreate(queue_name="crm-sync", payload={"n": 1}, dedup_key="k"))
    second = repository.enqueue(JobCreate(queue_name="crm-sync", payload={"n": 2}, dedup_key="k"))
    other_queue = repository.enqueue(JobCreate(queue_name="email-send", payload={}, dedup_key="k"))

    assert first.created is True
    assert second.created is False
    assert second.job.job_id == first.job.job_id
    assert second.job.payload == {"n": 1}
    assert other_queue.created is True
    assert len(repository.list_jobs(queue_name="crm-sync")) == 1


def test_transitions_require_current_claim_token(repository: JobRepository) -> None:
    job = repository.enqueue(JobCreate(queue_name="q", payload={})).job
    claimed = repository.claim_next_ready(queue_name="q", worker_id="w")
    assert claimed is not None

    assert repository.complete(job_id=job.job_id, claim_token="stale", result={}) is False
    assert (
        repository.fail(
            job_id=job.job_id,
            claim_token="stale",
            status=JobStatus.FAILED,
            failure_class=FailureClass.HANDLER_ERROR,
            error_summary="boom",
        )
        is False
    )
    assert repository.complete(job_id=job.job_id, claim_token=claimed.claim_token, result={"ok": 1})
    assert repository.complete(job_id=job.job_id, claim_token=claimed.claim_token, result={}) is False

    stored = repository.get_job(job_id=job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == {"ok": 1}
    assert stored.claim_token is None
    assert stored.finished_at is not None


def test_schedule_retry_requeues_with_backoff(repository: JobRepository, clock) -> None:
    job = repository.enqueue(JobCreate(queue_name="q", payload={}, max_attempts=3)).job
    claimed = repository.claim_next_ready(queue_name="q", worker_id="w")
    assert claimed is not None

    assert repository.schedule_retry(
        job_id=job.job_id,
        claim_token=claimed.claim_token,
        available_at=clock() + timedelta(seconds=5),
        failure_class=FailureClass.HANDLER_ERROR,
        error_summary="transient",
    )
    retried = repository.get_job(job_id=job.job_id)
    assert retried is not None
    assert retried.status == JobStatus.QUEUED
    assert retried.attempts == 1
    assert retried.last_error == "transient"
    assert retried.available_at == clock() + timedelta(seconds=5)
    assert repository.claim_next_ready(queue_name="q", worker_id="w") is None

    clock.advance(5)
    again = repository.claim_next_ready(queue_name="q", worker_id="w")
    assert again is not None
    assert again.attempts == 2


def test_fail_rejects_non_terminal_status(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="Unsupported failure status"):
        repository.fail(
            job_id="x",
            claim_token=None,
            status=JobStatus.QUEUED,
            failure_class=FailureClass.HANDLER_ERROR,
            error_summary="nope",
        )


def test_recover_stale_active_requeues_or_dead_letters(repository: JobRepository, clock) -> None:
    retryable = repository.enqueue(JobCreate(queue_name="q", payload={}, max_attempts=3)).job
    exhausted = repository.enqueue(JobCreate(queue_name="z", payload={}, max_attempts=1)).job
    assert repository.claim_next_ready(queue_name="q", worker_id="w") is not None
    assert repository.claim_next_ready(queue_name="z", worker_id="w") is not None

    assert repository.recover_stale_active(stale_after=timedelta(minutes=10)).requeued == []

    clock.advance(601)
    recovery = repository.recover_stale_active(stale_after=timedelta(minutes=10))
    assert recovery.requeued == [retryable.job_id]
    assert [job.job_id for job in recovery.dead_lettered] == [exhausted.job_id]

    requeued = repository.get_job(job_id=retryable.job_id)
    dead = repository.get_job(job_id=exhausted.job_id)
    assert requeued is not None and dead is not None
    assert requeued.status == JobStatus.QUEUED
    assert requeued.failure_class == FailureClass.STALE_CLAIM
    assert dead.status == JobStatus.DEAD_LETTERED
    assert dead.failure_class == FailureClass.STALE_CLAIM


def test_purge_terminal_only_removes_old_terminal_jobs(repository: JobRepository, clock) -> None:
    done = repository.enqueue(JobCreate(queue_name="q", payload={})).job
    claimed = repository.claim_next_ready(queue_name="q", worker_id="w")
    assert claimed is not None
    repository.complete(job_id=done.job_id, claim_token=claimed.claim_token, result=None)
    pending = repository.enqueue(JobCreate(queue_name="q", payload={})).job

    clock.advance(3600)
    purged = repository.purge_terminal(
        statuses={JobStatus.COMPLETED},
        finished_before=clock() - timedelta(minutes=30),
    )
    assert purged == 1
    assert repository.get_job(job_id=done.job_id) is None
    assert repository.get_job_details(job_id=done.job_id) is None
    assert repository.get_job(job_id=pending.job_id) is not None

    with pytest.raises(ValueError, match="Only terminal jobs"):
        repository.purge_terminal(statuses={JobStatus.QUEUED}, finished_before=clock())


def test_job_details_record_full_event_trail(repository: JobRepository) -> None:
    job = repository.enqueue(JobCreate(queue_name="q", payload={"a": 1})).job
    claimed = repository.claim_next_ready(queue_name="q", worker_id="w")
    assert claimed is not None
    repository.add_job_event(job_id=job.job_id, event_type="chained", details={"child": "c-1"})
    repository.complete(job_id=job.job_id, claim_token=claimed.claim_token, result={"done": True})

    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "chained",
        "completed",
    ]
    assert details.events[1].status_from == JobStatus.QUEUED
    assert details.events[1].status_to == JobStatus.ACTIVE
    assert details.events[2].details == {"child": "c-1"}


def test_concurrent_claims_never_share_a_job(db_path: Path) -> None:
    setup = JobRepository(db_path)
    setup.init_schema()
    for index in range(20):
        setup.enqueue(JobCreate(queue_name="q", payload={"n": index}))

    claimed: list[str] = []
    lock = threading.Lock()

    def worker(name: str) -> None:
        repo = JobRepository(db_path)
        while True:
            job = repo.claim_next_ready(queue_name="q", worker_id=name)
            if job is None:
                break
            with lock:
                claimed.append(job.job_id)
        repo.close()

    threads = [threading.Thread(target=worker, args=(f"w-{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == 20
    assert len(set(claimed)) == 20
    setup.close()
