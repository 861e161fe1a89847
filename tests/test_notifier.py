from __future__ import annotations

import threading

import allure
import pytest

from creation_jobs.notifier import NullProgressSink, ProgressEvent, ProgressNotifier

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Progress Notifications"),
]


def _event(job_id: str, subject_id: str | None, percent: int = 10) -> ProgressEvent:
    return ProgressEvent(job_id=job_id, subject_id=subject_id, phase="work", percent=percent)


def test_subject_subscription_sees_every_job_of_subject() -> None:
    notifier = ProgressNotifier()
    with notifier.subscribe("brand-1") as brand, notifier.subscribe_job("job-b") as job_b:
        notifier.publish(_event("job-a", "brand-1"))
        notifier.publish(_event("job-b", "brand-1", percent=20))
        notifier.publish(_event("job-c", "brand-2"))

        assert [event.job_id for event in brand.drain()] == ["job-a", "job-b"]
        assert [event.percent for event in job_b.drain()] == [20]


def test_late_subscriber_misses_earlier_events() -> None:
    notifier = ProgressNotifier()
    notifier.publish(_event("job-a", "brand-1"))

    subscription = notifier.subscribe("brand-1")
    assert subscription.get(timeout=0.01) is None
    subscription.close()


def test_closed_subscription_stops_receiving_and_ends_iteration() -> None:
    notifier = ProgressNotifier()
    subscription = notifier.subscribe_job("job-a")
    received: list[int] = []

    def consume() -> None:
        for event in subscription:
            received.append(event.percent)

    consumer = threading.Thread(target=consume)
    consumer.start()
    notifier.publish(_event("job-a", None, percent=5))
    notifier.publish(_event("job-a", None, percent=3))
    subscription.close()
    consumer.join(timeout=5)
    notifier.publish(_event("job-a", None, percent=90))

    assert not consumer.is_alive()
    assert received == [5, 3]
    assert subscription.closed
    assert subscription.get(timeout=0.01) is None


def test_publish_rejects_out_of_range_percent() -> None:
    notifier = ProgressNotifier()
    with pytest.raises(ValueError, match="0..100"):
        notifier.publish(_event("job-a", None, percent=101))


def test_job_sink_binds_job_and_subject() -> None:
    notifier = ProgressNotifier()
    sink = notifier.sink_for(job_id="job-z", subject_id="brand-9")
    with notifier.subscribe("brand-9") as subscription:
        sink.emit("phase", 40, "working", {"k": "v"})
        event = subscription.get(timeout=1)

    assert event is not None
    assert (event.job_id, event.phase, event.percent, event.payload) == (
        "job-z",
        "phase",
        40,
        {"k": "v"},
    )
    NullProgressSink().emit("ignored", 100)
