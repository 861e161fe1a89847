"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from creation_jobs.config import default_queue_configs
from creation_jobs.jobs.models import JobView
from creation_jobs.jobs.repository import JobRepository
from creation_jobs.jobs.services import JobService
from creation_jobs.notifier import ProgressNotifier


class FakeClock:
    """Manually advanced UTC clock shared by repositories under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


class FakeMonotonic:
    """Manually advanced monotonic clock for rate limiter tests."""

    def __init__(self) -> None:
        self.value = 1_000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingReporter:
    """Fatal reporter that keeps every report in memory."""

    def __init__(self) -> None:
        self.reports: list[tuple[JobView, BaseException]] = []

    def report_fatal(self, job: JobView, error: BaseException) -> None:
        self.reports.append((job, error))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "jobs.db"


@pytest.fixture()
def repository(db_path: Path, clock: FakeClock) -> Iterator[JobRepository]:
    repo = JobRepository(db_path, clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def notifier() -> ProgressNotifier:
    return ProgressNotifier()


@pytest.fixture()
def service(repository: JobRepository, notifier: ProgressNotifier) -> JobService:
    return JobService(
        repository=repository,
        queue_configs=default_queue_configs(),
        notifier=notifier,
    )


@pytest.fixture()
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture()
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()
