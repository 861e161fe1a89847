"""In-process progress fan-out from running jobs to subscribers.

Events are transient: a subscriber only sees events published after it
subscribed, and nothing is persisted. Percent values are reported as the
producer emits them; with concurrent sub-tasks they may transiently go down.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from creation_jobs.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One progress update for a job."""

    job_id: str
    subject_id: str | None
    phase: str
    percent: int
    message: str = ""
    payload: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=utc_now)


class ProgressSink(Protocol):
    """Capability handed to handlers and the fan-out coordinator."""

    def emit(
        self,
        phase: str,
        percent: int,
        message: str = "",
        payload: dict[str, Any] | None = None,
    ) -> None: ...


class Subscription:
    """Closable, iterable stream of progress events for one key."""

    _CLOSED = object()

    def __init__(self, notifier: ProgressNotifier, key: tuple[str, str]) -> None:
        self._notifier = notifier
        self.key = key
        self._queue: queue.Queue[Any] = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or ``None`` on timeout or once closed."""

        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            return None
        return item

    def drain(self) -> list[ProgressEvent]:
        """Return every event already delivered without blocking."""

        events: list[ProgressEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not self._CLOSED:
                events.append(item)

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._notifier._unsubscribe(self)  # noqa: SLF001
        self._queue.put(self._CLOSED)

    def _deliver(self, event: ProgressEvent) -> None:
        if not self.closed:
            self._queue.put(event)

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                return
            yield item

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProgressNotifier:
    """Thread-safe publish/subscribe hub keyed by subject and by job."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[tuple[str, str], list[Subscription]] = {}

    def subscribe(self, subject_id: str) -> Subscription:
        """Stream events of every job that belongs to ``subject_id``."""

        return self._add(("subject", subject_id))

    def subscribe_job(self, job_id: str) -> Subscription:
        return self._add(("job", job_id))

    def publish(self, event: ProgressEvent) -> None:
        if not 0 <= event.percent <= 100:  # noqa: PLR2004
            raise ValueError(f"Progress percent must be within 0..100, got {event.percent}")

        keys = [("job", event.job_id)]
        if event.subject_id is not None:
            keys.append(("subject", event.subject_id))
        with self._lock:
            targets = [sub for key in keys for sub in self._subscriptions.get(key, ())]
        logger.debug(
            "Progress job=%s phase=%s percent=%d subscribers=%d",
            event.job_id,
            event.phase,
            event.percent,
            len(targets),
        )
        for subscription in targets:
            subscription._deliver(event)  # noqa: SLF001

    def sink_for(self, *, job_id: str, subject_id: str | None) -> JobProgressSink:
        return JobProgressSink(notifier=self, job_id=job_id, subject_id=subject_id)

    def _add(self, key: tuple[str, str]) -> Subscription:
        subscription = Subscription(self, key)
        with self._lock:
            self._subscriptions.setdefault(key, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.key)
            if not subscribers:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                del self._subscriptions[subscription.key]


@dataclass(slots=True)
class JobProgressSink:
    """Progress sink bound to one job and its subject."""

    notifier: ProgressNotifier
    job_id: str
    subject_id: str | None

    def emit(
        self,
        phase: str,
        percent: int,
        message: str = "",
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.notifier.publish(
            ProgressEvent(
                job_id=self.job_id,
                subject_id=self.subject_id,
                phase=phase,
                percent=percent,
                message=message,
                payload=payload,
            ),
        )


class NullProgressSink:
    """Sink that discards every event."""

    def emit(
        self,
        phase: str,
        percent: int,
        message: str = "",
        payload: dict[str, Any] | None = None,
    ) -> None:
        return None
