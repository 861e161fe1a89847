"""Lifecycle owner for the worker pools of every configured queue."""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import timedelta

from creation_jobs.config import QueueConfig
from creation_jobs.errors import JobError
from creation_jobs.jobs.context import JobSubmitter
from creation_jobs.jobs.repository import JobRepository
from creation_jobs.jobs.worker import Handler, WorkerPool, WorkerRunSummary
from creation_jobs.notifier import ProgressNotifier
from creation_jobs.reporting import FatalReporter

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class Supervisor:
    """Registers handlers, starts one pool per queue and shuts them down."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        submitter: JobSubmitter,
        notifier: ProgressNotifier,
        reporter: FatalReporter,
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        stale_after_seconds: int = 1_800,
        limiter_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.submitter = submitter
        self.notifier = notifier
        self.reporter = reporter
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.limiter_clock = limiter_clock
        self._handlers: dict[str, Handler] = {}
        self._pools: dict[str, WorkerPool] = {}
        self._last_summaries: dict[str, WorkerRunSummary] = {}
        self._stop_requested = threading.Event()
        self._stop_signal_name: str | None = None

    @property
    def pools(self) -> dict[str, WorkerPool]:
        return dict(self._pools)

    @property
    def running(self) -> bool:
        return bool(self._pools)

    @property
    def last_summaries(self) -> dict[str, WorkerRunSummary]:
        """Per-queue counters of the pools stopped by the last shutdown."""

        return dict(self._last_summaries)

    def register(self, queue_name: str, handler: Handler) -> None:
        if self._pools:
            raise RuntimeError("Handlers must be registered before start()")
        if queue_name in self._handlers:
            raise ValueError(f"Handler already registered for queue {queue_name!r}")
        self._handlers[queue_name] = handler

    def build_pools(self, configs: Mapping[str, QueueConfig]) -> dict[str, WorkerPool]:
        """Create (without starting) a pool for every queue with a handler."""

        pools: dict[str, WorkerPool] = {}
        for queue_name, handler in self._handlers.items():
            config = configs.get(queue_name)
            if config is None:
                raise ValueError(f"No queue configuration for registered handler {queue_name!r}")
            pools[queue_name] = WorkerPool(
                config=config,
                handler=handler,
                repository=self.repository,
                submitter=self.submitter,
                notifier=self.notifier,
                reporter=self.reporter,
                worker_id=f"{self.worker_id}:{queue_name}",
                poll_interval_seconds=self.poll_interval_seconds,
                limiter_clock=self.limiter_clock,
            )
        return pools

    def start(self, configs: Mapping[str, QueueConfig]) -> None:
        """Recover abandoned claims, then start one pool per registered queue."""

        if self._pools:
            raise RuntimeError("Supervisor already started")
        if not self._handlers:
            raise RuntimeError("No handlers registered")
        pools = self.build_pools(configs)
        self._stop_requested.clear()
        self.recover_stale_claims()
        self._pools = pools
        for pool in pools.values():
            pool.start()

    def shutdown(self, *, drain: bool = True, timeout: float | None = None) -> bool:
        """Stop dequeuing on every pool.

        With ``drain`` the call joins in-flight handlers (up to ``timeout``);
        without it the call returns at once and handlers finish on their own
        threads. Returns true when every pool thread has exited.
        """

        pools = list(self._pools.values())
        for pool in pools:
            pool.request_stop()
        if not drain:
            self._last_summaries = {name: pool.summary() for name, pool in self._pools.items()}
            self._pools = {}
            logger.info("Supervisor stop requested without drain for %d pools", len(pools))
            return False

        deadline = None if timeout is None else time.monotonic() + timeout
        drained = True
        for pool in pools:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            drained = pool.join(remaining) and drained
        self._last_summaries = {name: pool.summary() for name, pool in self._pools.items()}
        self._pools = {}
        logger.info("Supervisor drained %d pools (complete=%s)", len(pools), drained)
        return drained

    def run_forever(self, configs: Mapping[str, QueueConfig], *, shutdown_timeout: float = 30.0) -> None:
        """Run pools until SIGINT/SIGTERM, then drain."""

        with self._signal_handlers():
            self.start(configs)
            try:
                while not self._stop_requested.wait(self.poll_interval_seconds):
                    continue
            finally:
                logger.info(
                    "Shutting down worker pools (signal=%s)",
                    self._stop_signal_name or "none",
                )
                self.shutdown(drain=True, timeout=shutdown_timeout)

    def request_stop(self, *, signal_name: str | None = None) -> None:
        self._stop_signal_name = signal_name
        self._stop_requested.set()

    def run_once(
        self,
        configs: Mapping[str, QueueConfig],
        *,
        queue_name: str | None = None,
    ) -> WorkerRunSummary:
        """Process at most one job per queue synchronously on the calling thread."""

        pools = self.build_pools(configs)
        if queue_name is not None:
            if queue_name not in pools:
                raise ValueError(f"No handler registered for queue {queue_name!r}")
            pools = {queue_name: pools[queue_name]}
        aggregate = WorkerRunSummary()
        for pool in pools.values():
            aggregate.add(pool.run_once())
        return aggregate

    def recover_stale_claims(self) -> int:
        """Requeue or dead-letter jobs whose claim outlived ``stale_after_seconds``."""

        if self.stale_after_seconds <= 0:
            return 0
        recovery = self.repository.recover_stale_active(
            stale_after=timedelta(seconds=self.stale_after_seconds),
        )
        for job in recovery.dead_lettered:
            self.reporter.report_fatal(job, JobError(job.last_error or "stale claim"))
        return len(recovery.requeued) + len(recovery.dead_lettered)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Running without signal handlers outside the main thread")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
