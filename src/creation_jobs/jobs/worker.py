"""Per-queue worker pool executing job handlers on a fixed set of threads."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol, runtime_checkable

from creation_jobs.config import QueueConfig
from creation_jobs.dispatch import DispatchResult
from creation_jobs.errors import JobError
from creation_jobs.jobs.context import JobContext, JobSubmitter
from creation_jobs.jobs.failure_classifier import classify_handler_failure
from creation_jobs.jobs.models import JobStatus, JobView
from creation_jobs.jobs.rate_limit import RollingWindowLimiter
from creation_jobs.jobs.repository import JobRepository
from creation_jobs.notifier import JobProgressSink, ProgressNotifier
from creation_jobs.reporting import FatalReporter

logger = logging.getLogger(__name__)

Handler = Callable[[JobContext], Any]


@runtime_checkable
class CompensatingHandler(Protocol):
    """Handler that can undo side effects of a run whose completion was not recorded.

    Called when the attempt finished but its claim had already been taken over,
    e.g. after stale-claim recovery requeued the job for another worker.
    """

    def __call__(self, context: JobContext) -> Any: ...

    def compensate(self, context: JobContext, result: Any) -> None: ...


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0
    rate_limited: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls
        self.rate_limited += other.rate_limited


class WorkerPool:
    """Consumes one queue with ``config.concurrency`` executor threads."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        config: QueueConfig,
        handler: Handler,
        repository: JobRepository,
        submitter: JobSubmitter,
        notifier: ProgressNotifier,
        reporter: FatalReporter,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
        limiter_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if config.concurrency <= 0:
            raise ValueError(f"Queue {config.name!r} concurrency must be > 0")
        self.config = config
        self.handler = handler
        self.repository = repository
        self.submitter = submitter
        self.notifier = notifier
        self.reporter = reporter
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.limiter = (
            RollingWindowLimiter.from_config(config.rate_limit, clock=limiter_clock)
            if config.rate_limit is not None
            else None
        )
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._summary = WorkerRunSummary()
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def queue_name(self) -> str:
        return self.config.name

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        with self._lock:
            return self._peak_in_flight

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def summary(self) -> WorkerRunSummary:
        with self._lock:
            return dataclasses.replace(self._summary)

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue on the calling thread."""

        summary, _ = self._step(worker_id=self.worker_id)
        return summary

    def start(self) -> None:
        """Spawn the executor threads; each runs one handler at a time."""

        if self._threads:
            raise RuntimeError(f"Worker pool for {self.queue_name!r} already started")
        self._stop.clear()
        for index in range(self.config.concurrency):
            thread = threading.Thread(
                target=self._thread_loop,
                args=(f"{self.worker_id}/{index}",),
                name=f"{self.queue_name}-{index}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info(
            "Started worker pool %s with %d threads",
            self.queue_name,
            self.config.concurrency,
        )

    def request_stop(self) -> None:
        """Stop dequeuing; in-flight handlers finish on their threads."""

        self._stop.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for executor threads to exit; true when all of them did."""

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        alive = [thread.name for thread in self._threads if thread.is_alive()]
        if alive:
            logger.warning("Worker pool %s still has running threads: %s", self.queue_name, alive)
            return False
        self._threads = []
        return True

    def _thread_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                summary, wait_seconds = self._step(worker_id=worker_id)
            except Exception:
                logger.exception("Worker %s failed while processing %s", worker_id, self.queue_name)
                summary, wait_seconds = WorkerRunSummary(), self.poll_interval_seconds
            with self._lock:
                self._summary.add(summary)
            if summary.processed == 0:
                self._stop.wait(wait_seconds)

    def _step(self, *, worker_id: str) -> tuple[WorkerRunSummary, float]:
        summary = WorkerRunSummary()
        job, retry_after = self._claim(worker_id=worker_id)
        if job is None:
            if retry_after > 0:
                summary.rate_limited = 1
                return summary, retry_after
            summary.idle_polls = 1
            return summary, self.poll_interval_seconds

        summary.processed = 1
        with self._lock:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            self._process(job=job, summary=summary)
        finally:
            with self._lock:
                self._in_flight -= 1
        return summary, 0.0

    def _claim(self, *, worker_id: str) -> tuple[JobView | None, float]:
        def claim() -> JobView | None:
            return self.repository.claim_next_ready(
                queue_name=self.queue_name,
                worker_id=worker_id,
            )

        if self.limiter is None:
            return claim(), 0.0
        return self.limiter.try_acquire(claim)

    def _process(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        sink = self.notifier.sink_for(job_id=job.job_id, subject_id=job.subject_id)
        context = JobContext(
            job=job,
            progress=sink,
            submitter=self.submitter,
            repository=self.repository,
        )
        sink.emit(
            "active",
            0,
            f"Attempt {job.attempts}/{job.max_attempts} started",
            {"attempt": job.attempts, "queue_name": job.queue_name},
        )
        try:
            result = self.handler(context)
        except JobError as error:
            logger.warning(
                "Job %s on %s failed on attempt %d/%d: %s",
                job.job_id,
                job.queue_name,
                job.attempts,
                job.max_attempts,
                error,
            )
            self._handle_failure(job=job, sink=sink, error=error, summary=summary)
            return
        except Exception as error:
            logger.exception(
                "Unexpected handler error for job %s on %s (attempt %d/%d)",
                job.job_id,
                job.queue_name,
                job.attempts,
                job.max_attempts,
            )
            self._handle_failure(job=job, sink=sink, error=error, summary=summary)
            return

        self._persist_success(context=context, sink=sink, result=result, summary=summary)

    def _persist_success(
        self,
        *,
        context: JobContext,
        sink: JobProgressSink,
        result: Any,
        summary: WorkerRunSummary,
    ) -> None:
        job = context.job
        details: dict[str, object] = {"attempt": job.attempts}
        if isinstance(result, DispatchResult) and not result.handled:
            details["phase"] = "unhandled"
            details["reason"] = result.reason
            self.repository.add_job_event(
                job_id=job.job_id,
                event_type="unhandled_kind",
                details={"kind": result.kind, "reason": result.reason},
            )
        if not self.repository.complete(
            job_id=job.job_id,
            claim_token=job.claim_token,
            result=_result_payload(result),
            event_details=details,
        ):
            logger.warning("Job %s lost its claim before completion was recorded", job.job_id)
            self._compensate_lost_claim(context=context, result=result)
            return
        summary.succeeded = 1
        sink.emit(
            "completed",
            100,
            "Job completed",
            {"status": JobStatus.COMPLETED.value, "terminal": True},
        )

    def _compensate_lost_claim(self, *, context: JobContext, result: Any) -> None:
        job = context.job
        self.repository.add_job_event(
            job_id=job.job_id,
            event_type="claim_lost",
            details={"attempt": job.attempts, "claim_token": job.claim_token},
        )
        if not isinstance(self.handler, CompensatingHandler):
            return
        try:
            self.handler.compensate(context, result)
        except Exception:
            logger.exception("Compensation failed for job %s after its claim was lost", job.job_id)

    def _handle_failure(
        self,
        *,
        job: JobView,
        sink: JobProgressSink,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        classification = classify_handler_failure(error)
        details = classification.to_event_details()
        details["attempt"] = job.attempts

        if not classification.retryable:
            if self.repository.fail(
                job_id=job.job_id,
                claim_token=job.claim_token,
                status=JobStatus.FAILED,
                failure_class=classification.failure_class,
                error_summary=classification.error_summary,
                event_details={**details, "terminal": True},
            ):
                summary.failed = 1
                sink.emit(
                    "failed",
                    100,
                    classification.error_summary,
                    {
                        "status": JobStatus.FAILED.value,
                        "failure_class": classification.failure_class.value,
                        "terminal": True,
                        "will_retry": False,
                    },
                )
            return

        if job.attempts < job.max_attempts:
            delay_seconds = self.config.retry_policy.delay_for(job.attempts)
            available_at = self.repository.clock() + timedelta(seconds=delay_seconds)
            if self.repository.schedule_retry(
                job_id=job.job_id,
                claim_token=job.claim_token,
                available_at=available_at,
                failure_class=classification.failure_class,
                error_summary=classification.error_summary,
                event_details={**details, "delay_seconds": delay_seconds},
            ):
                summary.retried = 1
                sink.emit(
                    "failed",
                    0,
                    classification.error_summary,
                    {
                        "status": JobStatus.QUEUED.value,
                        "failure_class": classification.failure_class.value,
                        "terminal": False,
                        "will_retry": True,
                        "retry_in_seconds": delay_seconds,
                    },
                )
            return

        if not self.repository.fail(
            job_id=job.job_id,
            claim_token=job.claim_token,
            status=JobStatus.DEAD_LETTERED,
            failure_class=classification.failure_class,
            error_summary=classification.error_summary,
            event_details={**details, "terminal": True},
        ):
            return
        summary.dead_lettered = 1
        sink.emit(
            "failed",
            100,
            classification.error_summary,
            {
                "status": JobStatus.DEAD_LETTERED.value,
                "failure_class": classification.failure_class.value,
                "terminal": True,
                "will_retry": False,
            },
        )
        dead = self.repository.get_job(job_id=job.job_id) or job
        self.reporter.report_fatal(dead, error)


def _result_payload(result: Any) -> Any:
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        return dataclasses.asdict(result)
    return result
