"""Fan-out/fan-in coordinator for splitting one slow unit of work.

Every sub-task runs on its own daemon thread and races its own timeout. A
sub-task that times out or raises resolves to its fallback value; its late
work is discarded, not cancelled. When too many sub-tasks fail the run
aborts before the dependent synthesis stage; otherwise synthesis runs
exactly once over the ordered results, racing its own timeout.

Progress events are emitted in resolution order, so percent values from
overlapping ranges may go down between two events.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from creation_jobs.errors import FanOutFailedError
from creation_jobs.jobs.failure_classifier import summarize_error
from creation_jobs.notifier import ProgressSink

logger = logging.getLogger(__name__)


class SubTaskOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SubTaskSpec:
    """One independently timed unit of a decomposition."""

    name: str
    run: Callable[[], Any]
    timeout: float
    fallback_value: Any = None
    progress_range: tuple[int, int] = (0, 100)
    message: str = ""

    def __post_init__(self) -> None:
        _validate_progress_range(self.name, self.progress_range)
        if self.timeout <= 0:
            raise ValueError(f"Sub-task {self.name!r} timeout must be > 0")


@dataclass(frozen=True, slots=True)
class SynthesisSpec:
    """Dependent stage fed with the ordered sub-task results."""

    name: str
    run: Callable[[list[SubTaskResult]], Any]
    timeout: float
    fallback_value: Any = None
    progress_range: tuple[int, int] = (0, 100)
    message: str = ""

    def __post_init__(self) -> None:
        _validate_progress_range(self.name, self.progress_range)
        if self.timeout <= 0:
            raise ValueError(f"Synthesis {self.name!r} timeout must be > 0")


@dataclass(frozen=True, slots=True)
class SubTaskResult:
    name: str
    outcome: SubTaskOutcome
    value: Any
    duration_ms: int
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.outcome != SubTaskOutcome.SUCCESS


@dataclass(slots=True)
class DecompositionRunResult:
    """Outcome of one fan-out; ``results`` follow the order of the specs."""

    job_id: str
    results: list[SubTaskResult]
    failure_threshold: int
    synthesis: SubTaskResult | None = None
    synthesis_invoked: bool = False
    resolution_order: list[str] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(1 for result in self.results if result.failed)

    def values(self) -> dict[str, Any]:
        return {result.name: result.value for result in self.results}

    def value_of(self, name: str) -> Any:
        for result in self.results:
            if result.name == name:
                return result.value
        raise KeyError(name)


class FanOutCoordinator:
    """Runs sub-task specs concurrently and gates the synthesis stage."""

    def __init__(
        self,
        *,
        progress: ProgressSink,
        job_id: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.progress = progress
        self.job_id = job_id
        self._clock = clock

    def run(
        self,
        specs: Sequence[SubTaskSpec],
        *,
        failure_threshold: int,
        synthesis: SynthesisSpec | None = None,
    ) -> DecompositionRunResult:
        if not specs:
            raise ValueError("Fan-out needs at least one sub-task")
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        names = [spec.name for spec in specs]
        if len(set(names)) != len(names):
            raise ValueError(f"Sub-task names must be unique: {names}")

        resolved, order = self._race(specs)
        run = DecompositionRunResult(
            job_id=self.job_id,
            results=[resolved[spec.name] for spec in specs],
            failure_threshold=failure_threshold,
            resolution_order=order,
        )
        failures = run.failures
        if failures >= failure_threshold:
            logger.warning(
                "Fan-out for job %s aborted: %d/%d sub-tasks failed (threshold %d)",
                self.job_id,
                failures,
                len(specs),
                failure_threshold,
            )
            raise FanOutFailedError(failures=failures, total=len(specs))
        if failures:
            logger.info(
                "Fan-out for job %s continuing with %d/%d fallbacks",
                self.job_id,
                failures,
                len(specs),
            )

        if synthesis is None:
            return run

        ordered = list(run.results)
        synthesis_resolved, _ = self._race(
            [
                SubTaskSpec(
                    name=synthesis.name,
                    run=lambda: synthesis.run(ordered),
                    timeout=synthesis.timeout,
                    fallback_value=synthesis.fallback_value,
                    progress_range=synthesis.progress_range,
                    message=synthesis.message,
                ),
            ],
        )
        run.synthesis = synthesis_resolved[synthesis.name]
        run.synthesis_invoked = True
        return run

    def _race(self, specs: Sequence[SubTaskSpec]) -> tuple[dict[str, SubTaskResult], list[str]]:
        pending: dict[Future[Any], tuple[SubTaskSpec, float, float]] = {}
        for spec in specs:
            self.progress.emit(
                "subtask-started",
                spec.progress_range[0],
                spec.message or f"{spec.name} started",
                {"subtask": spec.name},
            )
            started = self._clock()
            pending[_start_work(spec.name, spec.run)] = (spec, started + spec.timeout, started)

        resolved: dict[str, SubTaskResult] = {}
        order: list[str] = []
        while pending:
            next_deadline = min(deadline for _, deadline, _ in pending.values())
            done, _ = wait(
                list(pending),
                timeout=max(0.0, next_deadline - self._clock()),
                return_when=FIRST_COMPLETED,
            )
            now = self._clock()
            for future in done:
                spec, _, started = pending.pop(future)
                result = _resolve_finished(spec, future, duration_ms=_elapsed_ms(started, now))
                self._record(result, spec, resolved, order)
            for future, (spec, deadline, started) in list(pending.items()):
                if deadline > now:
                    continue
                del pending[future]
                result = SubTaskResult(
                    name=spec.name,
                    outcome=SubTaskOutcome.TIMEOUT,
                    value=spec.fallback_value,
                    duration_ms=_elapsed_ms(started, now),
                    error=f"Sub-task {spec.name} timed out after {spec.timeout:g}s",
                )
                self._record(result, spec, resolved, order)
        return resolved, order

    def _record(
        self,
        result: SubTaskResult,
        spec: SubTaskSpec,
        resolved: dict[str, SubTaskResult],
        order: list[str],
    ) -> None:
        resolved[spec.name] = result
        order.append(spec.name)
        if result.failed:
            logger.warning(
                "Sub-task %s of job %s resolved to fallback (%s): %s",
                spec.name,
                self.job_id,
                result.outcome.value,
                result.error,
            )
            self.progress.emit(
                "subtask-fallback",
                spec.progress_range[1],
                f"{spec.name} used fallback",
                {"subtask": spec.name, "outcome": result.outcome.value},
            )
            return
        self.progress.emit(
            "subtask-completed",
            spec.progress_range[1],
            f"{spec.name} completed",
            {"subtask": spec.name, "duration_ms": result.duration_ms},
        )


def _start_work(name: str, work: Callable[[], Any]) -> Future[Any]:
    future: Future[Any] = Future()
    future.set_running_or_notify_cancel()

    def target() -> None:
        try:
            value = work()
        except Exception as error:  # noqa: BLE001
            future.set_exception(error)
            return
        future.set_result(value)

    threading.Thread(target=target, name=f"subtask-{name}", daemon=True).start()
    return future


def _resolve_finished(spec: SubTaskSpec, future: Future[Any], *, duration_ms: int) -> SubTaskResult:
    error = future.exception()
    if error is not None:
        return SubTaskResult(
            name=spec.name,
            outcome=SubTaskOutcome.ERROR,
            value=spec.fallback_value,
            duration_ms=duration_ms,
            error=summarize_error(error),
        )
    return SubTaskResult(
        name=spec.name,
        outcome=SubTaskOutcome.SUCCESS,
        value=future.result(),
        duration_ms=duration_ms,
    )


def _elapsed_ms(started: float, now: float) -> int:
    return max(0, int((now - started) * 1000))


def _validate_progress_range(name: str, progress_range: tuple[int, int]) -> None:
    start, end = progress_range
    if not 0 <= start <= end <= 100:  # noqa: PLR2004
        raise ValueError(f"Invalid progress range for {name!r}: {progress_range}")
