"""Controllers for job, worker and credit CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from creation_jobs.config import CLEANUP_QUEUE, Settings
from creation_jobs.jobs.models import JobStatus, JobView, SubmitOptions
from creation_jobs.jobs.repository import JobRepository
from creation_jobs.jobs.services import JobService
from creation_jobs.jobs.supervisor import Supervisor
from creation_jobs.jobs.worker import WorkerRunSummary
from creation_jobs.ledger import ResourceLedger, ResourcePoolView
from creation_jobs.notifier import ProgressNotifier
from creation_jobs.pipeline import PipelineDeps, build_handlers
from creation_jobs.pipeline.records import ArtifactRepository
from creation_jobs.providers import Providers, resolve_providers
from creation_jobs.reporting import FatalReporter, resolve_fatal_reporter


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    queue_name: str
    payload_json: str
    subject_id: str | None = None
    dedup_key: str | None = None
    delay_seconds: float = 0.0
    priority: int | None = None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    show_events: bool = True


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    queue_name: str | None
    subject_id: str | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    queue_name: str | None = None


@dataclass(slots=True)
class CreditsCommand:
    """CLI input for ledger operations."""

    db_path: Path | None
    action: str
    owner_id: str
    resource_type: str | None = None
    amount: int | None = None
    tier: str | None = None


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for an immediate maintenance pass."""

    db_path: Path | None
    kinds: tuple[str, ...]


@dataclass(slots=True)
class Runtime:
    """Wired storage, providers and services for one CLI invocation."""

    settings: Settings
    repository: JobRepository
    ledger: ResourceLedger
    artifacts: ArtifactRepository
    providers: Providers
    reporter: FatalReporter
    notifier: ProgressNotifier
    service: JobService

    def build_supervisor(self) -> Supervisor:
        supervisor = Supervisor(
            repository=self.repository,
            submitter=self.service,
            notifier=self.notifier,
            reporter=self.reporter,
            poll_interval_seconds=self.settings.worker.poll_interval_seconds,
            stale_after_seconds=self.settings.worker.stale_after_seconds,
        )
        handlers = build_handlers(
            PipelineDeps(
                settings=self.settings.pipeline,
                retention=self.settings.retention,
                providers=self.providers,
                ledger=self.ledger,
                artifacts=self.artifacts,
                jobs=self.repository,
                reporter=self.reporter,
                stale_after_seconds=self.settings.worker.stale_after_seconds,
            ),
        )
        for queue_name, handler in handlers.items():
            supervisor.register(queue_name, handler)
        return supervisor


class JobsCliController:
    """Coordinates submit, inspection, worker and ledger CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        payload = _parse_payload(command.payload_json)
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            result = runtime.service.submit_job(
                command.queue_name,
                payload,
                SubmitOptions(
                    delay_seconds=command.delay_seconds,
                    dedup_key=command.dedup_key,
                    priority=command.priority,
                    subject_id=command.subject_id,
                ),
            )
        job = result.job
        verb = "Job submitted" if result.created else "Job already submitted"
        return [
            f"{verb}: job_id={job.job_id} queue={job.queue_name} status={job.status.value} "
            f"priority={job.priority} max_attempts={job.max_attempts}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            details = runtime.service.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Queue: {job.queue_name}",
            f"Subject: {job.subject_id or '-'}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Available at: {job.available_at.isoformat()}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.last_error or '-'}",
            f"Result: {json.dumps(job.result, sort_keys=True) if job.result is not None else '-'}",
        ]
        if command.show_events:
            lines.append(f"Events: {len(details.events)}")
            for event in details.events:
                lines.append(
                    f"  {event.created_at.isoformat()} {event.event_type} "
                    f"{event.status_from.value if event.status_from else '-'} -> "
                    f"{event.status_to.value if event.status_to else '-'}",
                )
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            jobs = runtime.service.list_jobs(
                status=status_filter,
                queue_name=command.queue_name,
                subject_id=command.subject_id,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(_job_line(job) for job in jobs)
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _runtime(settings) as runtime:
            supervisor = runtime.build_supervisor()
            if command.once:
                summary = supervisor.run_once(settings.queues, queue_name=command.queue_name)
            else:
                supervisor.run_forever(
                    settings.queues,
                    shutdown_timeout=settings.worker.shutdown_timeout_seconds,
                )
                summary = WorkerRunSummary()
                for pool_summary in supervisor.last_summaries.values():
                    summary.add(pool_summary)
        return [_summary_line(summary)]

    def credits(self, command: CreditsCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            ledger = runtime.ledger
            if command.action == "grant":
                if command.tier is not None:
                    pools = ledger.refill_tier(command.owner_id, command.tier)
                else:
                    resource_type, amount = _require_resource(command)
                    pools = [ledger.refill(command.owner_id, resource_type, amount)]
                return [f"Granted credits to {command.owner_id}", *map(_pool_line, pools)]
            if command.action == "deduct":
                resource_type, amount = _require_resource(command)
                if not ledger.deduct(command.owner_id, resource_type, amount):
                    return [f"Insufficient {resource_type} credits for {command.owner_id}"]
                return [_balance_line(ledger, command.owner_id, resource_type)]
            if command.action == "refund":
                resource_type, amount = _require_resource(command)
                if ledger.refund(command.owner_id, resource_type, amount) is None:
                    return [f"No active {resource_type} pool for {command.owner_id}"]
                return [_balance_line(ledger, command.owner_id, resource_type)]
            if command.action == "show":
                pools = ledger.list_pools(command.owner_id)
                return [f"Pools for {command.owner_id}: {len(pools)}", *map(_pool_line, pools)]
        raise ValueError(
            f"Unknown credits action: {command.action!r}. Use grant, deduct, refund or show.",
        )

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lines: list[str] = []
        with _runtime(settings) as runtime:
            supervisor = runtime.build_supervisor()
            for kind in command.kinds:
                job_id = runtime.service.submit(CLEANUP_QUEUE, {"kind": kind})
                supervisor.run_once(settings.queues, queue_name=CLEANUP_QUEUE)
                job = runtime.service.get_status(job_id)
                if job is None:
                    lines.append(f"Cleanup {kind}: job {job_id} disappeared")
                    continue
                result = json.dumps(job.result, sort_keys=True) if job.result is not None else "-"
                lines.append(f"Cleanup {kind}: status={job.status.value} result={result}")
        return lines


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    repository = JobRepository(db_path=settings.db_path)
    repository.init_schema()
    ledger = ResourceLedger(db_path=settings.db_path)
    artifacts = ArtifactRepository(db_path=settings.db_path)
    providers = resolve_providers(settings.providers)
    reporter = resolve_fatal_reporter(settings.reporting)
    notifier = ProgressNotifier()
    try:
        yield Runtime(
            settings=settings,
            repository=repository,
            ledger=ledger,
            artifacts=artifacts,
            providers=providers,
            reporter=reporter,
            notifier=notifier,
            service=JobService(
                repository=repository,
                queue_configs=settings.queues,
                notifier=notifier,
            ),
        )
    finally:
        close_reporter = getattr(reporter, "close", None)
        if close_reporter is not None:
            close_reporter()
        providers.close()
        artifacts.close()
        ledger.close()
        repository.close()


def _parse_payload(raw: str) -> dict[str, object]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Payload must be a JSON object.")
    return payload


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _require_resource(command: CreditsCommand) -> tuple[str, int]:
    if command.resource_type is None or command.amount is None:
        raise ValueError(f"credits {command.action} needs --type and --amount.")
    return command.resource_type, command.amount


def _job_line(job: JobView) -> str:
    return (
        f"  {job.job_id} queue={job.queue_name} status={job.status.value} "
        f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
        f"subject={job.subject_id or '-'} available_at={job.available_at.isoformat()}"
    )


def _pool_line(pool: ResourcePoolView) -> str:
    return (
        f"  {pool.resource_type}: remaining={pool.remaining} used={pool.used} "
        f"period_end={pool.period_end.isoformat()}"
    )


def _balance_line(ledger: ResourceLedger, owner_id: str, resource_type: str) -> str:
    pool = ledger.balance(owner_id, resource_type)
    if pool is None:
        return f"No active {resource_type} pool for {owner_id}"
    return (
        f"Balance for {owner_id}: {resource_type} remaining={pool.remaining} used={pool.used}"
    )


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"dead_lettered={summary.dead_lettered} idle_polls={summary.idle_polls} "
        f"rate_limited={summary.rate_limited}"
    )
