"""CLI entrypoint for creation-jobs."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from creation_jobs import __version__
from creation_jobs.config import default_queue_configs
from creation_jobs.errors import UnknownQueueError
from creation_jobs.jobs.controllers import (
    CleanupCommand,
    CreditsCommand,
    JobsCliController,
    ListJobsCommand,
    StatusCommand,
    SubmitCommand,
    WorkerCommand,
)
from creation_jobs.jobs.models import JobStatus
from creation_jobs.ledger import LOGO_CREDITS, MOCKUP_CREDITS, TIER_ALLOCATIONS
from creation_jobs.pipeline.cleanup import CleanupKind

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
QUEUE_NAMES = sorted(default_queue_configs())
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="creation-jobs")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for stderr output.",
)
def creation_jobs(log_level: str) -> None:
    """Durable job queues for the brand creation pipeline."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@creation_jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("queue_name", type=click.Choice(QUEUE_NAMES))
@click.argument("payload_json", default="{}")
@click.option("--subject-id", default=None, help="Subject (brand) the job belongs to.")
@click.option("--dedup-key", default=None, help="Submit at most once per key and queue.")
@click.option(
    "--delay",
    "delay_seconds",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Seconds before the job becomes claimable.",
)
@click.option("--priority", type=int, default=None, help="Lower runs first; queue default if unset.")
def submit(  # noqa: PLR0913
    db_path: Path | None,
    queue_name: str,
    payload_json: str,
    subject_id: str | None,
    dedup_key: str | None,
    delay_seconds: float,
    priority: int | None,
) -> None:
    """Submit a job with a JSON object payload."""

    _emit_lines(
        _guard(
            JOBS_CONTROLLER.submit,
            SubmitCommand(
                db_path=db_path,
                queue_name=queue_name,
                payload_json=payload_json,
                subject_id=subject_id,
                dedup_key=dedup_key,
                delay_seconds=delay_seconds,
                priority=priority,
            ),
        ),
    )


@creation_jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@click.option(
    "--events/--no-events",
    default=True,
    show_default=True,
    help="Print the job's audit events.",
)
def status(db_path: Path | None, job_id: str, events: bool) -> None:
    """Show one job with its audit trail."""

    _emit_lines(
        JOBS_CONTROLLER.status(StatusCommand(db_path=db_path, job_id=job_id, show_events=events)),
    )


@creation_jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option("--queue", "queue_name", type=click.Choice(QUEUE_NAMES), default=None)
@click.option("--subject-id", default=None, help="Optional subject filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def list_jobs(
    db_path: Path | None,
    status_filter: str | None,
    queue_name: str | None,
    subject_id: str | None,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                status=status_filter,
                queue_name=queue_name,
                subject_id=subject_id,
                limit=limit,
            ),
        ),
    )


@creation_jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Process at most one job per queue and exit.",
)
@click.option(
    "--queue",
    "queue_name",
    type=click.Choice(QUEUE_NAMES),
    default=None,
    help="Limit --once to a single queue.",
)
def worker(db_path: Path | None, once: bool, queue_name: str | None) -> None:
    """Run worker pools until SIGINT/SIGTERM (or one pass with --once)."""

    _emit_lines(
        _guard(
            JOBS_CONTROLLER.run_worker,
            WorkerCommand(db_path=db_path, once=once, queue_name=queue_name),
        ),
    )


@creation_jobs.command("credits")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("action", type=click.Choice(["grant", "deduct", "refund", "show"]))
@click.argument("owner_id")
@click.option(
    "--type",
    "resource_type",
    type=click.Choice([LOGO_CREDITS, MOCKUP_CREDITS]),
    default=None,
    help="Credit type for grant/deduct/refund.",
)
@click.option("--amount", type=click.IntRange(min=1), default=None, help="Credit amount.")
@click.option(
    "--tier",
    type=click.Choice(sorted(TIER_ALLOCATIONS)),
    default=None,
    help="Grant the full allocation of a subscription tier.",
)
def credits(  # noqa: PLR0913
    db_path: Path | None,
    action: str,
    owner_id: str,
    resource_type: str | None,
    amount: int | None,
    tier: str | None,
) -> None:
    """Grant, deduct, refund or show an owner's credit pools."""

    _emit_lines(
        _guard(
            JOBS_CONTROLLER.credits,
            CreditsCommand(
                db_path=db_path,
                action=action,
                owner_id=owner_id,
                resource_type=resource_type,
                amount=amount,
                tier=tier,
            ),
        ),
    )


@creation_jobs.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--kind",
    "kinds",
    type=click.Choice([kind.value for kind in CleanupKind]),
    multiple=True,
    help="Maintenance kind to run. Can be repeated; all kinds when omitted.",
)
def cleanup(db_path: Path | None, kinds: tuple[str, ...]) -> None:
    """Run maintenance passes through the cleanup queue."""

    _emit_lines(
        JOBS_CONTROLLER.cleanup(
            CleanupCommand(
                db_path=db_path,
                kinds=kinds or tuple(kind.value for kind in CleanupKind),
            ),
        ),
    )


def _guard(action: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return action(command)
    except (ValueError, UnknownQueueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    creation_jobs()
