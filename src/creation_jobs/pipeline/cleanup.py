"""Periodic maintenance of the job store and resource pools."""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import Any

from creation_jobs.dispatch import DispatchResult, DispatchTable
from creation_jobs.errors import JobError, NonRetryableJobError
from creation_jobs.jobs.context import JobContext
from creation_jobs.jobs.models import JobStatus
from creation_jobs.pipeline.base import PipelineDeps

logger = logging.getLogger(__name__)


class CleanupKind(str, Enum):
    EXPIRED_JOBS = "expired-jobs"
    PURGE_TERMINAL_JOBS = "purge-terminal-jobs"
    EXPIRED_POOLS = "expired-pools"


class CleanupHandler:
    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps
        self.table: DispatchTable[CleanupKind] = DispatchTable(
            CleanupKind,
            {
                CleanupKind.EXPIRED_JOBS: self._recover_expired_jobs,
                CleanupKind.PURGE_TERMINAL_JOBS: self._purge_terminal_jobs,
                CleanupKind.EXPIRED_POOLS: self._purge_expired_pools,
            },
            name="cleanup",
        )

    def __call__(self, context: JobContext) -> dict[str, Any] | DispatchResult:
        kind = context.payload.get("kind")
        if not isinstance(kind, str) or not kind:
            raise NonRetryableJobError("Cleanup job needs a 'kind'")
        dispatched = self.table.dispatch(kind, context.payload)
        if not dispatched.handled:
            return dispatched
        context.report_progress("cleaned", 100, f"Cleanup {dispatched.kind} finished")
        logger.info("Cleanup %s finished: %s", dispatched.kind, dispatched.value)
        return {"kind": dispatched.kind, **dispatched.value}

    def _recover_expired_jobs(self, payload: dict[str, Any]) -> dict[str, Any]:
        stale_after = int(payload.get("stale_after_seconds") or self.deps.stale_after_seconds)
        recovery = self.deps.jobs.recover_stale_active(stale_after=timedelta(seconds=stale_after))
        for job in recovery.dead_lettered:
            self.deps.reporter.report_fatal(job, JobError(job.last_error or "stale claim"))
        return {"requeued": len(recovery.requeued), "dead_lettered": len(recovery.dead_lettered)}

    def _purge_terminal_jobs(self, payload: dict[str, Any]) -> dict[str, Any]:
        retention = self.deps.retention
        now = self.deps.jobs.clock()
        completed = self.deps.jobs.purge_terminal(
            statuses={JobStatus.COMPLETED},
            finished_before=now - timedelta(hours=retention.completed_job_retention_hours),
        )
        failed = self.deps.jobs.purge_terminal(
            statuses={JobStatus.FAILED, JobStatus.DEAD_LETTERED},
            finished_before=now - timedelta(hours=retention.failed_job_retention_hours),
        )
        return {"purged_completed": completed, "purged_failed": failed}

    def _purge_expired_pools(self, payload: dict[str, Any]) -> dict[str, Any]:
        cutoff = self.deps.ledger.clock() - timedelta(
            days=self.deps.retention.expired_pool_retention_days,
        )
        return {"purged_pools": self.deps.ledger.purge_expired(expired_before=cutoff)}
