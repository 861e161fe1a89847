"""Shared dependencies of the creation pipeline handlers."""

from __future__ import annotations

from dataclasses import dataclass

from creation_jobs.config import PipelineSettings, RetentionSettings
from creation_jobs.jobs.repository import JobRepository
from creation_jobs.ledger import ResourceLedger
from creation_jobs.pipeline.records import ArtifactRepository
from creation_jobs.providers import Providers
from creation_jobs.reporting import FatalReporter


@dataclass(slots=True)
class PipelineDeps:
    """Everything a handler may touch besides its own ``JobContext``."""

    settings: PipelineSettings
    retention: RetentionSettings
    providers: Providers
    ledger: ResourceLedger
    artifacts: ArtifactRepository
    jobs: JobRepository
    reporter: FatalReporter
    stale_after_seconds: int = 1_800
