"""Persist generated images under their natural key."""

from __future__ import annotations

import logging
from typing import Any

from creation_jobs.errors import NonRetryableJobError
from creation_jobs.jobs.context import JobContext
from creation_jobs.pipeline.base import PipelineDeps

logger = logging.getLogger(__name__)


class ImageUploadHandler:
    """Upsert the asset at ``(subject_id, asset_type, slot)``; reruns change nothing."""

    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps

    def __call__(self, context: JobContext) -> dict[str, Any]:
        payload = context.payload
        subject_id = context.subject_id
        source_url = payload.get("source_url")
        slot = payload.get("slot")
        if not subject_id or not source_url or not isinstance(slot, int):
            raise NonRetryableJobError("Image upload job needs subject_id, slot and source_url")
        asset_type = payload.get("asset_type") or "logo"

        context.report_progress("uploading", 10, f"Storing {asset_type} {slot}")
        asset = self.deps.artifacts.upsert_asset(
            subject_id=subject_id,
            asset_type=asset_type,
            slot=slot,
            url=source_url,
            source_job_id=context.job_id,
            metadata={"source_url": source_url, **(payload.get("metadata") or {})},
        )
        context.report_progress("uploaded", 100, f"Stored {asset_type} {slot}")
        logger.info("Stored %s %d for %s at %s", asset_type, slot, subject_id, asset.url)
        return {"subject_id": subject_id, "asset_type": asset_type, "slot": slot, "url": asset.url}
