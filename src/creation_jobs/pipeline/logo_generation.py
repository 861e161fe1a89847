"""Logo batch generation paid for with one credit per job."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from creation_jobs.config import IMAGE_UPLOAD_QUEUE
from creation_jobs.errors import InsufficientCreditsError, NonRetryableJobError, ProviderError
from creation_jobs.fanout import FanOutCoordinator, SubTaskSpec
from creation_jobs.jobs.context import JobContext
from creation_jobs.ledger import LOGO_CREDITS
from creation_jobs.pipeline.base import PipelineDeps
from creation_jobs.providers import GenerationOptions

logger = logging.getLogger(__name__)

DEFAULT_STYLE = "minimal"
_PROGRESS_START = 10
_PROGRESS_SPAN = 70


class LogoGenerationHandler:
    """Deduct a logo credit, generate logos concurrently, chain their uploads.

    Any failure after the deduction refunds the credit before the error
    propagates, so every retry attempt pays for itself again.
    """

    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps

    def __call__(self, context: JobContext) -> dict[str, Any]:
        subject_id = context.subject_id
        owner_id = context.payload.get("owner_id")
        if not subject_id or not owner_id:
            raise NonRetryableJobError("Logo generation job needs subject_id and owner_id")
        count = int(context.payload.get("count") or self.deps.settings.logo_count)
        if count <= 0:
            raise NonRetryableJobError(f"Logo count must be > 0, got {count}")

        cost = self.deps.settings.logo_credit_cost
        if not self.deps.ledger.deduct(owner_id, LOGO_CREDITS, cost):
            raise InsufficientCreditsError(owner_id=owner_id, resource_type=LOGO_CREDITS, amount=cost)
        context.record_event("credits_deducted", {"resource_type": LOGO_CREDITS, "amount": cost})

        try:
            return self._generate(context, subject_id=subject_id, owner_id=owner_id, count=count)
        except Exception:
            remaining = self.deps.ledger.refund(owner_id, LOGO_CREDITS, cost)
            context.record_event(
                "credits_refunded",
                {"resource_type": LOGO_CREDITS, "amount": cost, "remaining": remaining},
            )
            raise

    def compensate(self, context: JobContext, result: Any) -> None:
        """Refund the credit of a run whose completion lost the claim race."""

        owner_id = context.payload.get("owner_id")
        cost = self.deps.settings.logo_credit_cost
        remaining = self.deps.ledger.refund(owner_id, LOGO_CREDITS, cost)
        context.record_event(
            "credits_refunded",
            {
                "resource_type": LOGO_CREDITS,
                "amount": cost,
                "remaining": remaining,
                "reason": "claim_lost",
            },
        )
        logger.warning(
            "Refunded %d logo credit(s) to %s after job %s lost its claim",
            cost,
            owner_id,
            context.job_id,
        )

    def _generate(
        self,
        context: JobContext,
        *,
        subject_id: str,
        owner_id: str,
        count: int,
    ) -> dict[str, Any]:
        brand_name = context.payload.get("brand_name") or subject_id
        style = context.payload.get("style") or DEFAULT_STYLE
        context.report_progress("generating", _PROGRESS_START, f"Generating {count} logos")

        step = _PROGRESS_SPAN // count
        specs = [
            SubTaskSpec(
                name=f"logo-{slot}",
                run=self._logo_task(brand_name=brand_name, style=style, slot=slot),
                timeout=self.deps.settings.logo_timeout_seconds,
                fallback_value=None,
                progress_range=(
                    _PROGRESS_START + slot * step,
                    _PROGRESS_START + (slot + 1) * step,
                ),
                message=f"Generating logo {slot + 1}/{count}",
            )
            for slot in range(count)
        ]
        coordinator = FanOutCoordinator(progress=context.progress, job_id=context.job_id)
        run = coordinator.run(specs, failure_threshold=count)

        logos: list[dict[str, Any]] = []
        for slot, result in enumerate(run.results):
            if result.failed or not result.value:
                continue
            child_id = context.enqueue(
                IMAGE_UPLOAD_QUEUE,
                {
                    "owner_id": owner_id,
                    "asset_type": "logo",
                    "slot": slot,
                    "source_url": result.value["url"],
                    "metadata": {"style": style, "model": result.value["model"]},
                },
                dedup_key=f"image-upload:{context.job_id}:{slot}",
            )
            logos.append({"slot": slot, "url": result.value["url"], "upload_job_id": child_id})

        context.report_progress(
            "logos-generated",
            _PROGRESS_START + _PROGRESS_SPAN,
            f"{len(logos)}/{count} logos generated",
        )
        logger.info(
            "Generated %d/%d logos for %s (job %s)",
            len(logos),
            count,
            subject_id,
            context.job_id,
        )
        return {"subject_id": subject_id, "requested": count, "logos": logos}

    def _logo_task(self, *, brand_name: str, style: str, slot: int) -> Callable[[], dict[str, Any]]:
        def run() -> dict[str, Any]:
            generated = self.deps.providers.generation.generate(
                f"Logo for brand {brand_name}, {style} style, variation {slot + 1}",
                GenerationOptions(kind="image", task="logo", metadata={"slot": slot}),
            )
            if not generated.url:
                raise ProviderError(f"Logo variation {slot + 1} came back without an image URL")
            return {"url": generated.url, "model": generated.model}

        return run
