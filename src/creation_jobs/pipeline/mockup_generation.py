"""Product mockup generation, one mockup credit per product."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from creation_jobs.config import IMAGE_UPLOAD_QUEUE
from creation_jobs.errors import InsufficientCreditsError, NonRetryableJobError, ProviderError
from creation_jobs.fanout import FanOutCoordinator, SubTaskSpec
from creation_jobs.jobs.context import JobContext
from creation_jobs.ledger import MOCKUP_CREDITS
from creation_jobs.pipeline.base import PipelineDeps
from creation_jobs.providers import GenerationOptions

logger = logging.getLogger(__name__)

LIFESTYLE_CONTEXTS: dict[str, tuple[str, ...]] = {
    "fitness": ("gym setting", "outdoor running trail", "home workout space"),
    "beauty": ("marble vanity", "soft-lit bathroom shelf", "flat lay with florals"),
    "wellness": ("calm morning kitchen", "yoga studio", "bedside table"),
    "food": ("rustic kitchen counter", "picnic blanket", "cafe table"),
    "apparel": ("urban street", "studio backdrop", "folded on a wooden shelf"),
    "supplements": ("kitchen counter with fresh fruit", "gym bag", "desk at work"),
    "skincare": ("bathroom counter", "spa towel flat lay", "travel pouch"),
}
DEFAULT_LIFESTYLE = "clean product showcase"
# Categories whose mockups carry printed text go to the typography-capable model.
TEXT_HEAVY_CATEGORIES = frozenset({"book", "card", "packaging", "label", "poster", "flyer"})

_PROGRESS_START = 10
_PROGRESS_SPAN = 70


def lifestyle_context(niche: str | None, slot: int) -> str:
    contexts = LIFESTYLE_CONTEXTS.get((niche or "").lower())
    if not contexts:
        return DEFAULT_LIFESTYLE
    return contexts[slot % len(contexts)]


def compose_mockup_prompt(  # noqa: PLR0913
    *,
    product_name: str,
    category: str,
    brand_name: str,
    color_palette: list[str],
    setting: str,
    instructions: str | None = None,
) -> str:
    parts = [
        f'Professional product mockup of a {category} product called "{product_name}" '
        f"for the brand {brand_name}.",
    ]
    if color_palette:
        parts.append(f"Brand colors: {', '.join(color_palette)}.")
    parts.append("Clean studio photography style, high detail, soft shadows.")
    if instructions:
        parts.append(instructions)
    parts.append(f"Setting: {setting}.")
    return " ".join(parts)


class MockupGenerationHandler:
    """Deduct mockup credits, render one mockup per product, chain the uploads.

    The whole batch is paid up front; any failure after the deduction refunds
    it before the error propagates.
    """

    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps

    def __call__(self, context: JobContext) -> dict[str, Any]:
        subject_id = context.subject_id
        owner_id = context.payload.get("owner_id")
        if not subject_id or not owner_id:
            raise NonRetryableJobError("Mockup generation job needs subject_id and owner_id")
        products = _parse_products(context.payload.get("products"))

        cost = self._cost(products)
        if not self.deps.ledger.deduct(owner_id, MOCKUP_CREDITS, cost):
            raise InsufficientCreditsError(owner_id=owner_id, resource_type=MOCKUP_CREDITS, amount=cost)
        context.record_event("credits_deducted", {"resource_type": MOCKUP_CREDITS, "amount": cost})

        try:
            return self._generate(context, subject_id=subject_id, owner_id=owner_id, products=products)
        except Exception:
            remaining = self.deps.ledger.refund(owner_id, MOCKUP_CREDITS, cost)
            context.record_event(
                "credits_refunded",
                {"resource_type": MOCKUP_CREDITS, "amount": cost, "remaining": remaining},
            )
            raise

    def compensate(self, context: JobContext, result: Any) -> None:
        owner_id = context.payload.get("owner_id")
        cost = self._cost(_parse_products(context.payload.get("products")))
        remaining = self.deps.ledger.refund(owner_id, MOCKUP_CREDITS, cost)
        context.record_event(
            "credits_refunded",
            {
                "resource_type": MOCKUP_CREDITS,
                "amount": cost,
                "remaining": remaining,
                "reason": "claim_lost",
            },
        )

    def _cost(self, products: list[dict[str, Any]]) -> int:
        return self.deps.settings.mockup_credit_cost * len(products)

    def _generate(
        self,
        context: JobContext,
        *,
        subject_id: str,
        owner_id: str,
        products: list[dict[str, Any]],
    ) -> dict[str, Any]:
        brand_name = context.payload.get("brand_name") or subject_id
        palette = [str(color) for color in context.payload.get("color_palette") or []]
        niche = context.payload.get("niche")
        count = len(products)
        context.report_progress("generating", _PROGRESS_START, f"Generating {count} mockups")

        step = _PROGRESS_SPAN // count
        prompts = [
            compose_mockup_prompt(
                product_name=product["name"],
                category=product["category"],
                brand_name=brand_name,
                color_palette=palette,
                setting=lifestyle_context(niche, slot),
                instructions=product.get("instructions"),
            )
            for slot, product in enumerate(products)
        ]
        specs = [
            SubTaskSpec(
                name=f"mockup-{slot}",
                run=self._mockup_task(prompt=prompts[slot], category=product["category"], slot=slot),
                timeout=self.deps.settings.mockup_timeout_seconds,
                fallback_value=None,
                progress_range=(
                    _PROGRESS_START + slot * step,
                    _PROGRESS_START + (slot + 1) * step,
                ),
                message=f"Generating mockup for {product['name']}",
            )
            for slot, product in enumerate(products)
        ]
        coordinator = FanOutCoordinator(progress=context.progress, job_id=context.job_id)
        run = coordinator.run(specs, failure_threshold=count)

        mockups: list[dict[str, Any]] = []
        for slot, result in enumerate(run.results):
            if result.failed or not result.value:
                continue
            product = products[slot]
            child_id = context.enqueue(
                IMAGE_UPLOAD_QUEUE,
                {
                    "owner_id": owner_id,
                    "asset_type": "mockup",
                    "slot": slot,
                    "source_url": result.value["url"],
                    "metadata": {
                        "product_id": product.get("product_id"),
                        "product_name": product["name"],
                        "product_category": product["category"],
                        "model": result.value["model"],
                        "prompt": prompts[slot],
                    },
                },
                dedup_key=f"image-upload:{context.job_id}:mockup:{slot}",
            )
            mockups.append(
                {
                    "slot": slot,
                    "product_name": product["name"],
                    "url": result.value["url"],
                    "upload_job_id": child_id,
                },
            )

        context.report_progress(
            "mockups-generated",
            _PROGRESS_START + _PROGRESS_SPAN,
            f"{len(mockups)}/{count} mockups generated",
        )
        logger.info(
            "Generated %d/%d mockups for %s (job %s)",
            len(mockups),
            count,
            subject_id,
            context.job_id,
        )
        return {"subject_id": subject_id, "requested": count, "mockups": mockups}

    def _mockup_task(self, *, prompt: str, category: str, slot: int) -> Callable[[], dict[str, Any]]:
        task = "mockup-typography" if category.lower() in TEXT_HEAVY_CATEGORIES else "mockup"

        def run() -> dict[str, Any]:
            generated = self.deps.providers.generation.generate(
                prompt,
                GenerationOptions(kind="image", task=task, metadata={"slot": slot}),
            )
            if not generated.url:
                raise ProviderError(f"Mockup {slot + 1} came back without an image URL")
            return {"url": generated.url, "model": generated.model}

        return run


def _parse_products(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise NonRetryableJobError("Mockup generation job needs a non-empty products list")
    products: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or not item.get("name") or not item.get("category"):
            raise NonRetryableJobError(f"Product #{index} needs a name and a category")
        products.append(item)
    return products
