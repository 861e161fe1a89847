"""Creator dossier analysis split into independently timed sub-tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from creation_jobs.config import CRM_SYNC_QUEUE
from creation_jobs.errors import NonRetryableJobError
from creation_jobs.fanout import (
    FanOutCoordinator,
    SubTaskResult,
    SubTaskSpec,
    SynthesisSpec,
)
from creation_jobs.jobs.context import JobContext
from creation_jobs.parsing import parse_json_object
from creation_jobs.pipeline.base import PipelineDeps
from creation_jobs.providers import GenerationOptions

logger = logging.getLogger(__name__)

DOSSIER_ASSET_TYPE = "dossier"

_SUPPORTED_HANDLES = ("instagram", "tiktok", "youtube", "twitter", "facebook", "website_url")


@dataclass(frozen=True, slots=True)
class AnalysisTask:
    name: str
    dossier_keys: tuple[str, ...]
    progress_range: tuple[int, int]
    message: str
    instructions: str
    max_tokens: int
    fallback: dict[str, Any]


ANALYSIS_TASKS: tuple[AnalysisTask, ...] = (
    AnalysisTask(
        name="PROFILE_ANALYSIS",
        dossier_keys=("profile",),
        progress_range=(10, 20),
        message="Loading creator profile",
        instructions="Extract the creator profile: display name, bio, follower counts.",
        max_tokens=1024,
        fallback={
            "profile": {
                "displayName": None,
                "bio": None,
                "totalFollowers": 0,
                "totalFollowing": 0,
                "primaryPlatform": "instagram",
            },
        },
    ),
    AnalysisTask(
        name="CONTENT_ANALYSIS",
        dossier_keys=("content",),
        progress_range=(20, 40),
        message="Analyzing content themes",
        instructions="Identify content themes, posting frequency and hashtag strategy.",
        max_tokens=2048,
        fallback={
            "content": {
                "themes": [{"name": "General", "frequency": 0.5, "sentiment": "neutral"}],
                "postingFrequency": "unknown",
                "hashtagStrategy": [],
            },
        },
    ),
    AnalysisTask(
        name="AUDIENCE_ANALYSIS",
        dossier_keys=("audience",),
        progress_range=(20, 40),
        message="Analyzing audience",
        instructions="Estimate audience demographics, interests and income level.",
        max_tokens=1024,
        fallback={
            "audience": {
                "estimatedAgeRange": "18-34",
                "interests": [],
                "incomeLevel": "mid",
            },
        },
    ),
    AnalysisTask(
        name="AESTHETIC_ANALYSIS",
        dossier_keys=("aesthetic",),
        progress_range=(20, 40),
        message="Extracting visual palette",
        instructions="Describe dominant colors, visual mood and photography style.",
        max_tokens=1024,
        fallback={
            "aesthetic": {
                "dominantColors": [
                    {"hex": "#1A1A2E", "name": "Dark Navy", "percentage": 40},
                    {"hex": "#E2E2E2", "name": "Light Gray", "percentage": 30},
                    {"hex": "#B8956A", "name": "Gold", "percentage": 30},
                ],
                "visualMood": ["clean"],
            },
        },
    ),
    AnalysisTask(
        name="NICHE_PERSONALITY",
        dossier_keys=("niche", "personality", "competitors", "growth"),
        progress_range=(40, 60),
        message="Detecting niche and personality",
        instructions="Detect the primary niche, brand personality archetype and competitors.",
        max_tokens=2048,
        fallback={
            "niche": {"primaryNiche": {"name": "Lifestyle", "confidence": 0.3}},
            "personality": {"archetype": "The Everyman", "traits": []},
            "competitors": [],
            "growth": {"trend": "unknown"},
        },
    ),
)

READINESS_FALLBACK: dict[str, Any] = {
    "readinessScore": {
        "totalScore": 50,
        "tier": "developing",
        "factors": [
            {"name": name, "score": 50, "weight": 0.2, "weightedScore": 10}
            for name in (
                "Audience Size",
                "Content Consistency",
                "Niche Clarity",
                "Engagement Quality",
                "Brand Potential",
            )
        ],
    },
}


class SocialAnalysisHandler:
    """Build a creator dossier from social handles and chain the CRM update."""

    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps

    def __call__(self, context: JobContext) -> dict[str, Any]:
        subject_id = context.subject_id
        if not subject_id:
            raise NonRetryableJobError("Social analysis job needs a subject_id")
        handles = _normalize_handles(context.payload.get("handles"))
        data_context = _build_data_context(handles)
        settings = self.deps.settings

        coordinator = FanOutCoordinator(progress=context.progress, job_id=context.job_id)
        run = coordinator.run(
            [self._subtask(task, data_context) for task in ANALYSIS_TASKS],
            failure_threshold=settings.failure_threshold,
            synthesis=SynthesisSpec(
                name="READINESS_SYNTHESIS",
                run=lambda results: self._synthesize(results, data_context),
                timeout=settings.synthesis_timeout_seconds,
                fallback_value=READINESS_FALLBACK,
                progress_range=(80, 95),
                message="Calculating brand readiness",
            ),
        )

        results = list(run.results)
        if run.synthesis is not None:
            results.append(run.synthesis)
        dossier = compile_dossier(results)
        fallbacks = [result.name for result in results if result.failed]

        self.deps.artifacts.upsert_asset(
            subject_id=subject_id,
            asset_type=DOSSIER_ASSET_TYPE,
            slot=0,
            url=None,
            source_job_id=context.job_id,
            metadata={"dossier": dossier, "fallbacks": fallbacks},
        )
        owner_id = context.payload.get("owner_id")
        context.enqueue(
            CRM_SYNC_QUEUE,
            {
                "event": "wizard.step-completed",
                "event_id": f"{context.job_id}:wizard.step-completed",
                "owner_id": owner_id,
                "data": {"brand_id": subject_id, "step": "social-analysis"},
            },
            dedup_key=f"crm-sync:{context.job_id}:social-analysis",
        )
        context.report_progress("dossier-complete", 100, "Creator dossier ready")
        logger.info(
            "Dossier for %s compiled with %d fallbacks: %s",
            subject_id,
            len(fallbacks),
            fallbacks,
        )
        return {"subject_id": subject_id, "dossier": dossier, "fallbacks": fallbacks}

    def _subtask(self, task: AnalysisTask, data_context: str) -> SubTaskSpec:
        def run() -> dict[str, Any]:
            return self._analyze(
                task=task.name,
                prompt=f"{task.instructions}\n\n{data_context}",
                max_tokens=task.max_tokens,
            )

        return SubTaskSpec(
            name=task.name,
            run=run,
            timeout=self.deps.settings.subtask_timeout_seconds,
            fallback_value=task.fallback,
            progress_range=task.progress_range,
            message=task.message,
        )

    def _synthesize(self, results: list[SubTaskResult], data_context: str) -> dict[str, Any]:
        summary = compile_dossier(results)
        return self._analyze(
            task="READINESS_SYNTHESIS",
            prompt=(
                "Score the creator's brand readiness from this partial dossier.\n\n"
                f"{data_context}\n\n<dossier>\n{summary}\n</dossier>"
            ),
            max_tokens=1024,
        )

    def _analyze(self, *, task: str, prompt: str, max_tokens: int) -> dict[str, Any]:
        generated = self.deps.providers.generation.generate(
            prompt,
            GenerationOptions(kind="text", task=task, json_mode=True, max_tokens=max_tokens),
        )
        return parse_json_object(generated.text or "")


def compile_dossier(results: list[SubTaskResult]) -> dict[str, Any]:
    """Merge sub-task values into one dossier keyed by section."""

    known_keys = {task.name: task.dossier_keys for task in ANALYSIS_TASKS}
    known_keys["READINESS_SYNTHESIS"] = ("readinessScore",)
    dossier: dict[str, Any] = {}
    for result in results:
        value = result.value
        if not isinstance(value, dict):
            continue
        keys = known_keys.get(result.name)
        if keys is None:
            dossier.update(value)
            continue
        picked = {key: value[key] for key in keys if key in value}
        if picked:
            dossier.update(picked)
        else:
            dossier[result.name.lower()] = value
    return dossier


def _normalize_handles(raw: object) -> dict[str, str]:
    if not isinstance(raw, dict):
        raise NonRetryableJobError("Social analysis payload needs a 'handles' object")
    handles: dict[str, str] = {}
    for key in _SUPPORTED_HANDLES:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            handles[key] = value.strip().lstrip("@") if key != "website_url" else value.strip()
    if not handles:
        raise NonRetryableJobError("At least one social media handle is required")
    return handles


def _build_data_context(handles: dict[str, str]) -> str:
    lines = [
        f"Website: {value}" if key == "website_url" else f"{key.title()}: @{value}"
        for key, value in handles.items()
    ]
    return "<social_handles>\n" + "\n".join(lines) + "\n</social_handles>"
