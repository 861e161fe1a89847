"""Creation pipeline handlers, one per configured queue."""

from __future__ import annotations

from creation_jobs.config import (
    CLEANUP_QUEUE,
    CRM_SYNC_QUEUE,
    EMAIL_SEND_QUEUE,
    IMAGE_UPLOAD_QUEUE,
    LOGO_GENERATION_QUEUE,
    MOCKUP_GENERATION_QUEUE,
    SOCIAL_ANALYSIS_QUEUE,
)
from creation_jobs.jobs.worker import Handler
from creation_jobs.pipeline.base import PipelineDeps
from creation_jobs.pipeline.cleanup import CleanupHandler
from creation_jobs.pipeline.crm_sync import CrmSyncHandler
from creation_jobs.pipeline.email_send import EmailSendHandler
from creation_jobs.pipeline.image_upload import ImageUploadHandler
from creation_jobs.pipeline.logo_generation import LogoGenerationHandler
from creation_jobs.pipeline.mockup_generation import MockupGenerationHandler
from creation_jobs.pipeline.social_analysis import SocialAnalysisHandler

__all__ = ["PipelineDeps", "build_handlers"]


def build_handlers(deps: PipelineDeps) -> dict[str, Handler]:
    """Map every pipeline queue name to its handler."""

    return {
        SOCIAL_ANALYSIS_QUEUE: SocialAnalysisHandler(deps),
        LOGO_GENERATION_QUEUE: LogoGenerationHandler(deps),
        MOCKUP_GENERATION_QUEUE: MockupGenerationHandler(deps),
        IMAGE_UPLOAD_QUEUE: ImageUploadHandler(deps),
        CRM_SYNC_QUEUE: CrmSyncHandler(deps),
        EMAIL_SEND_QUEUE: EmailSendHandler(deps),
        CLEANUP_QUEUE: CleanupHandler(deps),
    }
