"""CRM contact synchronization driven by application lifecycle events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from creation_jobs.dispatch import DispatchResult, DispatchTable
from creation_jobs.errors import NonRetryableJobError, ProviderError
from creation_jobs.jobs.context import JobContext
from creation_jobs.pipeline.base import PipelineDeps
from creation_jobs.pipeline.records import SYNC_FAILED, SYNC_SUCCESS, SYNC_UNHANDLED

logger = logging.getLogger(__name__)


class CrmEvent(str, Enum):
    USER_CREATED = "user.created"
    WIZARD_STARTED = "wizard.started"
    WIZARD_STEP_COMPLETED = "wizard.step-completed"
    WIZARD_ABANDONED = "wizard.abandoned"
    BRAND_COMPLETED = "brand.completed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"


def _create_contact(data: dict[str, Any]) -> dict[str, Any]:
    return {"action": "create_contact", "email": data.get("email"), "name": data.get("name")}


def _add_tag(tag: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def build(data: dict[str, Any]) -> dict[str, Any]:
        return {"action": "add_tag", "tag": tag}

    return build


def _update_wizard_step(data: dict[str, Any]) -> dict[str, Any]:
    return {"action": "update_field", "field": "wizard_step", "value": data.get("step")}


def _update_subscription(data: dict[str, Any]) -> dict[str, Any]:
    return {"action": "update_subscription", "tier": data.get("tier")}


CRM_ACTIONS: DispatchTable[CrmEvent] = DispatchTable(
    CrmEvent,
    {
        CrmEvent.USER_CREATED: _create_contact,
        CrmEvent.WIZARD_STARTED: _add_tag("wizard_started"),
        CrmEvent.WIZARD_STEP_COMPLETED: _update_wizard_step,
        CrmEvent.WIZARD_ABANDONED: _add_tag("wizard_abandoned"),
        CrmEvent.BRAND_COMPLETED: _add_tag("brand_complete"),
        CrmEvent.SUBSCRIPTION_CREATED: _update_subscription,
        CrmEvent.SUBSCRIPTION_CANCELLED: _add_tag("subscription_cancelled"),
    },
    name="crm-sync",
)


class CrmSyncHandler:
    """Push one CRM event and record the attempt in the sync log.

    The sync log is keyed by event id, so a redelivered job that already
    synced successfully does not call the CRM again.
    """

    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps

    def __call__(self, context: JobContext) -> dict[str, Any] | DispatchResult:
        payload = context.payload
        event = payload.get("event")
        if not isinstance(event, str) or not event:
            raise NonRetryableJobError("CRM sync job needs an 'event' name")
        event_id = payload.get("event_id") or context.job_id
        owner_id = payload.get("owner_id")
        data = payload.get("data") or {}
        artifacts = self.deps.artifacts

        previous = artifacts.get_sync(event_id)
        if previous is not None and previous.status == SYNC_SUCCESS:
            logger.info("CRM event %s (%s) already synced, skipping", event_id, event)
            return {"synced": True, "event": event, "event_id": event_id, "skipped": True}

        dispatched = CRM_ACTIONS.dispatch(event, data)
        if not dispatched.handled:
            artifacts.record_sync(
                event_id=event_id,
                owner_id=owner_id,
                event_type=event,
                status=SYNC_UNHANDLED,
                request=data,
                error=dispatched.reason,
            )
            return dispatched

        action = dispatched.value
        try:
            ack = self.deps.providers.notification.notify(
                f"crm.{dispatched.kind}",
                {"owner_id": owner_id, "event_id": event_id, **action, "data": data},
            )
        except ProviderError as error:
            artifacts.record_sync(
                event_id=event_id,
                owner_id=owner_id,
                event_type=event,
                status=SYNC_FAILED,
                request=data,
                error=str(error),
            )
            raise

        response = {**action, "provider_id": ack.provider_id, "accepted": ack.accepted}
        artifacts.record_sync(
            event_id=event_id,
            owner_id=owner_id,
            event_type=event,
            status=SYNC_SUCCESS,
            request=data,
            response=response,
        )
        context.report_progress("synced", 100, f"CRM event {event} synced")
        logger.info("CRM event %s (%s) synced: %s", event_id, event, action["action"])
        return {"synced": True, "event": event, "event_id": event_id, "result": response}
