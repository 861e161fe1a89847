"""Transactional email rendering and delivery."""

from __future__ import annotations

import html
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from creation_jobs.dispatch import DispatchResult, DispatchTable
from creation_jobs.errors import NonRetryableJobError
from creation_jobs.jobs.context import JobContext
from creation_jobs.pipeline.base import PipelineDeps

logger = logging.getLogger(__name__)

DEFAULT_APP_URL = "http://localhost:5173"


class EmailTemplate(str, Enum):
    WELCOME = "welcome"
    BRAND_COMPLETE = "brand-complete"
    WIZARD_ABANDONED = "wizard-abandoned"
    PASSWORD_RESET = "password-reset"
    SUBSCRIPTION_CONFIRMED = "subscription-confirmed"
    SUBSCRIPTION_CANCELLED = "subscription-cancelled"
    GENERATION_FAILED = "generation-failed"
    SUPPORT_TICKET = "support-ticket"


@dataclass(frozen=True, slots=True)
class RenderedEmail:
    subject: str
    html: str


def _field(data: dict[str, Any], key: str, default: str = "") -> str:
    return html.escape(str(data.get(key) or default))


def _greeting_name(data: dict[str, Any]) -> str:
    return html.escape(str(data.get("name") or data.get("brand_name") or "there"))


def _app_url(data: dict[str, Any]) -> str:
    return html.escape(str(data.get("app_url") or DEFAULT_APP_URL))


def _layout(body: str) -> str:
    return (
        "<!DOCTYPE html><html><body "
        'style="font-family:sans-serif;max-width:600px;margin:0 auto;padding:20px;">'
        f"{body}<hr><p style=\"color:#888;font-size:12px;\">Creation Studio</p></body></html>"
    )


def _template(subject: str, body: Callable[[dict[str, Any]], str]) -> Callable[[dict[str, Any]], RenderedEmail]:
    def render(data: dict[str, Any]) -> RenderedEmail:
        return RenderedEmail(subject=subject, html=_layout(body(data)))

    return render


EMAIL_TEMPLATES: DispatchTable[EmailTemplate] = DispatchTable(
    EmailTemplate,
    {
        EmailTemplate.WELCOME: _template(
            "Welcome to Creation Studio!",
            lambda data: (
                f"<h1>Welcome!</h1><p>Hi {_greeting_name(data)}, your account is ready. "
                f'<a href="{_app_url(data)}/wizard">Start building your brand</a>.</p>'
            ),
        ),
        EmailTemplate.BRAND_COMPLETE: _template(
            "Your brand is ready!",
            lambda data: (
                f"<h1>Your brand is ready!</h1><p>Hi {_greeting_name(data)}, your brand "
                f'"{_field(data, "brand_name")}" is complete. '
                f'<a href="{_app_url(data)}/dashboard">View your brand</a>.</p>'
            ),
        ),
        EmailTemplate.WIZARD_ABANDONED: _template(
            "Your brand is waiting for you",
            lambda data: (
                f"<h1>Your brand is waiting</h1><p>Hi {_greeting_name(data)}, you left off at "
                f'step "{_field(data, "last_step")}". '
                f'<a href="{_app_url(data)}/wizard/resume">Pick up where you left off</a>.</p>'
            ),
        ),
        EmailTemplate.PASSWORD_RESET: _template(
            "Reset your password",
            lambda data: (
                f'<h1>Reset your password</h1><p>Click <a href="{_field(data, "reset_url", "#")}">'
                "here</a> to reset your password. This link expires in 1 hour.</p>"
            ),
        ),
        EmailTemplate.SUBSCRIPTION_CONFIRMED: _template(
            "Subscription confirmed",
            lambda data: (
                f"<h1>Subscription confirmed</h1><p>Hi {_greeting_name(data)}, your "
                f"{_field(data, 'tier')} plan is now active.</p>"
            ),
        ),
        EmailTemplate.SUBSCRIPTION_CANCELLED: _template(
            "Subscription cancelled",
            lambda data: (
                f"<h1>Subscription cancelled</h1><p>Hi {_greeting_name(data)}, your subscription "
                "has been cancelled. You can resubscribe any time.</p>"
            ),
        ),
        EmailTemplate.GENERATION_FAILED: _template(
            "Generation issue - we are on it",
            lambda data: (
                f"<h1>Generation issue</h1><p>Hi {_greeting_name(data)}, we encountered an issue "
                f"generating your {_field(data, 'asset_type', 'asset')}. "
                "Our team is looking into it.</p>"
            ),
        ),
        EmailTemplate.SUPPORT_TICKET: _template(
            "Support ticket received",
            lambda data: (
                f"<h1>Support ticket received</h1><p>Hi {_greeting_name(data)}, we received your "
                "support request and will respond within 24 hours.</p>"
            ),
        ),
    },
    name="email-send",
)


class EmailSendHandler:
    """Render a template and hand the message to the notification provider."""

    def __init__(self, deps: PipelineDeps) -> None:
        self.deps = deps

    def __call__(self, context: JobContext) -> dict[str, Any] | DispatchResult:
        payload = context.payload
        recipient = payload.get("to")
        template = payload.get("template")
        if not recipient or not isinstance(template, str):
            raise NonRetryableJobError("Email job needs 'to' and 'template'")

        dispatched = EMAIL_TEMPLATES.dispatch(template, payload.get("data") or {})
        if not dispatched.handled:
            return dispatched

        email: RenderedEmail = dispatched.value
        ack = self.deps.providers.notification.notify(
            "email.send",
            {
                "to": recipient,
                "template": dispatched.kind,
                "subject": email.subject,
                "html": email.html,
            },
        )
        context.report_progress("sent", 100, f"Email {dispatched.kind} sent")
        logger.info("Sent %s email to %s (provider id %s)", dispatched.kind, recipient, ack.provider_id)
        return {
            "sent": ack.accepted,
            "template": dispatched.kind,
            "subject": email.subject,
            "provider_id": ack.provider_id,
        }
