"""Deterministic handler failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from creation_jobs.errors import (
    FanOutFailedError,
    InsufficientCreditsError,
    NonRetryableJobError,
)
from creation_jobs.jobs.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_MAX_ERROR_SUMMARY_CHARS = 500


@dataclass(slots=True)
class HandlerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    reason_code: str
    error_summary: str

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
        }


def classify_handler_failure(error: BaseException) -> HandlerFailureClassification:
    """Classify an exception raised by a job handler."""

    summary = summarize_error(error)
    if isinstance(error, InsufficientCreditsError):
        return HandlerFailureClassification(
            failure_class=FailureClass.INSUFFICIENT_CREDITS,
            retryable=False,
            reason_code="insufficient_credits",
            error_summary=summary,
        )
    if isinstance(error, NonRetryableJobError):
        return HandlerFailureClassification(
            failure_class=FailureClass.NON_RETRYABLE,
            retryable=False,
            reason_code=_reason_code(error),
            error_summary=summary,
        )
    if isinstance(error, FanOutFailedError):
        return HandlerFailureClassification(
            failure_class=FailureClass.FAN_OUT_THRESHOLD,
            retryable=True,
            reason_code="fan_out_threshold",
            error_summary=summary,
        )
    return HandlerFailureClassification(
        failure_class=FailureClass.HANDLER_ERROR,
        retryable=True,
        reason_code=_reason_code(error),
        error_summary=summary,
    )


def summarize_error(error: BaseException) -> str:
    """Human-readable one-line error text, bounded in size."""

    message = str(error).strip() or type(error).__name__
    message = " ".join(message.split())
    if len(message) > _MAX_ERROR_SUMMARY_CHARS:
        return message[: _MAX_ERROR_SUMMARY_CHARS - 3] + "..."
    return message


def _reason_code(error: BaseException) -> str:
    name = type(error).__name__
    chars: list[str] = []
    for index, char in enumerate(name):
        if char.isupper() and index > 0:
            chars.append("_")
        chars.append(char.lower())
    return "".join(chars)
