from __future__ import annotations

import allure

from creation_jobs.errors import (
    FanOutFailedError,
    InsufficientCreditsError,
    JobError,
    NonRetryableJobError,
)
from creation_jobs.jobs.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_handler_failure,
    summarize_error,
)
from creation_jobs.jobs.models import FailureClass

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker Pools & Retries"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_insufficient_credits_is_terminal() -> None:
    classified = classify_handler_failure(
        InsufficientCreditsError(owner_id="o-1", resource_type="logo", amount=1),
    )
    assert classified.failure_class == FailureClass.INSUFFICIENT_CREDITS
    assert classified.retryable is False
    assert "Insufficient logo credits for owner o-1" in classified.error_summary


def test_non_retryable_error_uses_class_name_reason() -> None:
    classified = classify_handler_failure(NonRetryableJobError("bad input"))
    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.retryable is False
    assert classified.reason_code == "non_retryable_job_error"


def test_fan_out_failure_is_retryable() -> None:
    classified = classify_handler_failure(FanOutFailedError(failures=3, total=5))
    assert classified.failure_class == FailureClass.FAN_OUT_THRESHOLD
    assert classified.retryable is True
    assert classified.error_summary == "3/5 sub-tasks failed"


def test_unexpected_errors_fall_back_to_retryable_handler_error() -> None:
    for error in (JobError("transient"), KeyError("missing"), RuntimeError("")):
        classified = classify_handler_failure(error)
        assert classified.failure_class == FailureClass.HANDLER_ERROR
        assert classified.retryable is True
    assert classify_handler_failure(RuntimeError("")).error_summary == "RuntimeError"
    assert classified.to_event_details()["classifier_version"] == 1


def test_summarize_error_collapses_whitespace_and_truncates() -> None:
    assert summarize_error(ValueError("a\n  b\tc")) == "a b c"
    long_summary = summarize_error(ValueError("x" * 600))
    assert len(long_summary) == 500
    assert long_summary.endswith("...")
