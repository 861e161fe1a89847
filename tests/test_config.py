from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from creation_jobs.config import (
    CLEANUP_QUEUE,
    CRM_SYNC_QUEUE,
    MOCKUP_GENERATION_QUEUE,
    SOCIAL_ANALYSIS_QUEUE,
    PipelineSettings,
    ProviderSettings,
    ReportingSettings,
    RetryPolicy,
    Settings,
    WorkerSettings,
    default_queue_configs,
    exponential_schedule,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings & Queue Table"),
]


def test_default_queue_table_matches_pipeline_policy() -> None:
    queues = default_queue_configs()

    assert sorted(queues) == [
        "cleanup",
        "crm-sync",
        "email-send",
        "image-upload",
        "logo-generation",
        "mockup-generation",
        "social-analysis",
    ]
    social = queues[SOCIAL_ANALYSIS_QUEUE]
    assert social.concurrency == 3
    assert social.retry_policy.max_attempts == 2
    assert social.rate_limit is not None
    assert social.rate_limit.ops_per_window == 3
    assert queues[CRM_SYNC_QUEUE].retry_policy.backoff_schedule == (10.0, 20.0, 40.0, 80.0)
    assert queues[CLEANUP_QUEUE].priority == 10
    mockup = queues[MOCKUP_GENERATION_QUEUE]
    assert (mockup.concurrency, mockup.priority) == (4, 1)
    assert mockup.retry_policy.backoff_schedule == (3.0, 6.0)


def test_retry_policy_reuses_last_delay_and_handles_empty_schedule() -> None:
    policy = RetryPolicy(max_attempts=5, backoff_schedule=(1.0, 5.0))

    assert [policy.delay_for(attempts) for attempts in (1, 2, 3, 4)] == [1.0, 5.0, 5.0, 5.0]
    assert RetryPolicy(max_attempts=3).delay_for(2) == 0.0
    assert exponential_schedule(3.0, 3) == (3.0, 6.0)


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CREATION_JOBS_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("CREATION_JOBS_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("CREATION_JOBS_FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("CREATION_JOBS_PROVIDER_MODE", " HTTP ")
    monkeypatch.setenv("CREATION_JOBS_GENERATION_URL", "https://gen.example.com/v1")
    monkeypatch.setenv("CREATION_JOBS_NOTIFICATION_URL", "https://notify.example.com/v1")
    monkeypatch.setenv("CREATION_JOBS_MOCKUP_CREDIT_COST", "2")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.worker.poll_interval_seconds == 0.5
    assert settings.pipeline.failure_threshold == 2
    assert settings.pipeline.mockup_credit_cost == 2
    assert settings.pipeline.mockup_timeout_seconds == 120.0
    assert settings.providers.mode == "http"
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CREATION_JOBS_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_queue_overrides_adjust_concurrency_and_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CREATION_JOBS_QUEUE_CONCURRENCY", "crm-sync|2, email-send|7")
    monkeypatch.setenv("CREATION_JOBS_QUEUE_MAX_ATTEMPTS", "crm-sync|3")

    queues = Settings.from_env().queues

    assert queues["crm-sync"].concurrency == 2
    assert queues["email-send"].concurrency == 7
    assert queues["crm-sync"].retry_policy.max_attempts == 3
    assert queues["crm-sync"].retry_policy.backoff_schedule == (10.0, 20.0)


@pytest.mark.parametrize(
    ("value", "message"),
    [
        ("crm-sync", "Expected format"),
        ("nope|2", "unknown queue"),
        ("crm-sync|x", "Invalid CREATION_JOBS_QUEUE_CONCURRENCY value"),
        ("crm-sync|0", "must be > 0"),
    ],
)
def test_queue_overrides_reject_bad_entries(
    monkeypatch: pytest.MonkeyPatch,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv("CREATION_JOBS_QUEUE_CONCURRENCY", value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_validate_names_offending_variable() -> None:
    with pytest.raises(ValueError, match="POLL_INTERVAL_SECONDS"):
        Settings(worker=WorkerSettings(poll_interval_seconds=0)).validate()
    with pytest.raises(ValueError, match="PROVIDER_MODE"):
        Settings(providers=ProviderSettings(mode="carrier-pigeon")).validate()
    with pytest.raises(ValueError, match="GENERATION_URL is required"):
        Settings(providers=ProviderSettings(mode="http")).validate()
    with pytest.raises(ValueError, match="FATAL_WEBHOOK_URL"):
        Settings(reporting=ReportingSettings(webhook_url="ftp://hooks.example.com")).validate()
    with pytest.raises(ValueError, match="MOCKUP_CREDIT_COST"):
        Settings(pipeline=PipelineSettings(mockup_credit_cost=0)).validate()


def test_validate_rejects_non_positive_queue_settings() -> None:
    settings = Settings()
    crm = replace(settings.queues[CRM_SYNC_QUEUE], concurrency=0)
    settings.queues[CRM_SYNC_QUEUE] = crm

    with pytest.raises(ValueError, match="QUEUE_CONCURRENCY for 'crm-sync'"):
        settings.validate()
