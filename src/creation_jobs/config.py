"""Runtime configuration for queues, workers, pipeline handlers and providers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from urllib.parse import urlparse

_ENV_PREFIX = "CREATION_JOBS_"


@dataclass(frozen=True, slots=True)
class RateLimit:
    """At most ``ops_per_window`` successful claims per rolling window."""

    ops_per_window: int
    window_seconds: float = 1.0


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt budget and ordered backoff delays (seconds) between attempts."""

    max_attempts: int = 3
    backoff_schedule: tuple[float, ...] = ()

    def delay_for(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` invocations have started.

        The last delay is reused when the schedule is shorter than the attempt
        budget; an empty schedule retries immediately.
        """

        if not self.backoff_schedule:
            return 0.0
        index = min(max(attempts, 1) - 1, len(self.backoff_schedule) - 1)
        return self.backoff_schedule[index]


@dataclass(frozen=True, slots=True)
class QueueConfig:
    """Static per-queue scheduling policy; immutable once pools start."""

    name: str
    concurrency: int = 1
    rate_limit: RateLimit | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    priority: int = 100


def exponential_schedule(base_seconds: float, max_attempts: int) -> tuple[float, ...]:
    """Delays ``base, 2*base, 4*base, ...`` for every retry an attempt budget allows."""

    return tuple(base_seconds * (2**index) for index in range(max(0, max_attempts - 1)))


def fixed_schedule(delay_seconds: float, max_attempts: int) -> tuple[float, ...]:
    return tuple(delay_seconds for _ in range(max(0, max_attempts - 1)))


SOCIAL_ANALYSIS_QUEUE = "social-analysis"
LOGO_GENERATION_QUEUE = "logo-generation"
MOCKUP_GENERATION_QUEUE = "mockup-generation"
IMAGE_UPLOAD_QUEUE = "image-upload"
CRM_SYNC_QUEUE = "crm-sync"
EMAIL_SEND_QUEUE = "email-send"
CLEANUP_QUEUE = "cleanup"


def default_queue_configs() -> dict[str, QueueConfig]:
    """Queue table used by the creation pipeline unless overridden."""

    return {
        SOCIAL_ANALYSIS_QUEUE: QueueConfig(
            name=SOCIAL_ANALYSIS_QUEUE,
            concurrency=3,
            rate_limit=RateLimit(ops_per_window=3, window_seconds=1.0),
            retry_policy=RetryPolicy(
                max_attempts=2,
                backoff_schedule=exponential_schedule(5.0, 2),
            ),
            priority=1,
        ),
        LOGO_GENERATION_QUEUE: QueueConfig(
            name=LOGO_GENERATION_QUEUE,
            concurrency=4,
            retry_policy=RetryPolicy(
                max_attempts=3,
                backoff_schedule=exponential_schedule(3.0, 3),
            ),
            priority=1,
        ),
        MOCKUP_GENERATION_QUEUE: QueueConfig(
            name=MOCKUP_GENERATION_QUEUE,
            concurrency=4,
            retry_policy=RetryPolicy(
                max_attempts=3,
                backoff_schedule=exponential_schedule(3.0, 3),
            ),
            priority=1,
        ),
        IMAGE_UPLOAD_QUEUE: QueueConfig(
            name=IMAGE_UPLOAD_QUEUE,
            concurrency=5,
            retry_policy=RetryPolicy(
                max_attempts=3,
                backoff_schedule=exponential_schedule(3.0, 3),
            ),
            priority=2,
        ),
        CRM_SYNC_QUEUE: QueueConfig(
            name=CRM_SYNC_QUEUE,
            concurrency=5,
            rate_limit=RateLimit(ops_per_window=5, window_seconds=1.0),
            retry_policy=RetryPolicy(
                max_attempts=5,
                backoff_schedule=exponential_schedule(10.0, 5),
            ),
            priority=5,
        ),
        EMAIL_SEND_QUEUE: QueueConfig(
            name=EMAIL_SEND_QUEUE,
            concurrency=10,
            rate_limit=RateLimit(ops_per_window=10, window_seconds=1.0),
            retry_policy=RetryPolicy(
                max_attempts=5,
                backoff_schedule=exponential_schedule(5.0, 5),
            ),
            priority=3,
        ),
        CLEANUP_QUEUE: QueueConfig(
            name=CLEANUP_QUEUE,
            concurrency=1,
            retry_policy=RetryPolicy(
                max_attempts=1,
                backoff_schedule=fixed_schedule(60.0, 1),
            ),
            priority=10,
        ),
    }


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool loop settings."""

    poll_interval_seconds: float = 1.0
    stale_after_seconds: int = 1_800
    shutdown_timeout_seconds: float = 30.0


@dataclass(slots=True)
class PipelineSettings:
    """Creation pipeline handler settings."""

    subtask_timeout_seconds: float = 45.0
    synthesis_timeout_seconds: float = 60.0
    failure_threshold: int = 3
    logo_count: int = 4
    logo_credit_cost: int = 1
    logo_timeout_seconds: float = 90.0
    mockup_credit_cost: int = 1
    mockup_timeout_seconds: float = 120.0


@dataclass(slots=True)
class RetentionSettings:
    """How long terminal jobs and expired resource pools are kept."""

    completed_job_retention_hours: int = 24
    failed_job_retention_hours: int = 168
    expired_pool_retention_days: int = 90


@dataclass(slots=True)
class ProviderSettings:
    """External provider selection; ``simulated`` needs no network access."""

    mode: str = "simulated"
    generation_url: str | None = None
    notification_url: str | None = None
    api_key: str | None = None
    request_timeout_seconds: float = 60.0
    max_retries: int = 2


@dataclass(slots=True)
class ReportingSettings:
    """Fatal error escalation settings."""

    webhook_url: str | None = None
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".creation_jobs.db")
    queues: dict[str, QueueConfig] = field(default_factory=default_queue_configs)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    reporting: ReportingSettings = field(default_factory=ReportingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv(f"{_ENV_PREFIX}DB_PATH", ".creation_jobs.db")),
            queues=_apply_queue_overrides(default_queue_configs()),
            worker=WorkerSettings(
                poll_interval_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}POLL_INTERVAL_SECONDS", "1.0"),
                ),
                stale_after_seconds=int(os.getenv(f"{_ENV_PREFIX}STALE_AFTER_SECONDS", "1800")),
                shutdown_timeout_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}SHUTDOWN_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            pipeline=PipelineSettings(
                subtask_timeout_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}SUBTASK_TIMEOUT_SECONDS", "45.0"),
                ),
                synthesis_timeout_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}SYNTHESIS_TIMEOUT_SECONDS", "60.0"),
                ),
                failure_threshold=int(os.getenv(f"{_ENV_PREFIX}FAILURE_THRESHOLD", "3")),
                logo_count=int(os.getenv(f"{_ENV_PREFIX}LOGO_COUNT", "4")),
                logo_credit_cost=int(os.getenv(f"{_ENV_PREFIX}LOGO_CREDIT_COST", "1")),
                logo_timeout_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}LOGO_TIMEOUT_SECONDS", "90.0"),
                ),
                mockup_credit_cost=int(os.getenv(f"{_ENV_PREFIX}MOCKUP_CREDIT_COST", "1")),
                mockup_timeout_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}MOCKUP_TIMEOUT_SECONDS", "120.0"),
                ),
            ),
            retention=RetentionSettings(
                completed_job_retention_hours=int(
                    os.getenv(f"{_ENV_PREFIX}COMPLETED_JOB_RETENTION_HOURS", "24"),
                ),
                failed_job_retention_hours=int(
                    os.getenv(f"{_ENV_PREFIX}FAILED_JOB_RETENTION_HOURS", "168"),
                ),
                expired_pool_retention_days=int(
                    os.getenv(f"{_ENV_PREFIX}EXPIRED_POOL_RETENTION_DAYS", "90"),
                ),
            ),
            providers=ProviderSettings(
                mode=os.getenv(f"{_ENV_PREFIX}PROVIDER_MODE", "simulated").strip().lower(),
                generation_url=_env_optional(f"{_ENV_PREFIX}GENERATION_URL"),
                notification_url=_env_optional(f"{_ENV_PREFIX}NOTIFICATION_URL"),
                api_key=_env_optional(f"{_ENV_PREFIX}PROVIDER_API_KEY"),
                request_timeout_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}PROVIDER_TIMEOUT_SECONDS", "60.0"),
                ),
                max_retries=int(os.getenv(f"{_ENV_PREFIX}PROVIDER_MAX_RETRIES", "2")),
            ),
            reporting=ReportingSettings(
                webhook_url=_env_optional(f"{_ENV_PREFIX}FATAL_WEBHOOK_URL"),
                request_timeout_seconds=float(
                    os.getenv(f"{_ENV_PREFIX}FATAL_WEBHOOK_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.worker.poll_interval_seconds <= 0:
            raise ValueError(f"{_ENV_PREFIX}POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.stale_after_seconds <= 0:
            raise ValueError(f"{_ENV_PREFIX}STALE_AFTER_SECONDS must be > 0.")
        if self.pipeline.subtask_timeout_seconds <= 0:
            raise ValueError(f"{_ENV_PREFIX}SUBTASK_TIMEOUT_SECONDS must be > 0.")
        if self.pipeline.synthesis_timeout_seconds <= 0:
            raise ValueError(f"{_ENV_PREFIX}SYNTHESIS_TIMEOUT_SECONDS must be > 0.")
        if self.pipeline.failure_threshold <= 0:
            raise ValueError(f"{_ENV_PREFIX}FAILURE_THRESHOLD must be > 0.")
        if self.pipeline.logo_count <= 0:
            raise ValueError(f"{_ENV_PREFIX}LOGO_COUNT must be > 0.")
        if self.pipeline.logo_credit_cost <= 0:
            raise ValueError(f"{_ENV_PREFIX}LOGO_CREDIT_COST must be > 0.")
        if self.pipeline.mockup_credit_cost <= 0:
            raise ValueError(f"{_ENV_PREFIX}MOCKUP_CREDIT_COST must be > 0.")
        if self.retention.completed_job_retention_hours < 0:
            raise ValueError(f"{_ENV_PREFIX}COMPLETED_JOB_RETENTION_HOURS must be >= 0.")
        if self.retention.failed_job_retention_hours < 0:
            raise ValueError(f"{_ENV_PREFIX}FAILED_JOB_RETENTION_HOURS must be >= 0.")
        for queue in self.queues.values():
            if queue.concurrency <= 0:
                raise ValueError(
                    f"{_ENV_PREFIX}QUEUE_CONCURRENCY for {queue.name!r} must be > 0.",
                )
            if queue.retry_policy.max_attempts <= 0:
                raise ValueError(
                    f"{_ENV_PREFIX}QUEUE_MAX_ATTEMPTS for {queue.name!r} must be > 0.",
                )
        if self.providers.mode not in {"simulated", "http"}:
            raise ValueError(
                f"{_ENV_PREFIX}PROVIDER_MODE must be 'simulated' or 'http', "
                f"got {self.providers.mode!r}.",
            )
        if self.providers.mode == "http":
            for name, value in (
                ("GENERATION_URL", self.providers.generation_url),
                ("NOTIFICATION_URL", self.providers.notification_url),
            ):
                if value is None:
                    raise ValueError(f"{_ENV_PREFIX}{name} is required in http provider mode.")
                _validate_url(f"{_ENV_PREFIX}{name}", value)
        if self.reporting.webhook_url is not None:
            _validate_url(f"{_ENV_PREFIX}FATAL_WEBHOOK_URL", self.reporting.webhook_url)


def _apply_queue_overrides(queues: dict[str, QueueConfig]) -> dict[str, QueueConfig]:
    concurrency = _collect_queue_overrides(f"{_ENV_PREFIX}QUEUE_CONCURRENCY", queues)
    max_attempts = _collect_queue_overrides(f"{_ENV_PREFIX}QUEUE_MAX_ATTEMPTS", queues)

    updated: dict[str, QueueConfig] = {}
    for name, queue in queues.items():
        if name in concurrency:
            queue = replace(queue, concurrency=concurrency[name])
        if name in max_attempts:
            attempts = max_attempts[name]
            schedule = queue.retry_policy.backoff_schedule
            base = schedule[0] if schedule else 0.0
            queue = replace(
                queue,
                retry_policy=RetryPolicy(
                    max_attempts=attempts,
                    backoff_schedule=exponential_schedule(base, attempts),
                ),
            )
        updated[name] = queue
    return updated


def _collect_queue_overrides(env_name: str, queues: dict[str, QueueConfig]) -> dict[str, int]:
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                f"Invalid {env_name} entry: {token!r}. Expected format '<queue>|<value>'.",
            )
        queue_name, value_raw = token.rsplit("|", 1)
        queue_name = queue_name.strip()
        value_raw = value_raw.strip()
        if queue_name not in queues:
            raise ValueError(f"Invalid {env_name} entry: unknown queue {queue_name!r}.")
        try:
            value = int(value_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid {env_name} value for {queue_name!r}: {value_raw!r}",
            ) from error
        if value <= 0:
            raise ValueError(
                f"Invalid {env_name} value for {queue_name!r}: {value!r} (must be > 0)",
            )
        overrides[queue_name] = value
    return overrides


def _validate_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None
