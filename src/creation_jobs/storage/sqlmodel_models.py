"""SQLModel ORM tables for job, ledger and artifact storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_ready", "queue_name", "status", "priority", "available_at"),
        Index("uq_jobs_queue_dedup_key", "queue_name", "dedup_key", unique=True),
    )

    job_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    subject_id: str | None = Field(default=None, index=True)
    dedup_key: str | None = None
    priority: int = Field(default=100)
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)
    worker_id: str | None = None
    claim_token: str | None = Field(default=None, index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResourcePool(SQLModel, table=True):
    __tablename__ = "resource_pools"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "resource_type",
            "period_start",
            name="uq_resource_pools_owner_type_period",
        ),
        CheckConstraint("remaining >= 0", name="ck_resource_pools_remaining_non_negative"),
        CheckConstraint("used >= 0", name="ck_resource_pools_used_non_negative"),
        Index("idx_resource_pools_owner_type_end", "owner_id", "resource_type", "period_end"),
    )

    pool_id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    resource_type: str
    remaining: int = Field(default=0)
    used: int = Field(default=0)
    period_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    period_end: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_refill_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Asset(SQLModel, table=True):
    __tablename__ = "assets"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("subject_id", "asset_type", "slot", name="uq_assets_natural_key"),
    )

    asset_id: int | None = Field(default=None, primary_key=True)
    subject_id: str = Field(index=True)
    asset_type: str
    slot: int = Field(default=0)
    url: str | None = None
    source_job_id: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SyncLogEntry(SQLModel, table=True):
    __tablename__ = "sync_log"  # type: ignore[bad-override]

    event_id: str = Field(primary_key=True)
    owner_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status: str = Field(index=True)
    request_json: str | None = Field(default=None, sa_column=Column(Text))
    response_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
