"""Create job queue, job event and resource ledger tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=True),
        sa.Column("dedup_key", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_jobs_queue_name", "jobs", ["queue_name"], unique=False)
    op.create_index("ix_jobs_subject_id", "jobs", ["subject_id"], unique=False)
    op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)
    op.create_index("ix_jobs_failure_class", "jobs", ["failure_class"], unique=False)
    op.create_index("ix_jobs_claim_token", "jobs", ["claim_token"], unique=False)
    op.create_index(
        "idx_jobs_ready",
        "jobs",
        ["queue_name", "status", "priority", "available_at"],
        unique=False,
    )
    op.create_index(
        "uq_jobs_queue_dedup_key",
        "jobs",
        ["queue_name", "dedup_key"],
        unique=True,
    )

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_events_event_type", "job_events", ["event_type"], unique=False)
    op.create_index(
        "idx_job_events_job_time",
        "job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "resource_pools",
        sa.Column("pool_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_refill_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("remaining >= 0", name="ck_resource_pools_remaining_non_negative"),
        sa.CheckConstraint("used >= 0", name="ck_resource_pools_used_non_negative"),
        sa.PrimaryKeyConstraint("pool_id"),
        sa.UniqueConstraint(
            "owner_id",
            "resource_type",
            "period_start",
            name="uq_resource_pools_owner_type_period",
        ),
    )
    op.create_index("ix_resource_pools_owner_id", "resource_pools", ["owner_id"], unique=False)
    op.create_index(
        "idx_resource_pools_owner_type_end",
        "resource_pools",
        ["owner_id", "resource_type", "period_end"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_resource_pools_owner_type_end", table_name="resource_pools")
    op.drop_index("ix_resource_pools_owner_id", table_name="resource_pools")
    op.drop_table("resource_pools")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_index("ix_job_events_event_type", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("uq_jobs_queue_dedup_key", table_name="jobs")
    op.drop_index("idx_jobs_ready", table_name="jobs")
    op.drop_index("ix_jobs_claim_token", table_name="jobs")
    op.drop_index("ix_jobs_failure_class", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_subject_id", table_name="jobs")
    op.drop_index("ix_jobs_queue_name", table_name="jobs")
    op.drop_table("jobs")
