"""Add generated asset and CRM sync log tables for pipeline handlers."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "assets",
        sa.Column("asset_id", sa.Integer(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("asset_type", sa.String(), nullable=False),
        sa.Column("slot", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("source_job_id", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("asset_id"),
        sa.UniqueConstraint("subject_id", "asset_type", "slot", name="uq_assets_natural_key"),
    )
    op.create_index("ix_assets_subject_id", "assets", ["subject_id"], unique=False)

    op.create_table(
        "sync_log",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("request_json", sa.Text(), nullable=True),
        sa.Column("response_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_sync_log_owner_id", "sync_log", ["owner_id"], unique=False)
    op.create_index("ix_sync_log_event_type", "sync_log", ["event_type"], unique=False)
    op.create_index("ix_sync_log_status", "sync_log", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_sync_log_status", table_name="sync_log")
    op.drop_index("ix_sync_log_event_type", table_name="sync_log")
    op.drop_index("ix_sync_log_owner_id", table_name="sync_log")
    op.drop_table("sync_log")
    op.drop_index("ix_assets_subject_id", table_name="assets")
    op.drop_table("assets")
