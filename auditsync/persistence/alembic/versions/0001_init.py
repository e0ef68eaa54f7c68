"""create activities and extraction log tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per upstream activity; (activity_id, tenant_id) makes re-extraction idempotent.
    op.create_table(
        "activities",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("activity_id", sa.String(length=255), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("tenant_label", sa.String(length=255), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("operation", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("actor_kind", sa.String(length=16), nullable=False, server_default="user"),
        sa.Column("user_key", sa.String(length=255), nullable=True),
        sa.Column("organization_id", sa.String(length=255), nullable=True),
        sa.Column("workspace_name", sa.String(length=255), nullable=True),
        sa.Column("workspace_id", sa.String(length=255), nullable=True),
        sa.Column("item_name", sa.String(length=500), nullable=True),
        sa.Column("item_id", sa.String(length=255), nullable=True),
        sa.Column("item_type", sa.String(length=255), nullable=True),
        sa.Column("capacity_id", sa.String(length=255), nullable=True),
        sa.Column("capacity_name", sa.String(length=255), nullable=True),
        sa.Column("client_ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("is_success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
        sa.Column("result_status", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(length=255), nullable=True),
        sa.Column("distribution_method", sa.String(length=255), nullable=True),
        sa.Column("consumed_artifact_type", sa.String(length=255), nullable=True),
        sa.Column("raw_payload", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("activity_id", "tenant_id", name="uq_activities_activity_tenant"),
    )
    op.create_index("ix_activities_date", "activities", ["date"], unique=False)
    op.create_index("ix_activities_tenant_id", "activities", ["tenant_id"], unique=False)
    op.create_index("ix_activities_user_id", "activities", ["user_id"], unique=False)
    op.create_index("ix_activities_category", "activities", ["category"], unique=False)
    op.create_index("ix_activities_operation", "activities", ["operation"], unique=False)
    op.create_index("ix_activities_severity", "activities", ["severity"], unique=False)
    op.create_index("ix_activities_timestamp", "activities", ["timestamp"], unique=False)

    # Append-only run history; the newest completed_at row drives first-run detection.
    op.create_table(
        "extraction_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("date_extracted", sa.Date(), nullable=False),
        sa.Column("events_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("inserted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="success"),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_extraction_log_tenant_id", "extraction_log", ["tenant_id"], unique=False)
    op.create_index("ix_extraction_log_completed_at", "extraction_log", ["completed_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_extraction_log_completed_at", table_name="extraction_log")
    op.drop_index("ix_extraction_log_tenant_id", table_name="extraction_log")
    op.drop_table("extraction_log")
    op.drop_index("ix_activities_timestamp", table_name="activities")
    op.drop_index("ix_activities_severity", table_name="activities")
    op.drop_index("ix_activities_operation", table_name="activities")
    op.drop_index("ix_activities_category", table_name="activities")
    op.drop_index("ix_activities_user_id", table_name="activities")
    op.drop_index("ix_activities_tenant_id", table_name="activities")
    op.drop_index("ix_activities_date", table_name="activities")
    op.drop_table("activities")
