from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonPayload = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
Identity = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Activity(Base):
    __tablename__ = "activities"
    __table_args__ = (
        # Upstream ids are only unique inside one tenant.
        UniqueConstraint("activity_id", "tenant_id", name="uq_activities_activity_tenant"),
        Index("ix_activities_date", "date"),
        Index("ix_activities_tenant_id", "tenant_id"),
        Index("ix_activities_user_id", "user_id"),
        Index("ix_activities_category", "category"),
        Index("ix_activities_operation", "operation"),
        Index("ix_activities_severity", "severity"),
        Index("ix_activities_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Identity, primary_key=True, autoincrement=True)
    activity_id: Mapped[str] = mapped_column(String(255))
    tenant_id: Mapped[str] = mapped_column(String(255))
    tenant_label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True))
    # Calendar day of the event, used by every range filter.
    date: Mapped[dt.date] = mapped_column(Date)
    operation: Mapped[str] = mapped_column(String(255))
    user_id: Mapped[str] = mapped_column(String(255))
    actor_kind: Mapped[str] = mapped_column(String(16), default="user")
    user_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organization_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    workspace_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    workspace_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    item_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    item_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    item_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    capacity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    capacity_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_success: Mapped[bool] = mapped_column(Boolean, default=True)
    category: Mapped[str] = mapped_column(String(100))
    severity: Mapped[str] = mapped_column(String(20), default="info")
    result_status: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    distribution_method: Mapped[str | None] = mapped_column(String(255), nullable=True)
    consumed_artifact_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Full upstream event kept verbatim for later column backfills.
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JsonPayload, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ExtractionLog(Base):
    __tablename__ = "extraction_log"

    # Append-only: one row per tenant per run.
    id: Mapped[int] = mapped_column(Identity, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    date_extracted: Mapped[dt.date] = mapped_column(Date)
    events_count: Mapped[int] = mapped_column(Integer, default=0)
    inserted_count: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), index=True)
    status: Mapped[str] = mapped_column(String(50), default="success")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
