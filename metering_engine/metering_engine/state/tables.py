"""ORM tables for the metering store: ledger, summaries, alerts, plans.

Declared with ``Mapped`` / ``mapped_column``.  ``Base.metadata`` is the
target for Alembic autogenerate and for :func:`create_tables`.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, JSON text on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all metering tables."""


# ---------------------------------------------------------------------------
# Event ledger
# ---------------------------------------------------------------------------


class UsageEventTable(Base):
    """Append-only ledger of every metering call.

    Rows are inserted once and never updated or deleted in normal
    operation.  The ledger is the source of truth from which counters
    and summaries can be rebuilt.
    """

    __tablename__ = "usage_events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    feature: Mapped[str] = mapped_column(String(128), nullable=False)
    metric: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    event_kind: Mapped[str] = mapped_column(String(16), nullable=False)  # increment | decrement | reset
    context_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_usage_events_tenant_occurred", "tenant_id", "occurred_at"),
        Index("ix_usage_events_tenant_key_occurred", "tenant_id", "feature", "metric", "occurred_at"),
    )


# ---------------------------------------------------------------------------
# Usage summaries
# ---------------------------------------------------------------------------


class UsageSummaryTable(Base):
    """Durable, eventually-consistent mirror of monthly and yearly counters.

    One row per ``(tenant, feature, metric, period, period_date)``; content is
    rewritten on every tracked event by a single upsert statement.
    """

    __tablename__ = "usage_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    feature: Mapped[str] = mapped_column(String(128), nullable=False)
    metric: Mapped[str] = mapped_column(String(128), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    period_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_usage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    limit_value: Mapped[float] = mapped_column(Float, nullable=False, default=-1.0)  # -1 = unlimited
    percentage_used: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    limit_exceeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "feature",
            "metric",
            "period",
            "period_date",
            name="uq_usage_summaries_identity",
        ),
        Index("ix_usage_summaries_tenant_period", "tenant_id", "period", "period_date"),
        Index("ix_usage_summaries_tenant_exceeded", "tenant_id", "limit_exceeded"),
    )


# ---------------------------------------------------------------------------
# Usage alerts
# ---------------------------------------------------------------------------


class UsageAlertTable(Base):
    """Threshold alerts awaiting hand-off to notification delivery.

    At most one row per ``(tenant, feature, metric, alert_kind)`` is created
    within the dedup window; ``is_sent`` flips once the notification
    collaborator acknowledges it.
    """

    __tablename__ = "usage_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    feature: Mapped[str] = mapped_column(String(128), nullable=False)
    metric: Mapped[str] = mapped_column(String(128), nullable=False)
    alert_kind: Mapped[str] = mapped_column(String(32), nullable=False)  # warning | limit_reached | limit_exceeded
    threshold_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    current_usage: Mapped[float] = mapped_column(Float, nullable=False)
    limit_value: Mapped[float] = mapped_column(Float, nullable=False)
    is_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_data: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_usage_alerts_dedup", "tenant_id", "feature", "metric", "alert_kind", "created_at"),
        Index("ix_usage_alerts_tenant_sent", "tenant_id", "is_sent"),
    )


# ---------------------------------------------------------------------------
# Tenant plans
# ---------------------------------------------------------------------------


class TenantPlanTable(Base):
    """Current plan tier and subscription status per tenant.

    Written by the billing subsystem; read-only from the metering engine's
    perspective apart from test and local-mode provisioning.
    ``limit_overrides`` maps ``feature.metric`` to an explicit limit that
    wins over the tier default.
    """

    __tablename__ = "tenant_plans"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    plan_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    limit_overrides: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
