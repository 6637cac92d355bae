"""Create usage metering tables.

Creates the append-only ``usage_events`` ledger, the ``usage_summaries``
reporting mirror, ``usage_alerts`` and the ``tenant_plans`` table read by
the limit source.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JsonType = JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "usage_events",
        sa.Column("event_id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("feature", sa.String(128), nullable=False),
        sa.Column("metric", sa.String(128), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("event_kind", sa.String(16), nullable=False),
        sa.Column("context_json", _JsonType, nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_usage_events_tenant_occurred", "usage_events", ["tenant_id", "occurred_at"])
    op.create_index(
        "ix_usage_events_tenant_key_occurred",
        "usage_events",
        ["tenant_id", "feature", "metric", "occurred_at"],
    )

    op.create_table(
        "usage_summaries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("feature", sa.String(128), nullable=False),
        sa.Column("metric", sa.String(128), nullable=False),
        sa.Column("period", sa.String(16), nullable=False),
        sa.Column("period_date", sa.Date(), nullable=False),
        sa.Column("total_usage", sa.Float(), nullable=False, server_default="0"),
        sa.Column("limit_value", sa.Float(), nullable=False, server_default="-1"),
        sa.Column("percentage_used", sa.Float(), nullable=False, server_default="0"),
        sa.Column("limit_exceeded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "tenant_id",
            "feature",
            "metric",
            "period",
            "period_date",
            name="uq_usage_summaries_identity",
        ),
    )
    op.create_index("ix_usage_summaries_tenant_period", "usage_summaries", ["tenant_id", "period", "period_date"])
    op.create_index("ix_usage_summaries_tenant_exceeded", "usage_summaries", ["tenant_id", "limit_exceeded"])

    op.create_table(
        "usage_alerts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("feature", sa.String(128), nullable=False),
        sa.Column("metric", sa.String(128), nullable=False),
        sa.Column("alert_kind", sa.String(32), nullable=False),
        sa.Column("threshold_percentage", sa.Float(), nullable=False),
        sa.Column("current_usage", sa.Float(), nullable=False),
        sa.Column("limit_value", sa.Float(), nullable=False),
        sa.Column("is_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_data", _JsonType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_usage_alerts_dedup",
        "usage_alerts",
        ["tenant_id", "feature", "metric", "alert_kind", "created_at"],
    )
    op.create_index("ix_usage_alerts_tenant_sent", "usage_alerts", ["tenant_id", "is_sent"])

    op.create_table(
        "tenant_plans",
        sa.Column("tenant_id", sa.String(128), primary_key=True),
        sa.Column("plan_tier", sa.String(32), nullable=False, server_default="free"),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("limit_overrides", _JsonType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("tenant_plans")
    op.drop_index("ix_usage_alerts_tenant_sent")
    op.drop_index("ix_usage_alerts_dedup")
    op.drop_table("usage_alerts")
    op.drop_index("ix_usage_summaries_tenant_exceeded")
    op.drop_index("ix_usage_summaries_tenant_period")
    op.drop_table("usage_summaries")
    op.drop_index("ix_usage_events_tenant_key_occurred")
    op.drop_index("ix_usage_events_tenant_occurred")
    op.drop_table("usage_events")
