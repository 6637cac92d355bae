"""Repository classes providing access to the metering state store.

Each repository takes an ``AsyncSession`` and a tenant id at construction
time and operates within the caller's transaction boundary.  All writes
call ``session.flush()`` so that generated defaults are populated; the
caller is responsible for calling ``session.commit()`` (or relying on the
``get_session`` context manager).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metering_engine.models.alert import AlertKind, UsageAlert
from metering_engine.models.events import UsageEvent, UsageEventKind
from metering_engine.models.summary import UsageSummary
from metering_engine.periods import PeriodKind
from metering_engine.state.database import dialect_name
from metering_engine.state.tables import (
    TenantPlanTable,
    UsageAlertTable,
    UsageEventTable,
    UsageSummaryTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Insert *values* into *table*, updating *update_columns* when the
    *index_elements* key already exists.

    PostgreSQL and SQLite share the ``ON CONFLICT DO UPDATE`` form, so the
    whole write is one statement on either backend.
    """
    stmt: Any
    if dialect_name(session) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def event_from_row(row: UsageEventTable) -> UsageEvent:
    return UsageEvent(
        event_id=row.event_id,
        tenant_id=row.tenant_id,
        feature=row.feature,
        metric=row.metric,
        amount=float(row.amount),
        event_kind=UsageEventKind(row.event_kind),
        context=row.context_json or {},
        occurred_at=_aware(row.occurred_at),
    )


def summary_from_row(row: UsageSummaryTable) -> UsageSummary:
    return UsageSummary(
        tenant_id=row.tenant_id,
        feature=row.feature,
        metric=row.metric,
        period=PeriodKind(row.period),
        period_date=row.period_date,
        total_usage=float(row.total_usage),
        limit_value=float(row.limit_value),
        percentage_used=float(row.percentage_used),
        limit_exceeded=bool(row.limit_exceeded),
        last_updated_at=_aware(row.last_updated_at),
    )


def alert_from_row(row: UsageAlertTable) -> UsageAlert:
    return UsageAlert(
        id=row.id,
        tenant_id=row.tenant_id,
        feature=row.feature,
        metric=row.metric,
        alert_kind=AlertKind(row.alert_kind),
        threshold_percentage=float(row.threshold_percentage),
        current_usage=float(row.current_usage),
        limit_value=float(row.limit_value),
        is_sent=bool(row.is_sent),
        sent_at=_aware(row.sent_at),
        notification_data=row.notification_data or {},
        created_at=_aware(row.created_at),
    )


# ---------------------------------------------------------------------------
# UsageEventRepository
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Append-only access to the ``usage_events`` ledger.

    Rows are never updated or deleted; the class exposes no method for either.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def record(self, event: UsageEvent) -> UsageEventTable:
        """Insert *event* into the ledger."""
        if event.tenant_id != self._tenant_id:
            raise ValueError(f"Event tenant {event.tenant_id!r} does not match repository tenant {self._tenant_id!r}")
        row = UsageEventTable(
            event_id=event.event_id,
            tenant_id=event.tenant_id,
            feature=event.feature,
            metric=event.metric,
            amount=event.amount,
            event_kind=event.event_kind.value,
            context_json=event.context or None,
            occurred_at=event.occurred_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def recent(
        self,
        *,
        hours: int = 24,
        feature: str | None = None,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[UsageEventTable]:
        """Return events from the last *hours*, newest first."""
        since = (now or datetime.now(UTC)) - timedelta(hours=hours)
        stmt = select(UsageEventTable).where(
            UsageEventTable.tenant_id == self._tenant_id,
            UsageEventTable.occurred_at >= since,
        )
        if feature is not None:
            stmt = stmt.where(UsageEventTable.feature == feature)
        stmt = stmt.order_by(UsageEventTable.occurred_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_between(
        self,
        since: datetime,
        until: datetime,
    ) -> list[UsageEventTable]:
        """Return events with ``since <= occurred_at < until`` in replay order."""
        stmt = (
            select(UsageEventTable)
            .where(
                UsageEventTable.tenant_id == self._tenant_id,
                UsageEventTable.occurred_at >= since,
                UsageEventTable.occurred_at < until,
            )
            .order_by(UsageEventTable.occurred_at, UsageEventTable.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# UsageSummaryRepository
# ---------------------------------------------------------------------------


class UsageSummaryRepository:
    """Upsert and read access for the ``usage_summaries`` table."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def upsert(
        self,
        *,
        feature: str,
        metric: str,
        period: PeriodKind,
        period_date: date,
        total_usage: float,
        limit_value: float,
        percentage_used: float,
        limit_exceeded: bool,
        updated_at: datetime | None = None,
    ) -> None:
        """Insert or overwrite the row for the five-part identity in one statement."""
        values: dict[str, Any] = {
            "tenant_id": self._tenant_id,
            "feature": feature,
            "metric": metric,
            "period": period.value,
            "period_date": period_date,
            "total_usage": total_usage,
            "limit_value": limit_value,
            "percentage_used": percentage_used,
            "limit_exceeded": limit_exceeded,
            "last_updated_at": updated_at or datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            UsageSummaryTable,
            values=values,
            index_elements=["tenant_id", "feature", "metric", "period", "period_date"],
            update_columns=["total_usage", "limit_value", "percentage_used", "limit_exceeded", "last_updated_at"],
        )
        await self._session.flush()

    async def get(
        self,
        feature: str,
        metric: str,
        period: PeriodKind,
        period_date: date,
    ) -> UsageSummaryTable | None:
        stmt = select(UsageSummaryTable).where(
            UsageSummaryTable.tenant_id == self._tenant_id,
            UsageSummaryTable.feature == feature,
            UsageSummaryTable.metric == metric,
            UsageSummaryTable.period == period.value,
            UsageSummaryTable.period_date == period_date,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_periods(
        self,
        period: PeriodKind,
        period_dates: Sequence[date],
    ) -> list[UsageSummaryTable]:
        """Return all rows of *period* whose instant is in *period_dates*."""
        if not period_dates:
            return []
        stmt = (
            select(UsageSummaryTable)
            .where(
                UsageSummaryTable.tenant_id == self._tenant_id,
                UsageSummaryTable.period == period.value,
                UsageSummaryTable.period_date.in_(list(period_dates)),
            )
            .order_by(
                UsageSummaryTable.period_date,
                UsageSummaryTable.feature,
                UsageSummaryTable.metric,
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# UsageAlertRepository
# ---------------------------------------------------------------------------


class UsageAlertRepository:
    """Create, dedup-check and acknowledge rows in ``usage_alerts``."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def find_recent(
        self,
        feature: str,
        metric: str,
        alert_kind: AlertKind,
        since: datetime,
    ) -> UsageAlertTable | None:
        """Return any alert of *alert_kind* for the key created at or after *since*."""
        stmt = (
            select(UsageAlertTable)
            .where(
                UsageAlertTable.tenant_id == self._tenant_id,
                UsageAlertTable.feature == feature,
                UsageAlertTable.metric == metric,
                UsageAlertTable.alert_kind == alert_kind.value,
                UsageAlertTable.created_at >= since,
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def create(
        self,
        *,
        feature: str,
        metric: str,
        alert_kind: AlertKind,
        threshold_percentage: float,
        current_usage: float,
        limit_value: float,
        notification_data: dict[str, Any],
        created_at: datetime | None = None,
    ) -> UsageAlertTable:
        row = UsageAlertTable(
            tenant_id=self._tenant_id,
            feature=feature,
            metric=metric,
            alert_kind=alert_kind.value,
            threshold_percentage=threshold_percentage,
            current_usage=current_usage,
            limit_value=limit_value,
            is_sent=False,
            notification_data=notification_data,
            created_at=created_at or datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_alerts(self, *, unsent_only: bool = True, limit: int = 100) -> list[UsageAlertTable]:
        """Return alerts newest first, optionally only those not yet sent."""
        stmt = select(UsageAlertTable).where(UsageAlertTable.tenant_id == self._tenant_id)
        if unsent_only:
            stmt = stmt.where(UsageAlertTable.is_sent.is_(False))
        stmt = stmt.order_by(UsageAlertTable.created_at.desc(), UsageAlertTable.id.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_sent(self, alert_ids: Sequence[int], *, now: datetime | None = None) -> int:
        """Flag the given alerts as sent; ids of other tenants are ignored."""
        if not alert_ids:
            return 0
        stmt = (
            update(UsageAlertTable)
            .where(
                UsageAlertTable.tenant_id == self._tenant_id,
                UsageAlertTable.id.in_(list(alert_ids)),
                UsageAlertTable.is_sent.is_(False),
            )
            .values(is_sent=True, sent_at=now or datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# TenantPlanRepository
# ---------------------------------------------------------------------------


class TenantPlanRepository:
    """Read (and local-mode write) access to ``tenant_plans``."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> TenantPlanTable | None:
        """Fetch the plan row for this tenant. Returns None if no row exists."""
        stmt = select(TenantPlanTable).where(TenantPlanTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        *,
        plan_tier: str,
        status: str = "active",
        limit_overrides: dict[str, int | None] | None = None,
    ) -> TenantPlanTable:
        """Create or replace the tenant's plan assignment."""
        values: dict[str, Any] = {
            "tenant_id": self._tenant_id,
            "plan_tier": plan_tier,
            "status": status,
            "limit_overrides": limit_overrides,
            "updated_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            TenantPlanTable,
            values=values,
            index_elements=["tenant_id"],
            update_columns=["plan_tier", "status", "limit_overrides", "updated_at"],
        )
        await self._session.flush()
        row = await self.get()
        assert row is not None
        # The upsert bypasses the identity map; pick up the new column values.
        await self._session.refresh(row)
        return row
