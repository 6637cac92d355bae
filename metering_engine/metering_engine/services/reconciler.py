"""Summary reconciliation: mirror a counter into ``usage_summaries``.

The counter store is authoritative for gating; summaries are a reporting
cache.  Each reconcile reads the current counter and limit, derives the
percentage and exceeded flag, and writes the row with a single upsert so
that concurrent first writes for the same identity cannot both insert.
Concurrent reconciles of one identity still resolve last-writer-wins.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from metering_engine.counters.base import CounterKey, CounterStore
from metering_engine.limits.source import LimitSource
from metering_engine.models.summary import UNLIMITED, UsageSummary, limit_percentage
from metering_engine.periods import PeriodKind, coerce_period, period_start, utcnow
from metering_engine.state.repository import UsageSummaryRepository

logger = logging.getLogger(__name__)


def compute_percentage(usage: float, limit: float) -> float:
    """Percentage of *limit* used, clamped to 0..100; ``0`` when unlimited.

    Negative usage (decrements below zero with negative usage allowed)
    reports 0.
    """
    if limit <= 0:
        return 0.0
    return max(0.0, min(limit_percentage(usage, limit), 100.0))


class SummaryReconciler:
    """Writes counter snapshots into the summary table."""

    def __init__(self, counters: CounterStore, limits: LimitSource) -> None:
        self._counters = counters
        self._limits = limits

    async def reconcile(
        self,
        session: AsyncSession,
        tenant_id: str,
        feature: str,
        metric: str,
        period: PeriodKind | str,
        at: datetime | None = None,
    ) -> UsageSummary:
        """Upsert the summary row for the window of *period* containing *at*.

        The limit lookup and the write both run on *session*, inside the
        caller's transaction; the caller commits.
        """
        period = coerce_period(period)
        at = at or utcnow()
        instant = period_start(period, at)
        key = CounterKey(tenant_id, feature, metric, period, instant)

        limit = await self._limits.get_limit(tenant_id, f"{feature}.{metric}", session=session)
        usage = await self._counters.read(key)

        limit_value = float(UNLIMITED) if limit is None else float(limit)
        summary = UsageSummary(
            tenant_id=tenant_id,
            feature=feature,
            metric=metric,
            period=period,
            period_date=instant,
            total_usage=usage,
            limit_value=limit_value,
            percentage_used=compute_percentage(usage, limit_value),
            limit_exceeded=limit_value > 0 and limit_percentage(usage, limit_value) > 100,
            last_updated_at=at,
        )
        await UsageSummaryRepository(session, tenant_id).upsert(
            feature=feature,
            metric=metric,
            period=period,
            period_date=instant,
            total_usage=summary.total_usage,
            limit_value=summary.limit_value,
            percentage_used=summary.percentage_used,
            limit_exceeded=summary.limit_exceeded,
            updated_at=at,
        )
        return summary
