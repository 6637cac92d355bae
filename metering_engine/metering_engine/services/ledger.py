"""Append-only usage event ledger.

Every metering call is written here, in its own committed transaction,
before any counter is touched.  On a partial failure the ledger is
therefore at least as complete as the counters, and counters can be
rebuilt from it by replay.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import date, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from metering_engine.counters.base import validate_part
from metering_engine.models.events import UsageEvent, UsageEventKind
from metering_engine.periods import PeriodKind, period_bounds
from metering_engine.state.database import get_session
from metering_engine.state.repository import UsageEventRepository, event_from_row

logger = logging.getLogger(__name__)


class EventLedger:
    """Writes and reads the ``usage_events`` table.

    Parameters
    ----------
    engine:
        Async engine for the durable store.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def append(self, event: UsageEvent) -> str:
        """Persist *event* and return its id.  Storage errors propagate."""
        async with get_session(self._engine) as session:
            await UsageEventRepository(session, event.tenant_id).record(event)
        logger.debug(
            "Recorded usage event %s tenant=%s key=%s kind=%s amount=%s",
            event.event_id,
            event.tenant_id,
            event.limit_key,
            event.event_kind.value,
            event.amount,
        )
        return event.event_id

    async def record(
        self,
        tenant_id: str,
        feature: str,
        metric: str,
        amount: float = 1.0,
        kind: UsageEventKind | str = UsageEventKind.INCREMENT,
        context: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> str:
        """Build a :class:`UsageEvent` from the arguments and append it."""
        validate_part("tenant_id", tenant_id)
        validate_part("feature", feature)
        validate_part("metric", metric)
        fields: dict[str, Any] = {
            "tenant_id": tenant_id,
            "feature": feature,
            "metric": metric,
            "amount": amount,
            "event_kind": UsageEventKind(kind),
            "context": context or {},
        }
        if occurred_at is not None:
            fields["occurred_at"] = occurred_at
        return await self.append(UsageEvent(**fields))

    async def recent(
        self,
        tenant_id: str,
        *,
        hours: int = 24,
        feature: str | None = None,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[UsageEvent]:
        """Return the tenant's events from the last *hours*, newest first."""
        async with get_session(self._engine) as session:
            rows = await UsageEventRepository(session, tenant_id).recent(
                hours=hours, feature=feature, limit=limit, now=now
            )
            return [event_from_row(row) for row in rows]

    async def iter_period(
        self,
        tenant_id: str,
        period: PeriodKind,
        period_instant: date,
    ) -> AsyncIterator[UsageEvent]:
        """Yield the tenant's events inside one period window in replay order."""
        since, until = period_bounds(period, period_instant)
        async with get_session(self._engine) as session:
            rows = await UsageEventRepository(session, tenant_id).list_between(since, until)
            events = [event_from_row(row) for row in rows]
        for event in events:
            yield event
