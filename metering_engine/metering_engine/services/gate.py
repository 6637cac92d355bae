"""Pre-consumption limit gate.

Answers "may this tenant consume *amount* more of ``feature.metric`` this
month?" from the monthly counter and the plan limit.  The check is
read-only and advisory: two callers can both pass it and then both
``track()``, briefly overshooting the limit.  Callers needing a hard cap
must serialise on their side.
"""

from __future__ import annotations

import logging
from datetime import datetime

from metering_engine.counters.base import CounterKey, CounterStore
from metering_engine.limits.source import ActivePlanResolver, LimitSource
from metering_engine.periods import PeriodKind, period_start, utcnow

logger = logging.getLogger(__name__)


class LimitGate:
    """Allow/deny decisions against the monthly counter."""

    def __init__(
        self,
        counters: CounterStore,
        limits: LimitSource,
        plans: ActivePlanResolver,
    ) -> None:
        self._counters = counters
        self._limits = limits
        self._plans = plans

    async def can_consume(
        self,
        tenant_id: str,
        feature: str,
        metric: str,
        amount: float = 1.0,
        at: datetime | None = None,
    ) -> bool:
        """Return ``True`` if ``usage + amount`` stays within the limit.

        Tenants without an active plan are denied.  Unlimited meters are
        always allowed.
        """
        instant = period_start(PeriodKind.MONTHLY, at or utcnow())
        key = CounterKey(tenant_id, feature, metric, PeriodKind.MONTHLY, instant)
        limit_key = f"{feature}.{metric}"

        if not await self._plans.has_active_plan(tenant_id):
            logger.info("Denied %s.%s for tenant %s: no active plan", feature, metric, tenant_id)
            return False

        limit = await self._limits.get_limit(tenant_id, limit_key)
        if limit is None:
            return True

        current = await self._counters.read(key)
        allowed = current + amount <= limit
        if not allowed:
            logger.warning(
                "Quota exceeded for tenant %s: %s usage=%s amount=%s limit=%d",
                tenant_id,
                limit_key,
                current,
                amount,
                limit,
            )
        return allowed
