"""Threshold alerts for limited meters.

After each tracked event the monthly usage is compared with the plan
limit.  Every configured threshold the usage has reached produces at most
one alert per ``(tenant, feature.metric, alert kind)`` inside the trailing
dedup window.  Created alerts are stored for an external notification
collaborator; an optional :class:`AlertNotifier` is invoked once the
alerts are committed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from metering_engine.counters.base import CounterKey, CounterStore
from metering_engine.limits.source import LimitSource
from metering_engine.models.alert import UsageAlert, format_alert_message, select_alert_kind
from metering_engine.models.summary import limit_percentage
from metering_engine.periods import PeriodKind, period_start, utcnow
from metering_engine.state.repository import UsageAlertRepository, alert_from_row

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS: tuple[float, ...] = (80.0, 100.0)


class AlertNotifier(Protocol):
    """Hand-off point to notification delivery (email, webhooks, ...)."""

    async def notify(self, alert: UsageAlert) -> None: ...


class AlertGenerator:
    """Creates deduplicated usage alerts.

    Parameters
    ----------
    counters:
        Counter store; the monthly counter is the alert basis.
    limits:
        Source of plan limits.
    thresholds:
        Percentages that trigger alerts, evaluated in ascending order.
    dedup_hours:
        Length of the trailing window in which an alert kind is not
        repeated for the same key.
    notifier:
        Optional collaborator called for each newly committed alert.
    """

    def __init__(
        self,
        counters: CounterStore,
        limits: LimitSource,
        *,
        thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
        dedup_hours: int = 24,
        notifier: AlertNotifier | None = None,
    ) -> None:
        self._counters = counters
        self._limits = limits
        self._thresholds = tuple(sorted(thresholds))
        self._dedup_window = timedelta(hours=dedup_hours)
        self._notifier = notifier

    async def maybe_alert(
        self,
        session: AsyncSession,
        tenant_id: str,
        feature: str,
        metric: str,
        at: datetime | None = None,
    ) -> list[UsageAlert]:
        """Create any alerts due for the key and return the new ones.

        The limit lookup and writes join the caller's transaction.
        Unlimited meters and meters with a zero limit never alert.
        """
        limit = await self._limits.get_limit(tenant_id, f"{feature}.{metric}", session=session)
        if limit is None or limit <= 0:
            return []

        now = at or utcnow()
        key = CounterKey(tenant_id, feature, metric, PeriodKind.MONTHLY, period_start(PeriodKind.MONTHLY, now))
        usage = await self._counters.read(key)
        percentage = limit_percentage(usage, limit)

        repo = UsageAlertRepository(session, tenant_id)
        created: list[UsageAlert] = []
        for threshold in self._thresholds:
            if percentage < threshold:
                break
            kind = select_alert_kind(threshold, percentage)
            if await repo.find_recent(feature, metric, kind, since=now - self._dedup_window) is not None:
                continue

            row = await repo.create(
                feature=feature,
                metric=metric,
                alert_kind=kind,
                threshold_percentage=threshold,
                current_usage=usage,
                limit_value=float(limit),
                notification_data={
                    "percentage_used": percentage,
                    "remaining": max(0.0, limit - usage),
                    "message": format_alert_message(kind, feature, metric, percentage),
                },
                created_at=now,
            )
            created.append(alert_from_row(row))
            logger.warning(
                "Usage alert %s for tenant %s: %s.%s at %.1f%% of %d",
                kind.value,
                tenant_id,
                feature,
                metric,
                percentage,
                limit,
            )
        return created

    async def dispatch(self, alerts: Sequence[UsageAlert]) -> None:
        """Pass committed alerts to the notifier; failures are only logged."""
        if self._notifier is None:
            return
        for alert in alerts:
            try:
                await self._notifier.notify(alert)
            except Exception:
                logger.warning(
                    "Alert notifier failed for alert %s (tenant %s)",
                    alert.id,
                    alert.tenant_id,
                    exc_info=True,
                )

    async def list_alerts(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        unsent_only: bool = True,
        limit: int = 100,
    ) -> list[UsageAlert]:
        rows = await UsageAlertRepository(session, tenant_id).list_alerts(unsent_only=unsent_only, limit=limit)
        return [alert_from_row(row) for row in rows]

    async def acknowledge_alerts(
        self,
        session: AsyncSession,
        tenant_id: str,
        alert_ids: Sequence[int],
        now: datetime | None = None,
    ) -> int:
        """Mark alerts as sent; returns how many rows changed."""
        count = await UsageAlertRepository(session, tenant_id).mark_sent(alert_ids, now=now)
        logger.info("Acknowledged %d alerts for tenant %s", count, tenant_id)
        return count
