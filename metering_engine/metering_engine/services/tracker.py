"""Usage tracking orchestration.

:class:`UsageTracker` is the engine's single entry point.  ``track()``
performs, in order:

1. append the event to the ledger (own committed transaction),
2. adjust the daily, weekly, monthly and yearly counters,
3. reconcile the monthly and yearly summary rows,
4. create any due threshold alerts against the monthly counter.

Any failure is logged and reported as ``False``; steps that already ran
are not undone.  ``False`` therefore means "usage may be partially
recorded", and :meth:`UsageTracker.rebuild_counters` repairs counters and
summaries from the ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from metering_engine.config import MeteringSettings, load_settings
from metering_engine.counters import build_counter_store
from metering_engine.counters.base import CounterKey, CounterStore, validate_part
from metering_engine.limits.source import ActivePlanResolver, LimitSource, PlanLimitSource
from metering_engine.models.alert import UsageAlert
from metering_engine.models.events import UsageEvent, UsageEventKind
from metering_engine.models.summary import PeriodAnalytics, UsageMeter, UsageSummary
from metering_engine.periods import (
    ALL_PERIODS,
    SUMMARIZED_PERIODS,
    PeriodKind,
    coerce_period,
    period_start,
    shift_period,
    utcnow,
)
from metering_engine.services.alerts import DEFAULT_THRESHOLDS, AlertGenerator, AlertNotifier
from metering_engine.services.gate import LimitGate
from metering_engine.services.ledger import EventLedger
from metering_engine.services.reconciler import SummaryReconciler
from metering_engine.state.database import get_engine, get_session
from metering_engine.state.repository import UsageSummaryRepository, summary_from_row

logger = logging.getLogger(__name__)


class UsageTracker:
    """Records usage, answers usage queries and gates consumption.

    Parameters
    ----------
    engine:
        Async engine for the durable store (ledger, summaries, alerts).
    counters:
        Shared counter store.
    limits:
        Source of plan limits per ``feature.metric``.
    plans:
        Resolver deciding whether a tenant has an active plan.
    thresholds:
        Alert thresholds in percent.
    dedup_hours:
        Alert dedup window.
    allow_negative:
        Whether ledger replay may drive counters below zero; should match
        the counter store's own setting.
    notifier:
        Optional alert hand-off collaborator.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        counters: CounterStore,
        limits: LimitSource,
        plans: ActivePlanResolver,
        *,
        thresholds: Sequence[float] = DEFAULT_THRESHOLDS,
        dedup_hours: int = 24,
        allow_negative: bool = False,
        notifier: AlertNotifier | None = None,
    ) -> None:
        self._engine = engine
        self._counters = counters
        self._allow_negative = allow_negative
        self._ledger = EventLedger(engine)
        self._reconciler = SummaryReconciler(counters, limits)
        self._gate = LimitGate(counters, limits, plans)
        self._alerts = AlertGenerator(
            counters,
            limits,
            thresholds=thresholds,
            dedup_hours=dedup_hours,
            notifier=notifier,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def ledger(self) -> EventLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def track(
        self,
        tenant_id: str,
        feature: str,
        metric: str,
        amount: float = 1.0,
        event_kind: UsageEventKind | str = UsageEventKind.INCREMENT,
        context: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> bool:
        """Record one metering event and update every derived view.

        Returns
        -------
        bool
            ``True`` when every step succeeded.  ``False`` when a storage
            step failed; the failure is logged with the tenant, key and
            amount, and earlier steps stay applied.

        Raises
        ------
        InvalidUsageKeyError
            If an identifier is malformed.
        ValueError
            If *event_kind* is unknown.
        """
        validate_part("tenant_id", tenant_id)
        validate_part("feature", feature)
        validate_part("metric", metric)
        fields: dict[str, Any] = {
            "tenant_id": tenant_id,
            "feature": feature,
            "metric": metric,
            "amount": amount,
            "event_kind": UsageEventKind(event_kind),
            "context": context or {},
        }
        if occurred_at is not None:
            fields["occurred_at"] = occurred_at
        event = UsageEvent(**fields)

        try:
            await self._ledger.append(event)
            await self._apply_to_counters(event)
            async with get_session(self._engine) as session:
                for period in SUMMARIZED_PERIODS:
                    await self._reconciler.reconcile(
                        session, tenant_id, feature, metric, period, at=event.occurred_at
                    )
                alerts = await self._alerts.maybe_alert(session, tenant_id, feature, metric, at=event.occurred_at)
        except Exception:
            logger.error(
                "Usage tracking failed",
                exc_info=True,
                extra={
                    "usage": {
                        "tenant_id": tenant_id,
                        "feature": feature,
                        "metric": metric,
                        "amount": amount,
                        "event_kind": event.event_kind.value,
                        "event_id": event.event_id,
                    }
                },
            )
            return False

        await self._alerts.dispatch(alerts)
        return True

    async def _apply_to_counters(self, event: UsageEvent) -> None:
        for period in ALL_PERIODS:
            key = CounterKey(
                event.tenant_id,
                event.feature,
                event.metric,
                period,
                period_start(period, event.occurred_at),
            )
            await self._counters.adjust(key, event.amount, event.event_kind)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_current_usage(
        self,
        tenant_id: str,
        feature: str,
        metric: str,
        period: PeriodKind | str = PeriodKind.MONTHLY,
        at: datetime | None = None,
    ) -> float:
        """Return the counter value for the window containing *at* (default now)."""
        period = coerce_period(period)
        key = CounterKey(tenant_id, feature, metric, period, period_start(period, at or utcnow()))
        return await self._counters.read(key)

    async def get_usage_summary(
        self,
        tenant_id: str,
        period: PeriodKind | str = PeriodKind.MONTHLY,
        at: datetime | None = None,
    ) -> dict[str, UsageSummary]:
        """Return the current window's summaries keyed by ``feature.metric``.

        Only monthly and yearly windows are summarized; other kinds return
        an empty mapping.
        """
        period = coerce_period(period)
        instant = period_start(period, at or utcnow())
        async with get_session(self._engine) as session:
            rows = await UsageSummaryRepository(session, tenant_id).list_for_periods(period, [instant])
            summaries = [summary_from_row(row) for row in rows]
        return {s.limit_key: s for s in summaries}

    async def get_meters(
        self,
        tenant_id: str,
        period: PeriodKind | str = PeriodKind.MONTHLY,
        at: datetime | None = None,
    ) -> list[UsageMeter]:
        """Dashboard rows for every summarized meter, sorted by key."""
        summaries = await self.get_usage_summary(tenant_id, period, at)
        return [UsageMeter.from_summary(summaries[k]) for k in sorted(summaries)]

    async def get_analytics(
        self,
        tenant_id: str,
        period: PeriodKind | str = PeriodKind.MONTHLY,
        periods_back: int = 6,
        at: datetime | None = None,
    ) -> list[PeriodAnalytics]:
        """Return summaries for the last *periods_back* windows, oldest first.

        The current window is the last entry.  Windows with no recorded
        usage are included with an empty summary list.
        """
        if periods_back < 1:
            raise ValueError("periods_back must be >= 1")
        period = coerce_period(period)
        current = period_start(period, at or utcnow())
        instants = [shift_period(period, current, -i) for i in reversed(range(periods_back))]

        async with get_session(self._engine) as session:
            rows = await UsageSummaryRepository(session, tenant_id).list_for_periods(period, instants)
            summaries = [summary_from_row(row) for row in rows]

        by_instant: dict[date, list[UsageSummary]] = {instant: [] for instant in instants}
        for summary in summaries:
            by_instant[summary.period_date].append(summary)
        return [
            PeriodAnalytics(period=period, period_date=instant, summaries=by_instant[instant]) for instant in instants
        ]

    async def recent_events(
        self,
        tenant_id: str,
        *,
        hours: int = 24,
        feature: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        return await self._ledger.recent(tenant_id, hours=hours, feature=feature, limit=limit)

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    async def can_consume(
        self,
        tenant_id: str,
        feature: str,
        metric: str,
        amount: float = 1.0,
        at: datetime | None = None,
    ) -> bool:
        """Advisory check that *amount* more stays within the monthly limit."""
        return await self._gate.can_consume(tenant_id, feature, metric, amount, at=at)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def list_alerts(
        self,
        tenant_id: str,
        *,
        unsent_only: bool = True,
        limit: int = 100,
    ) -> list[UsageAlert]:
        async with get_session(self._engine) as session:
            return await self._alerts.list_alerts(session, tenant_id, unsent_only=unsent_only, limit=limit)

    async def acknowledge_alerts(self, tenant_id: str, alert_ids: Sequence[int]) -> int:
        """Mark alerts delivered by the notification collaborator as sent."""
        async with get_session(self._engine) as session:
            return await self._alerts.acknowledge_alerts(session, tenant_id, alert_ids)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reset_usage_for_period(
        self,
        tenant_id: str,
        period: PeriodKind | str = PeriodKind.MONTHLY,
        at: datetime | None = None,
    ) -> int:
        """Delete the tenant's counters for the current window of *period*.

        Other tenants, other period kinds and other windows of the same
        kind are untouched, as are summaries and the ledger.
        """
        period = coerce_period(period)
        instant = period_start(period, at or utcnow())
        deleted = await self._counters.delete_matching(tenant_id, period, instant)
        logger.info(
            "Usage counters reset tenant=%s period=%s period_date=%s keys_deleted=%d",
            tenant_id,
            period.value,
            instant.isoformat(),
            deleted,
        )
        return deleted

    async def rebuild_counters(self, tenant_id: str, at: datetime | None = None) -> dict[PeriodKind, int]:
        """Recompute the tenant's current-window counters from the ledger.

        Each window's counters are cleared and then set to the fold of the
        window's events in ``occurred_at`` order.  Monthly and yearly
        summaries are reconciled afterwards.

        Returns
        -------
        dict[PeriodKind, int]
            Number of counters written per period kind.
        """
        validate_part("tenant_id", tenant_id)
        at = at or utcnow()
        written: dict[PeriodKind, int] = {}
        summarized_keys: set[tuple[str, str]] = set()

        for period in ALL_PERIODS:
            instant = period_start(period, at)
            totals: dict[tuple[str, str], float] = {}
            async for event in self._ledger.iter_period(tenant_id, period, instant):
                pair = (event.feature, event.metric)
                if event.event_kind == UsageEventKind.RESET:
                    value = event.amount
                else:
                    value = totals.get(pair, 0.0) + event.signed_amount
                if value < 0 and not self._allow_negative:
                    value = 0.0
                totals[pair] = value

            await self._counters.delete_matching(tenant_id, period, instant)
            for (feature, metric), value in totals.items():
                key = CounterKey(tenant_id, feature, metric, period, instant)
                await self._counters.adjust(key, value, UsageEventKind.RESET)
            written[period] = len(totals)
            if period in SUMMARIZED_PERIODS:
                summarized_keys.update(totals)

        async with get_session(self._engine) as session:
            for feature, metric in sorted(summarized_keys):
                for period in SUMMARIZED_PERIODS:
                    await self._reconciler.reconcile(session, tenant_id, feature, metric, period, at=at)

        logger.info(
            "Rebuilt counters for tenant %s from ledger: %s",
            tenant_id,
            {p.value: n for p, n in written.items()},
        )
        return written

    async def close(self) -> None:
        """Release the counter store connection and dispose the engine."""
        await self._counters.close()
        await self._engine.dispose()


def build_tracker(
    settings: MeteringSettings | None = None,
    notifier: AlertNotifier | None = None,
) -> UsageTracker:
    """Wire a :class:`UsageTracker` from configuration.

    The tenant plan table serves as both the limit source and the active
    plan resolver.  Schema creation is left to Alembic (or
    :func:`~metering_engine.state.database.create_tables` in local mode).
    """
    settings = settings or load_settings()
    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    plans = PlanLimitSource(engine)
    tracker = UsageTracker(
        engine,
        build_counter_store(settings),
        plans,
        plans,
        thresholds=settings.alert_thresholds,
        dedup_hours=settings.alert_dedup_hours,
        allow_negative=settings.allow_negative_usage,
        notifier=notifier,
    )
    logger.info(
        "Usage tracker ready env=%s counter_backend=%s",
        settings.env.value,
        settings.counter_backend.value,
    )
    return tracker
