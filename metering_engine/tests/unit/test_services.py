"""Tests for the ledger, summary reconciler, limit gate and alert generator."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from metering_engine.counters.base import CounterKey, InvalidUsageKeyError
from metering_engine.counters.memory_store import MemoryCounterStore
from metering_engine.models.alert import AlertKind
from metering_engine.models.events import UsageEventKind
from metering_engine.periods import PeriodKind
from metering_engine.services.alerts import AlertGenerator
from metering_engine.services.gate import LimitGate
from metering_engine.services.ledger import EventLedger
from metering_engine.services.reconciler import SummaryReconciler, compute_percentage
from metering_engine.state.database import get_session
from metering_engine.state.tables import UsageAlertTable, UsageEventTable

_TENANT = "tenant-a"
_NOW = datetime(2026, 5, 15, 12, 0, tzinfo=UTC)
_MAY = date(2026, 5, 1)


class _StaticLimits:
    """Limit source and plan resolver with fixed answers."""

    def __init__(self, limits: dict[str, int | None] | None = None, active: bool = True) -> None:
        self._limits = limits or {}
        self._active = active
        self.sessions: list = []

    async def get_limit(self, tenant_id: str, limit_key: str, session=None) -> int | None:
        self.sessions.append(session)
        return self._limits.get(limit_key)

    async def has_active_plan(self, tenant_id: str) -> bool:
        return self._active


async def _set_usage(counters: MemoryCounterStore, value: float, period=PeriodKind.MONTHLY, instant=_MAY) -> None:
    key = CounterKey(_TENANT, "api", "calls", period, instant)
    await counters.adjust(key, value, UsageEventKind.RESET)


# ---------------------------------------------------------------------------
# EventLedger
# ---------------------------------------------------------------------------


class TestEventLedger:
    @pytest.mark.asyncio
    async def test_record_commits_row(self, engine: AsyncEngine) -> None:
        ledger = EventLedger(engine)
        event_id = await ledger.record(_TENANT, "api", "calls", 3, "increment", {"user_id": 7}, occurred_at=_NOW)

        assert event_id.startswith("evt-")
        async with get_session(engine) as s:
            count = (await s.execute(select(func.count()).select_from(UsageEventTable))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_record_validates_identifiers(self, engine: AsyncEngine) -> None:
        with pytest.raises(InvalidUsageKeyError):
            await EventLedger(engine).record(_TENANT, "api:*", "calls")

    @pytest.mark.asyncio
    async def test_iter_period_yields_window_only(self, engine: AsyncEngine) -> None:
        ledger = EventLedger(engine)
        await ledger.record(_TENANT, "api", "calls", 1, occurred_at=datetime(2026, 4, 30, 23, 59, tzinfo=UTC))
        await ledger.record(_TENANT, "api", "calls", 2, occurred_at=datetime(2026, 5, 2, tzinfo=UTC))
        await ledger.record(_TENANT, "api", "calls", 3, occurred_at=datetime(2026, 5, 1, tzinfo=UTC))

        amounts = [e.amount async for e in ledger.iter_period(_TENANT, PeriodKind.MONTHLY, _MAY)]
        assert amounts == [3, 2]

    @pytest.mark.asyncio
    async def test_recent(self, engine: AsyncEngine) -> None:
        ledger = EventLedger(engine)
        await ledger.record(_TENANT, "api", "calls", occurred_at=_NOW - timedelta(hours=1))
        events = await ledger.recent(_TENANT, now=_NOW)
        assert len(events) == 1
        assert events[0].limit_key == "api.calls"


# ---------------------------------------------------------------------------
# SummaryReconciler
# ---------------------------------------------------------------------------


class TestComputePercentage:
    def test_capped_at_hundred(self) -> None:
        assert compute_percentage(150, 100) == 100.0

    def test_unlimited_is_zero(self) -> None:
        assert compute_percentage(150, -1) == 0.0
        assert compute_percentage(150, 0) == 0.0

    def test_fraction(self) -> None:
        assert compute_percentage(25, 200) == 12.5

    def test_negative_usage_is_zero(self) -> None:
        assert compute_percentage(-5, 100) == 0.0

    def test_accumulated_fractions_reach_hundred(self) -> None:
        usage = sum([0.1] * 10)
        assert usage != 1.0
        assert compute_percentage(usage, 1) == 100.0


class TestSummaryReconciler:
    @pytest.mark.asyncio
    async def test_reconcile_limited(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 120)
        reconciler = SummaryReconciler(counters, _StaticLimits({"api.calls": 100}))

        async with get_session(engine) as s:
            summary = await reconciler.reconcile(s, _TENANT, "api", "calls", "monthly", at=_NOW)

        assert summary.period_date == _MAY
        assert summary.total_usage == 120
        assert summary.percentage_used == 100.0
        assert summary.limit_exceeded is True

    @pytest.mark.asyncio
    async def test_reconcile_unlimited(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 5000)
        reconciler = SummaryReconciler(counters, _StaticLimits())

        async with get_session(engine) as s:
            summary = await reconciler.reconcile(s, _TENANT, "api", "calls", PeriodKind.MONTHLY, at=_NOW)

        assert summary.limit_value == -1
        assert summary.percentage_used == 0.0
        assert summary.limit_exceeded is False

    @pytest.mark.asyncio
    async def test_exactly_at_limit_is_not_exceeded(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 100)
        reconciler = SummaryReconciler(counters, _StaticLimits({"api.calls": 100}))
        async with get_session(engine) as s:
            summary = await reconciler.reconcile(s, _TENANT, "api", "calls", PeriodKind.MONTHLY, at=_NOW)
        assert summary.percentage_used == 100.0
        assert summary.limit_exceeded is False

    @pytest.mark.asyncio
    async def test_negative_usage_summarizes_as_zero(self, engine: AsyncEngine) -> None:
        counters = MemoryCounterStore(allow_negative=True)
        key = CounterKey(_TENANT, "api", "calls", PeriodKind.MONTHLY, _MAY)
        await counters.adjust(key, 5, UsageEventKind.DECREMENT)
        reconciler = SummaryReconciler(counters, _StaticLimits({"api.calls": 100}))
        async with get_session(engine) as s:
            summary = await reconciler.reconcile(s, _TENANT, "api", "calls", PeriodKind.MONTHLY, at=_NOW)
        assert summary.total_usage == -5.0
        assert summary.percentage_used == 0.0
        assert summary.limit_exceeded is False

    @pytest.mark.asyncio
    async def test_limit_lookup_uses_callers_session(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        limits = _StaticLimits({"api.calls": 100})
        reconciler = SummaryReconciler(counters, limits)
        async with get_session(engine) as s:
            await reconciler.reconcile(s, _TENANT, "api", "calls", PeriodKind.MONTHLY, at=_NOW)
            await reconciler.reconcile(s, _TENANT, "api", "calls", PeriodKind.YEARLY, at=_NOW)
        assert limits.sessions == [s, s]


# ---------------------------------------------------------------------------
# LimitGate
# ---------------------------------------------------------------------------


class TestLimitGate:
    @pytest.mark.asyncio
    async def test_boundary(self, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 95)
        limits = _StaticLimits({"api.calls": 100})
        gate = LimitGate(counters, limits, limits)
        assert await gate.can_consume(_TENANT, "api", "calls", 5, at=_NOW) is True
        assert await gate.can_consume(_TENANT, "api", "calls", 6, at=_NOW) is False

    @pytest.mark.asyncio
    async def test_unlimited_always_allowed(self, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 1_000_000)
        limits = _StaticLimits({"api.calls": None})
        gate = LimitGate(counters, limits, limits)
        assert await gate.can_consume(_TENANT, "api", "calls", 10_000, at=_NOW) is True

    @pytest.mark.asyncio
    async def test_no_active_plan_is_denied(self, counters: MemoryCounterStore) -> None:
        limits = _StaticLimits({"api.calls": None}, active=False)
        gate = LimitGate(counters, limits, limits)
        assert await gate.can_consume(_TENANT, "api", "calls", at=_NOW) is False

    @pytest.mark.asyncio
    async def test_zero_limit_denies(self, counters: MemoryCounterStore) -> None:
        limits = _StaticLimits({"api.calls": 0})
        gate = LimitGate(counters, limits, limits)
        assert await gate.can_consume(_TENANT, "api", "calls", at=_NOW) is False

    @pytest.mark.asyncio
    async def test_reads_window_of_at(self, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 100, instant=date(2026, 4, 1))
        limits = _StaticLimits({"api.calls": 100})
        gate = LimitGate(counters, limits, limits)
        assert await gate.can_consume(_TENANT, "api", "calls", at=_NOW) is True


# ---------------------------------------------------------------------------
# AlertGenerator
# ---------------------------------------------------------------------------


class TestAlertGenerator:
    @pytest.mark.asyncio
    async def test_below_threshold_no_alert(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 79)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}))
        async with get_session(engine) as s:
            assert await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW) == []

    @pytest.mark.asyncio
    async def test_warning_payload(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 85)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}))
        async with get_session(engine) as s:
            alerts = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.alert_kind == AlertKind.WARNING
        assert alert.threshold_percentage == 80.0
        assert alert.notification_data["percentage_used"] == 85.0
        assert alert.notification_data["remaining"] == 15.0
        assert alert.message == "You've used 85% of your Api Calls limit."
        assert alert.is_sent is False

    @pytest.mark.asyncio
    async def test_over_limit_creates_warning_and_exceeded(
        self, engine: AsyncEngine, counters: MemoryCounterStore
    ) -> None:
        await _set_usage(counters, 130)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}))
        async with get_session(engine) as s:
            alerts = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)
        assert [a.alert_kind for a in alerts] == [AlertKind.WARNING, AlertKind.LIMIT_EXCEEDED]

    @pytest.mark.asyncio
    async def test_exactly_at_limit_is_reached(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 100)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}))
        async with get_session(engine) as s:
            alerts = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)
        assert alerts[-1].alert_kind == AlertKind.LIMIT_REACHED

    @pytest.mark.asyncio
    async def test_fractional_usage_landing_on_limit_is_reached(
        self, engine: AsyncEngine, counters: MemoryCounterStore
    ) -> None:
        key = CounterKey(_TENANT, "api", "calls", PeriodKind.MONTHLY, _MAY)
        for _ in range(10):
            await counters.adjust(key, 0.1, UsageEventKind.INCREMENT)
        limits = _StaticLimits({"api.calls": 1})
        generator = AlertGenerator(counters, limits)
        async with get_session(engine) as s:
            alerts = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)
        assert [a.alert_kind for a in alerts] == [AlertKind.WARNING, AlertKind.LIMIT_REACHED]
        assert limits.sessions == [s]

    @pytest.mark.asyncio
    async def test_dedup_within_window(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 85)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}))
        for offset in (0, 1, 23):
            async with get_session(engine) as s:
                await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW + timedelta(hours=offset))

        async with get_session(engine) as s:
            count = (await s.execute(select(func.count()).select_from(UsageAlertTable))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_realerts_after_window(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 85)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}), dedup_hours=24)
        async with get_session(engine) as s:
            await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)
        async with get_session(engine) as s:
            later = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW + timedelta(hours=25))
        assert len(later) == 1

    @pytest.mark.asyncio
    async def test_unlimited_never_alerts(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 10_000)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": None}))
        async with get_session(engine) as s:
            assert await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW) == []

    @pytest.mark.asyncio
    async def test_custom_thresholds(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 60)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}), thresholds=(100, 50))
        async with get_session(engine) as s:
            alerts = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)
        assert [a.threshold_percentage for a in alerts] == [50]

    @pytest.mark.asyncio
    async def test_dispatch_swallows_notifier_errors(self, counters: MemoryCounterStore, engine: AsyncEngine) -> None:
        await _set_usage(counters, 90)
        notifier = AsyncMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("smtp down"))
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}), notifier=notifier)
        async with get_session(engine) as s:
            alerts = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)

        await generator.dispatch(alerts)
        notifier.notify.assert_awaited_once_with(alerts[0])

    @pytest.mark.asyncio
    async def test_list_and_acknowledge(self, engine: AsyncEngine, counters: MemoryCounterStore) -> None:
        await _set_usage(counters, 90)
        generator = AlertGenerator(counters, _StaticLimits({"api.calls": 100}))
        async with get_session(engine) as s:
            created = await generator.maybe_alert(s, _TENANT, "api", "calls", at=_NOW)

        async with get_session(engine) as s:
            assert await generator.acknowledge_alerts(s, _TENANT, [created[0].id]) == 1
        async with get_session(engine) as s:
            assert await generator.list_alerts(s, _TENANT) == []
            sent = await generator.list_alerts(s, _TENANT, unsent_only=False)
        assert sent[0].is_sent is True
