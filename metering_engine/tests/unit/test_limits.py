"""Tests for plan limit resolution."""

from __future__ import annotations

import pytest

from metering_engine.limits.source import PlanLimitSource, resolve_limit

_TENANT = "tenant-a"


class TestResolveLimit:
    def test_tier_default(self) -> None:
        assert resolve_limit("basic", "api.calls") == 1_000

    def test_enterprise_is_unlimited(self) -> None:
        assert resolve_limit("enterprise", "api.calls") is None

    def test_unknown_key_is_unlimited(self) -> None:
        assert resolve_limit("free", "widgets.spun") is None

    def test_unknown_tier_has_no_limits(self) -> None:
        assert resolve_limit("legacy", "api.calls") is None

    def test_override_wins(self) -> None:
        assert resolve_limit("free", "api.calls", {"api.calls": 250}) == 250

    def test_override_minus_one_is_unlimited(self) -> None:
        assert resolve_limit("free", "storage.mb", {"storage.mb": -1}) is None

    def test_override_none_is_unlimited(self) -> None:
        assert resolve_limit("basic", "api.calls", {"api.calls": None}) is None

    def test_free_tier_has_no_api_access(self) -> None:
        assert resolve_limit("free", "api.calls") == 0


class TestPlanLimitSource:
    @pytest.mark.asyncio
    async def test_no_plan(self, plan_source: PlanLimitSource) -> None:
        assert await plan_source.get_limit(_TENANT, "api.calls") is None
        assert await plan_source.has_active_plan(_TENANT) is False

    @pytest.mark.asyncio
    async def test_limit_from_plan_and_overrides(self, plan_source: PlanLimitSource, provision_plan) -> None:
        await provision_plan(_TENANT, "basic", overrides={"storage.mb": 42})
        assert await plan_source.get_limit(_TENANT, "api.calls") == 1_000
        assert await plan_source.get_limit(_TENANT, "storage.mb") == 42

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "active"),
        [("active", True), ("trialing", True), ("past_due", False), ("canceled", False)],
    )
    async def test_active_statuses(
        self, plan_source: PlanLimitSource, provision_plan, status: str, active: bool
    ) -> None:
        await provision_plan(_TENANT, "basic", status=status)
        assert await plan_source.has_active_plan(_TENANT) is active
