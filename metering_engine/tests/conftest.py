"""Shared fixtures for metering engine tests.

Provides a file-backed SQLite engine with all tables created, an
in-memory counter store, a plan-backed limit source and a helper to
provision tenant plans.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from metering_engine.counters.memory_store import MemoryCounterStore
from metering_engine.limits.source import PlanLimitSource
from metering_engine.state.database import create_tables, get_session
from metering_engine.state.repository import TenantPlanRepository
from metering_engine.state.sqlite_adapter import get_local_engine


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine with the metering schema."""
    eng = get_local_engine(tmp_path / "metering.db")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    async with get_session(engine) as s:
        yield s


@pytest.fixture()
def counters() -> MemoryCounterStore:
    return MemoryCounterStore()


@pytest.fixture()
def plan_source(engine: AsyncEngine) -> PlanLimitSource:
    return PlanLimitSource(engine)


@pytest.fixture()
def provision_plan(engine: AsyncEngine) -> Callable[..., Awaitable[None]]:
    """Return a coroutine function assigning a plan tier to a tenant."""

    async def _provision(
        tenant_id: str,
        plan_tier: str = "basic",
        status: str = "active",
        overrides: dict[str, Any] | None = None,
    ) -> None:
        async with get_session(engine) as s:
            await TenantPlanRepository(s, tenant_id).upsert(
                plan_tier=plan_tier,
                status=status,
                limit_overrides=overrides,
            )

    return _provision
