"""Plan-defined usage limits.

Limits come from explicit per-tenant ``limit_overrides`` first, then the
tier defaults below, with ``None`` (or ``-1``) meaning unlimited.  A key
absent from both is also unlimited: missing limit configuration fails
open, while a missing or inactive plan fails closed at the gate.

Tier defaults::

    free:       api.calls=0,      storage.mb=100,    users.seats=1,  reports.generated=3
    basic:      api.calls=1_000,  storage.mb=1_000,  users.seats=5,  reports.generated=10
    premium:    api.calls=10_000, storage.mb=10_000, users.seats=20, reports.generated=unlimited
    enterprise: unlimited
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from metering_engine.state.database import get_session
from metering_engine.state.repository import TenantPlanRepository
from metering_engine.state.tables import TenantPlanTable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tier defaults
# ---------------------------------------------------------------------------

_TIER_LIMITS: dict[str, dict[str, int | None]] = {
    "free": {
        "api.calls": 0,
        "storage.mb": 100,
        "users.seats": 1,
        "reports.generated": 3,
        "projects.created": 3,
    },
    "basic": {
        "api.calls": 1_000,
        "storage.mb": 1_000,
        "users.seats": 5,
        "reports.generated": 10,
        "projects.created": 10,
    },
    "premium": {
        "api.calls": 10_000,
        "storage.mb": 10_000,
        "users.seats": 20,
        "reports.generated": None,
        "projects.created": 50,
    },
    "enterprise": {
        "api.calls": None,
        "storage.mb": None,
        "users.seats": None,
        "reports.generated": None,
        "projects.created": None,
    },
}


class PlanStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses under which a tenant may consume metered features.
ACTIVE_STATUSES = frozenset({PlanStatus.ACTIVE.value, PlanStatus.TRIALING.value})


class LimitSource(Protocol):
    """Resolves the limit for a ``feature.metric`` key."""

    async def get_limit(
        self,
        tenant_id: str,
        limit_key: str,
        session: AsyncSession | None = None,
    ) -> int | None:
        """Return the limit, or ``None`` when unlimited.

        Callers already inside a transaction pass their *session* so the
        lookup does not need a second connection.
        """
        ...


class ActivePlanResolver(Protocol):
    async def has_active_plan(self, tenant_id: str) -> bool: ...


def _normalise(value: Any) -> int | None:
    if value is None:
        return None
    limit = int(value)
    return None if limit < 0 else limit


def resolve_limit(
    plan_tier: str,
    limit_key: str,
    overrides: Mapping[str, Any] | None = None,
) -> int | None:
    """Resolve *limit_key* for a tier, applying explicit overrides first.

    Parameters
    ----------
    plan_tier:
        Tier name (``free``, ``basic``, ``premium``, ``enterprise``).
        Unknown tiers have no defaults.
    limit_key:
        ``feature.metric`` key, e.g. ``api.calls``.
    overrides:
        Per-tenant ``limit_key -> limit`` mapping.  A key present with
        ``None`` or ``-1`` explicitly makes the meter unlimited.

    Returns
    -------
    int | None
        The limit, or ``None`` for unlimited.
    """
    if overrides and limit_key in overrides:
        return _normalise(overrides[limit_key])
    return _normalise(_TIER_LIMITS.get(plan_tier, {}).get(limit_key))


class PlanLimitSource:
    """Limit source and plan resolver backed by the ``tenant_plans`` table.

    Lookups run on the caller's session when one is given and otherwise
    open a short read session on *engine*.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def _load_plan(self, tenant_id: str, session: AsyncSession | None) -> TenantPlanTable | None:
        if session is not None:
            return await TenantPlanRepository(session, tenant_id).get()
        async with get_session(self._engine) as own_session:
            return await TenantPlanRepository(own_session, tenant_id).get()

    async def get_limit(
        self,
        tenant_id: str,
        limit_key: str,
        session: AsyncSession | None = None,
    ) -> int | None:
        plan = await self._load_plan(tenant_id, session)
        if plan is None:
            return None
        return resolve_limit(plan.plan_tier, limit_key, plan.limit_overrides)

    async def has_active_plan(self, tenant_id: str) -> bool:
        plan = await self._load_plan(tenant_id, None)
        if plan is None:
            logger.debug("Tenant %s has no plan", tenant_id)
            return False
        return plan.status in ACTIVE_STATUSES
