"""Plan limit lookup for metered features."""

from metering_engine.limits.source import (
    ACTIVE_STATUSES,
    ActivePlanResolver,
    LimitSource,
    PlanLimitSource,
    PlanStatus,
    resolve_limit,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ActivePlanResolver",
    "LimitSource",
    "PlanLimitSource",
    "PlanStatus",
    "resolve_limit",
]
