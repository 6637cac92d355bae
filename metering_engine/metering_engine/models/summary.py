"""Usage summary models for reporting and dashboards.

A ``UsageSummary`` is the durable, eventually-consistent mirror of one
counter: one row per tenant, ``feature.metric``, period kind and period
instant.  It is a reporting cache; gating decisions always read the
counter store instead.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field

from metering_engine.periods import PeriodKind

UNLIMITED = -1

# Percentage at which a limited meter is flagged as approaching its limit.
APPROACHING_LIMIT_PCT = 80.0


def limit_percentage(usage: float, limit: float) -> float:
    """Share of *limit* used, in percent, without clamping.

    Usage within float rounding of the limit (ten ``0.1`` increments against
    a limit of 1) counts as exactly 100.
    """
    if math.isclose(usage, limit, rel_tol=1e-9):
        return 100.0
    return usage / limit * 100


class MeterStatus(str, Enum):
    """Dashboard status of a single meter."""

    OK = "ok"
    WARNING = "warning"
    EXCEEDED = "exceeded"
    UNLIMITED = "unlimited"


class UsageSummary(BaseModel):
    """Last-known total for one counter and its limit snapshot."""

    tenant_id: str
    feature: str
    metric: str
    period: PeriodKind
    period_date: date
    total_usage: float = 0.0
    limit_value: float = Field(
        default=UNLIMITED,
        description="Limit snapshot at last reconcile; -1 means unlimited.",
    )
    percentage_used: float = Field(default=0.0, ge=0.0, le=100.0)
    limit_exceeded: bool = False
    last_updated_at: datetime | None = None

    @property
    def limit_key(self) -> str:
        return f"{self.feature}.{self.metric}"

    @property
    def is_unlimited(self) -> bool:
        return self.limit_value < 0

    @property
    def is_approaching_limit(self) -> bool:
        if self.is_unlimited:
            return False
        return self.percentage_used >= APPROACHING_LIMIT_PCT

    @property
    def remaining(self) -> float | None:
        """Units left before the limit, or ``None`` when unlimited."""
        if self.is_unlimited:
            return None
        return max(0.0, self.limit_value - self.total_usage)

    @property
    def status(self) -> MeterStatus:
        if self.is_unlimited:
            return MeterStatus.UNLIMITED
        if self.limit_exceeded:
            return MeterStatus.EXCEEDED
        if self.is_approaching_limit:
            return MeterStatus.WARNING
        return MeterStatus.OK


class UsageMeter(BaseModel):
    """Flattened dashboard row derived from a :class:`UsageSummary`."""

    feature: str
    metric: str
    display_name: str
    current_usage: float
    limit: float | None
    percentage_used: float
    remaining: float | None
    is_unlimited: bool
    is_approaching_limit: bool
    is_limit_exceeded: bool
    status: MeterStatus

    @classmethod
    def from_summary(cls, summary: UsageSummary) -> UsageMeter:
        return cls(
            feature=summary.feature,
            metric=summary.metric,
            display_name=humanize_key(summary.feature, summary.metric),
            current_usage=summary.total_usage,
            limit=None if summary.is_unlimited else summary.limit_value,
            percentage_used=summary.percentage_used,
            remaining=summary.remaining,
            is_unlimited=summary.is_unlimited,
            is_approaching_limit=summary.is_approaching_limit,
            is_limit_exceeded=summary.limit_exceeded,
            status=summary.status,
        )


class PeriodAnalytics(BaseModel):
    """All summaries recorded for one period instant."""

    period: PeriodKind
    period_date: date
    summaries: list[UsageSummary] = Field(default_factory=list)

    @property
    def total_by_key(self) -> dict[str, float]:
        return {s.limit_key: s.total_usage for s in self.summaries}


def humanize_key(feature: str, metric: str) -> str:
    """Render ``file_storage`` / ``storage_mb`` as ``File Storage Storage Mb``."""
    parts = f"{feature} {metric}".replace("_", " ").replace("-", " ").split()
    return " ".join(p.capitalize() for p in parts)
