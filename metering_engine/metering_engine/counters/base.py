"""Counter store contract and key addressing.

The counter store is the fast, shared accumulator behind every gating
decision.  It is the only component that guarantees atomicity: each
``adjust`` call is a single atomic read-modify-write on one key, and the
key's expiration is re-armed by the same call.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Protocol

from metering_engine.models.events import UsageEventKind
from metering_engine.periods import PeriodKind, coerce_period, counter_ttl_seconds

# Identifier parts may not contain ':' or glob metacharacters, so a reset
# pattern built from them can only match the intended tenant and period.
_PART_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")


class InvalidUsageKeyError(ValueError):
    """Raised when a tenant, feature or metric identifier is malformed."""


def validate_part(name: str, value: str) -> str:
    if not isinstance(value, str) or not _PART_RE.match(value):
        raise InvalidUsageKeyError(f"Invalid {name}: must match {_PART_RE.pattern!r}, got {value!r}")
    return value


@dataclass(frozen=True)
class CounterKey:
    """Address of one counter: tenant, ``feature.metric`` and period window."""

    tenant_id: str
    feature: str
    metric: str
    period: PeriodKind
    period_instant: date

    def __post_init__(self) -> None:
        validate_part("tenant_id", self.tenant_id)
        validate_part("feature", self.feature)
        validate_part("metric", self.metric)
        object.__setattr__(self, "period", coerce_period(self.period))

    def render(self, prefix: str = "usage:") -> str:
        return (
            f"{prefix}{self.tenant_id}:{self.feature}:{self.metric}:"
            f"{self.period.value}:{self.period_instant.isoformat()}"
        )

    @property
    def ttl_seconds(self) -> int:
        return counter_ttl_seconds(self.period)


def reset_pattern(prefix: str, tenant_id: str, period: PeriodKind | str, period_instant: date) -> str:
    """Glob matching every counter of *tenant_id* in one period window."""
    validate_part("tenant_id", tenant_id)
    period = coerce_period(period)
    return f"{prefix}{tenant_id}:*:*:{period.value}:{period_instant.isoformat()}"


class CounterStore(Protocol):
    """Protocol for the shared usage accumulator."""

    async def adjust(self, key: CounterKey, amount: float, kind: UsageEventKind) -> float:
        """Apply *amount* to *key* according to *kind* and return the new value.

        ``increment`` adds, ``decrement`` subtracts and ``reset`` assigns.
        Missing keys start at zero.
        """
        ...

    async def read(self, key: CounterKey) -> float:
        """Return the value at *key*; missing keys read as ``0.0``."""
        ...

    async def delete_matching(self, tenant_id: str, period: PeriodKind, period_instant: date) -> int:
        """Delete every counter of *tenant_id* in one window; return the count."""
        ...

    async def close(self) -> None: ...
