"""Usage event definitions for the metering ledger.

Each event is one metering call: which tenant consumed how much of which
``feature.metric``, and why.  Events are appended to the ledger before any
counter is touched and are never modified afterwards, so the ledger can
rebuild every counter by replay.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UsageEventKind(str, Enum):
    """How an event changes a counter."""

    INCREMENT = "increment"
    DECREMENT = "decrement"
    RESET = "reset"


class UsageEvent(BaseModel):
    """A single immutable metering fact.

    Attributes
    ----------
    event_id:
        Unique identifier for this event.
    tenant_id:
        The tenant that consumed the resource.
    feature:
        First half of the ``feature.metric`` key (e.g. ``api``).
    metric:
        Second half of the key (e.g. ``calls``).
    amount:
        Units consumed.  For ``reset`` events this is the new absolute value.
    event_kind:
        Whether the amount is added, subtracted or assigned.
    context:
        Free-form caller context (user id, request id, ...).
    occurred_at:
        When the event happened (UTC).
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}")
    tenant_id: str
    feature: str
    metric: str
    amount: float = 1.0
    event_kind: UsageEventKind = UsageEventKind.INCREMENT
    context: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("occurred_at")
    @classmethod
    def normalise_to_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def limit_key(self) -> str:
        return f"{self.feature}.{self.metric}"

    @property
    def signed_amount(self) -> float:
        """Counter delta implied by this event (``reset`` returns the target value)."""
        if self.event_kind == UsageEventKind.DECREMENT:
            return -self.amount
        return self.amount
