"""Usage alert models.

Alerts are created when a tenant's monthly usage crosses a configured
percentage of its limit.  They are stored durably and handed to an
external notification collaborator; this engine never sends mail or
webhooks itself.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from metering_engine.models.summary import humanize_key


class AlertKind(str, Enum):
    """Severity class of a usage alert."""

    WARNING = "warning"
    LIMIT_REACHED = "limit_reached"
    LIMIT_EXCEEDED = "limit_exceeded"


class AlertSeverity(str, Enum):
    INFO = "info"
    HIGH = "high"
    CRITICAL = "critical"


_SEVERITY: dict[AlertKind, AlertSeverity] = {
    AlertKind.WARNING: AlertSeverity.INFO,
    AlertKind.LIMIT_REACHED: AlertSeverity.HIGH,
    AlertKind.LIMIT_EXCEEDED: AlertSeverity.CRITICAL,
}


def select_alert_kind(threshold: float, percentage: float) -> AlertKind:
    """Map a crossed threshold to an alert kind.

    Thresholds below 100 are warnings.  At or above 100 the kind depends on
    the actual usage: exactly at the limit is ``limit_reached``, anything
    beyond it is ``limit_exceeded``.
    """
    if threshold < 100:
        return AlertKind.WARNING
    if percentage > 100:
        return AlertKind.LIMIT_EXCEEDED
    return AlertKind.LIMIT_REACHED


def format_alert_message(kind: AlertKind, feature: str, metric: str, percentage: float) -> str:
    """Human-readable message stored in the notification payload."""
    name = humanize_key(feature, metric)
    if kind == AlertKind.WARNING:
        return f"You've used {percentage:.0f}% of your {name} limit."
    if kind == AlertKind.LIMIT_REACHED:
        return f"You've reached 100% of your {name} limit."
    return f"You've exceeded your {name} limit."


class UsageAlert(BaseModel):
    """A deduplicated threshold alert."""

    id: int | None = None
    tenant_id: str
    feature: str
    metric: str
    alert_kind: AlertKind
    threshold_percentage: float
    current_usage: float
    limit_value: float
    is_sent: bool = False
    sent_at: datetime | None = None
    notification_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def severity(self) -> AlertSeverity:
        return _SEVERITY[self.alert_kind]

    @property
    def message(self) -> str:
        stored = self.notification_data.get("message")
        if stored:
            return str(stored)
        percentage = (self.current_usage / self.limit_value * 100) if self.limit_value > 0 else 0.0
        return format_alert_message(self.alert_kind, self.feature, self.metric, percentage)
