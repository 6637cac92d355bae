"""Domain records for the metering engine."""

from metering_engine.models.alert import (
    AlertKind,
    AlertSeverity,
    UsageAlert,
    format_alert_message,
    select_alert_kind,
)
from metering_engine.models.events import UsageEvent, UsageEventKind
from metering_engine.models.summary import (
    UNLIMITED,
    MeterStatus,
    PeriodAnalytics,
    UsageMeter,
    UsageSummary,
    limit_percentage,
)

__all__ = [
    "UNLIMITED",
    "AlertKind",
    "AlertSeverity",
    "MeterStatus",
    "PeriodAnalytics",
    "UsageAlert",
    "UsageEvent",
    "UsageEventKind",
    "UsageMeter",
    "UsageSummary",
    "format_alert_message",
    "limit_percentage",
    "select_alert_kind",
]
