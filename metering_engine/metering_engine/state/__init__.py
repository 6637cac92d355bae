"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from metering_engine.state.database import create_tables, get_engine, get_session
from metering_engine.state.repository import (
    TenantPlanRepository,
    UsageAlertRepository,
    UsageEventRepository,
    UsageSummaryRepository,
)

__all__ = [
    "TenantPlanRepository",
    "UsageAlertRepository",
    "UsageEventRepository",
    "UsageSummaryRepository",
    "create_tables",
    "get_engine",
    "get_session",
]
