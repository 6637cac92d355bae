"""Usage metering and quota enforcement engine."""

from metering_engine.config import MeteringSettings, load_settings
from metering_engine.services.tracker import UsageTracker, build_tracker

__all__ = [
    "MeteringSettings",
    "UsageTracker",
    "build_tracker",
    "load_settings",
]
