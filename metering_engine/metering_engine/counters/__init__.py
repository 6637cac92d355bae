"""Shared usage counters keyed by tenant, ``feature.metric`` and period."""

from __future__ import annotations

from metering_engine.config import CounterBackend, MeteringSettings
from metering_engine.counters.base import (
    CounterKey,
    CounterStore,
    InvalidUsageKeyError,
    reset_pattern,
    validate_part,
)
from metering_engine.counters.memory_store import MemoryCounterStore
from metering_engine.counters.redis_store import RedisCounterStore


def build_counter_store(settings: MeteringSettings) -> CounterStore:
    """Create the counter store selected by ``settings.counter_backend``."""
    if settings.counter_backend == CounterBackend.REDIS:
        if settings.redis_url is None:
            raise ValueError("METERING_REDIS_URL is required when counter_backend=redis")
        return RedisCounterStore(
            settings.redis_url.get_secret_value(),
            prefix=settings.counter_prefix,
            allow_negative=settings.allow_negative_usage,
        )
    return MemoryCounterStore(
        prefix=settings.counter_prefix,
        allow_negative=settings.allow_negative_usage,
    )


__all__ = [
    "CounterKey",
    "CounterStore",
    "InvalidUsageKeyError",
    "MemoryCounterStore",
    "RedisCounterStore",
    "build_counter_store",
    "reset_pattern",
    "validate_part",
]
