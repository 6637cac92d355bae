"""In-process counter store for local mode and tests.

Holds counters in a dict guarded by an ``asyncio.Lock``.  Atomicity is
per process only, so this backend is suitable for single-worker local
runs; multi-process deployments use :class:`RedisCounterStore`.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections.abc import Callable
from datetime import date

from metering_engine.counters.base import CounterKey, reset_pattern
from metering_engine.models.events import UsageEventKind
from metering_engine.periods import PeriodKind

logger = logging.getLogger(__name__)


class MemoryCounterStore:
    """Dict-backed counter store with expiry.

    Expired entries are dropped when their key is touched, and every
    *sweep_every* adjustments all expired entries are purged so counters
    of abandoned tenants do not accumulate.

    Parameters
    ----------
    prefix:
        Key prefix, kept identical to the Redis layout.
    allow_negative:
        When ``False`` decrements floor at zero.
    time_fn:
        Monotonic clock used for expiry (injectable for tests).
    sweep_every:
        Number of adjustments between full expiry sweeps.
    """

    def __init__(
        self,
        prefix: str = "usage:",
        allow_negative: bool = False,
        time_fn: Callable[[], float] = time.monotonic,
        sweep_every: int = 1_000,
    ) -> None:
        self._prefix = prefix
        self._allow_negative = allow_negative
        self._time_fn = time_fn
        self._values: dict[str, tuple[float, float]] = {}
        self._lock = asyncio.Lock()
        self._sweep_every = max(1, sweep_every)
        self._adjusts_since_sweep = 0

    def _live_value(self, name: str) -> float:
        entry = self._values.get(name)
        if entry is None:
            return 0.0
        value, expires_at = entry
        if expires_at <= self._time_fn():
            del self._values[name]
            return 0.0
        return value

    def _sweep(self) -> int:
        now = self._time_fn()
        expired = [name for name, (_, expires_at) in self._values.items() if expires_at <= now]
        for name in expired:
            del self._values[name]
        self._adjusts_since_sweep = 0
        if expired:
            logger.debug("Swept %d expired in-memory counters", len(expired))
        return len(expired)

    async def adjust(self, key: CounterKey, amount: float, kind: UsageEventKind) -> float:
        name = key.render(self._prefix)
        async with self._lock:
            if kind == UsageEventKind.RESET:
                value = float(amount)
            elif kind == UsageEventKind.DECREMENT:
                value = self._live_value(name) - amount
            else:
                value = self._live_value(name) + amount
            if value < 0 and not self._allow_negative:
                value = 0.0
            self._values[name] = (value, self._time_fn() + key.ttl_seconds)
            self._adjusts_since_sweep += 1
            if self._adjusts_since_sweep >= self._sweep_every:
                self._sweep()
            return value

    async def read(self, key: CounterKey) -> float:
        async with self._lock:
            return self._live_value(key.render(self._prefix))

    async def delete_matching(self, tenant_id: str, period: PeriodKind, period_instant: date) -> int:
        pattern = reset_pattern(self._prefix, tenant_id, period, period_instant)
        async with self._lock:
            self._sweep()
            doomed = [name for name in self._values if fnmatch.fnmatchcase(name, pattern)]
            for name in doomed:
                del self._values[name]
        logger.debug("Deleted %d in-memory counters matching %s", len(doomed), pattern)
        return len(doomed)

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()

    def __len__(self) -> int:
        return len(self._values)
