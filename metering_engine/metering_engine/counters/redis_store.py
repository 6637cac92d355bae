"""Redis-backed counter store.

Every mutation runs as one server-side Lua script so that the float
increment, the zero floor and the expiration refresh happen atomically
for the key, even with many API workers writing concurrently.
"""

from __future__ import annotations

import logging
from datetime import date

import redis.asyncio as aioredis

from metering_engine.counters.base import CounterKey, reset_pattern
from metering_engine.models.events import UsageEventKind
from metering_engine.periods import PeriodKind

logger = logging.getLogger(__name__)

# KEYS[1] counter key
# ARGV[1] signed delta, ARGV[2] ttl seconds, ARGV[3] "1" to floor at zero
_ADJUST_LUA = """
local value = tonumber(redis.call('INCRBYFLOAT', KEYS[1], ARGV[1]))
if ARGV[3] == '1' and value < 0 then
    value = 0
    redis.call('SET', KEYS[1], '0')
end
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
return tostring(value)
"""

_SCAN_BATCH = 500


class RedisCounterStore:
    """Async Redis counter store.

    Parameters
    ----------
    redis_url:
        Connection URL; used when *client* is not supplied.
    client:
        Pre-built ``redis.asyncio.Redis`` client (shared pools, tests).
    prefix:
        Key prefix for all counters.
    allow_negative:
        When ``False`` decrements floor at zero.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: aioredis.Redis | None = None,
        prefix: str = "usage:",
        allow_negative: bool = False,
    ) -> None:
        if client is None and redis_url is None:
            raise ValueError("RedisCounterStore requires either redis_url or client")
        self._redis_url = redis_url
        self._redis = client
        self._prefix = prefix
        self._allow_negative = allow_negative
        self._adjust_script = None

    async def connect(self) -> None:
        """Initialise the Redis connection and register the adjust script."""
        if self._redis is None:
            assert self._redis_url is not None
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            logger.info("Counter store connected to Redis")
        if self._adjust_script is None:
            self._adjust_script = self._redis.register_script(_ADJUST_LUA)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._adjust_script = None
            logger.info("Counter store Redis connection closed")

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None or self._adjust_script is None:
            await self.connect()
        assert self._redis is not None
        return self._redis

    async def adjust(self, key: CounterKey, amount: float, kind: UsageEventKind) -> float:
        r = await self._get_redis()
        name = key.render(self._prefix)

        if kind == UsageEventKind.RESET:
            value = float(amount)
            if value < 0 and not self._allow_negative:
                value = 0.0
            await r.set(name, repr(value), ex=key.ttl_seconds)
            return value

        delta = -amount if kind == UsageEventKind.DECREMENT else amount
        floor_flag = "0" if self._allow_negative else "1"
        assert self._adjust_script is not None
        raw = await self._adjust_script(keys=[name], args=[repr(float(delta)), key.ttl_seconds, floor_flag])
        return float(raw)

    async def read(self, key: CounterKey) -> float:
        r = await self._get_redis()
        raw = await r.get(key.render(self._prefix))
        return float(raw) if raw else 0.0

    async def delete_matching(self, tenant_id: str, period: PeriodKind, period_instant: date) -> int:
        r = await self._get_redis()
        pattern = reset_pattern(self._prefix, tenant_id, period, period_instant)

        deleted = 0
        batch: list[str] = []
        async for name in r.scan_iter(match=pattern, count=_SCAN_BATCH):
            batch.append(name)
            if len(batch) >= _SCAN_BATCH:
                deleted += await r.delete(*batch)
                batch.clear()
        if batch:
            deleted += await r.delete(*batch)

        logger.debug("Deleted %d Redis counters matching %s", deleted, pattern)
        return deleted
