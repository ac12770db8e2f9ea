from __future__ import annotations

from typing import Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError


class CounterStoreUnavailable(Exception):
    """The shared counter store could not be reached or answered with an error."""


class RedisCounterStore:
    """Fixed-window counters in a shared Redis instance."""

    # Atomic increment; the expiry is set only when the key is created so the
    # window never slides forward on later hits.
    _INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr = self.client.register_script(self._INCR_SCRIPT)

    async def incr(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment ``key`` and return ``(count, ttl_seconds)``."""
        try:
            count, ttl = await self._incr(keys=[key], args=[int(window_seconds)])
        except (RedisError, OSError) as exc:
            raise CounterStoreUnavailable(str(exc)) from exc
        return int(count), max(int(ttl), 0)

    async def ping(self) -> None:
        try:
            await self.client.ping()
        except (RedisError, OSError) as exc:
            raise CounterStoreUnavailable(str(exc)) from exc

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
