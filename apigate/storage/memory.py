from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Dict, Tuple


class MemoryCounterStore:
    """Process-local fixed-window counters.

    Only correct for single-process deployments; counts are not shared
    between workers.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def incr(self, key: str, window_seconds: int) -> Tuple[int, int]:
        async with self._lock:
            now = self._clock()
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            self._evict_expired(now)
            return count, max(math.ceil(expires_at - now), 0)

    def _evict_expired(self, now: float) -> None:
        if len(self._counters) < 10_000:
            return
        for stale in [k for k, (_, exp) in self._counters.items() if exp <= now]:
            del self._counters[stale]

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self._counters.clear()
