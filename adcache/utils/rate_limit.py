"""Per-key rate limiting for upstream platform calls."""

from __future__ import annotations

import asyncio
import os
import time
from collections import defaultdict

DEFAULT_RATE = float(os.environ.get("UPSTREAM_RATE", 2.0))


class RateLimiter:
    """Spaces requests sharing a key (an ad account, a customer id) at ``1 / rate`` seconds."""

    def __init__(self, *, rate: float = DEFAULT_RATE) -> None:
        self.rate = rate
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_request: dict[str, float] = defaultdict(lambda: 0.0)

    async def wait_for(self, key: str) -> None:
        lock = self._locks[key]
        async with lock:
            now = time.monotonic()
            elapsed = now - self._last_request[key]
            min_interval = 1.0 / self.rate
            if elapsed < min_interval:
                await asyncio.sleep(min_interval - elapsed)
            self._last_request[key] = time.monotonic()
