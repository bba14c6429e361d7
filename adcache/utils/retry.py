"""Retry helpers for upstream platform calls."""

from __future__ import annotations

import asyncio
import functools
import os
import random
from collections.abc import Awaitable, Callable

import httpx

from adcache.errors import UpstreamUnavailable

RETRY_EXCEPTIONS = (httpx.TransportError, UpstreamUnavailable, asyncio.TimeoutError)
ATTEMPTS = 3
BASE_DELAY = float(os.environ.get("RETRY_BASE_DELAY", 1.0))
JITTER = 1.0


def retry_async(func: Callable[..., Awaitable]):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        delay = BASE_DELAY
        for attempt in range(ATTEMPTS):
            try:
                return await func(*args, **kwargs)
            except RETRY_EXCEPTIONS:
                if attempt == ATTEMPTS - 1:
                    raise
                await asyncio.sleep(delay + random.random() * JITTER)
                delay *= 2
    return wrapper
