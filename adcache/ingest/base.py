"""Common contract for per-platform metrics sources."""

from __future__ import annotations

from datetime import date
from typing import Protocol

import httpx

from adcache.errors import (
    MetricsSourceError,
    UpstreamAuthInvalid,
    UpstreamNotFound,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from adcache.ingest.models import Account, CampaignMetric, Platform


class MetricsSource(Protocol):
    platform: Platform

    async def fetch(self, account: Account, start: date, end: date) -> list[CampaignMetric]:
        """Campaign-level metrics for the inclusive date range."""
        ...

    async def close(self) -> None:
        ...


def error_for_status(response: httpx.Response, *, platform: Platform, account_id: str) -> MetricsSourceError | None:
    """Translate an HTTP error response into the engine's error taxonomy."""
    status = response.status_code
    if status < 400:
        return None
    message = f"{platform.value} returned HTTP {status} for account {account_id}"
    if status in {401, 403}:
        return UpstreamAuthInvalid(message, platform=platform.value, account_id=account_id)
    if status == 404:
        return UpstreamNotFound(message, platform=platform.value, account_id=account_id)
    if status == 429:
        return UpstreamRateLimited(message, platform=platform.value, account_id=account_id)
    if status >= 500:
        return UpstreamUnavailable(message, platform=platform.value, account_id=account_id)
    return MetricsSourceError(message, platform=platform.value, account_id=account_id)


def transport_error(exc: httpx.TransportError, *, platform: Platform, account_id: str) -> UpstreamUnavailable:
    return UpstreamUnavailable(
        f"{platform.value} unreachable for account {account_id}: {exc}",
        platform=platform.value,
        account_id=account_id,
    )
