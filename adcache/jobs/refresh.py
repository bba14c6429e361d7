"""Proactive refresh of current-period cache rows."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from dotenv import load_dotenv

from adcache.logic.periods import Granularity
from adcache.logic.smart_cache import RefreshReport
from adcache.services import build_services

logger = logging.getLogger(__name__)

REFRESHED_GRANULARITIES = (Granularity.MONTH, Granularity.WEEK)


async def run_refresh(
    account_id: str | None = None,
    granularities: Iterable[Granularity] = REFRESHED_GRANULARITIES,
) -> RefreshReport:
    load_dotenv()
    services = build_services()
    try:
        return await services.cache.refresh_due(
            [account_id] if account_id else None, granularities=tuple(granularities)
        )
    finally:
        await services.aclose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_refresh())
