"""Historical backfill and daily collection jobs."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Sequence

from dotenv import load_dotenv

from adcache.logic.collector import CollectionJob, ProgressCallback
from adcache.logic.periods import Granularity
from adcache.services import build_services

logger = logging.getLogger(__name__)


async def run_collect_history(
    granularity: Granularity = Granularity.WEEK,
    periods: int | Sequence[str] | None = None,
    account_ids: Sequence[str] | None = None,
    platforms: Sequence[str] | None = None,
    on_progress: ProgressCallback | None = None,
) -> CollectionJob:
    load_dotenv()
    services = build_services()
    try:
        return await services.collector.collect_history(
            services.accounts,
            platforms,
            granularity=Granularity(granularity),
            periods=periods,
            account_ids=account_ids,
            on_progress=on_progress,
        )
    finally:
        await services.aclose()


async def run_collect_daily(
    day: date | None = None,
    account_ids: Sequence[str] | None = None,
    platforms: Sequence[str] | None = None,
) -> CollectionJob:
    load_dotenv()
    services = build_services()
    accounts = services.accounts
    if account_ids:
        accounts = [account for account in accounts if account.account_id in set(account_ids)]
    try:
        return await services.collector.collect_daily(accounts, day, platforms)
    finally:
        await services.aclose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_collect_history())
