"""Explicit construction of the engine's services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Mapping

from sqlalchemy.engine import Engine

from adcache.db.session import create_engine_from_env
from adcache.db.store import SqlPeriodStore
from adcache.ingest import load_accounts
from adcache.ingest.base import MetricsSource
from adcache.ingest.google_ads import GoogleAdsSource
from adcache.ingest.meta_ads import MetaAdsSource
from adcache.ingest.models import Account, Platform
from adcache.logic.collector import BackgroundCollector, JobTracker
from adcache.logic.lifecycle import DataLifecycleManager
from adcache.logic.smart_cache import CachePolicy, SmartCache
from adcache.logic.transition import PeriodTransitionHandler
from adcache.utils.dates import now_in_tz

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    store: SqlPeriodStore
    accounts: list[Account]
    sources: dict[Platform, MetricsSource]
    cache: SmartCache
    collector: BackgroundCollector
    transition: PeriodTransitionHandler
    lifecycle: DataLifecycleManager

    async def aclose(self) -> None:
        for source in self.sources.values():
            await source.close()


def default_sources() -> dict[Platform, MetricsSource]:
    return {Platform.META: MetaAdsSource(), Platform.GOOGLE: GoogleAdsSource()}


def build_services(
    engine: Engine | None = None,
    accounts: Iterable[Account] | None = None,
    *,
    sources: Mapping[Platform, MetricsSource] | None = None,
    policy: CachePolicy | None = None,
    clock: Callable[[], datetime] = now_in_tz,
) -> Services:
    store = SqlPeriodStore(engine or create_engine_from_env())
    accounts = list(accounts) if accounts is not None else load_accounts()
    sources = dict(sources) if sources is not None else default_sources()
    cache = SmartCache(store, sources, accounts, policy=policy, clock=clock)
    logger.info("Services ready for %s accounts on %s", len(accounts), ", ".join(p.value for p in sources))
    return Services(
        store=store,
        accounts=accounts,
        sources=sources,
        cache=cache,
        collector=BackgroundCollector(store, sources, tracker=JobTracker(), clock=clock),
        transition=PeriodTransitionHandler(store, cache, clock=clock),
        lifecycle=DataLifecycleManager(store, clock=clock),
    )
