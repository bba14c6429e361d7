"""Staleness-aware read-through cache for the current reporting period.

Reads resolve through a fixed chain: a fresh stored snapshot, a coalesced
upstream fetch written through to the store, the stale snapshot when the fetch
fails, the most recent completed-period summary, and finally an explicit empty
snapshot. Callers always get a :class:`CacheResult` tagged with the tier that
answered; only unknown accounts raise.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable, Mapping

import httpx

from adcache.db.store import SqlPeriodStore, run_sync
from adcache.errors import CacheEngineError, NotYetCollected, UnknownAccountError
from adcache.ingest.base import MetricsSource
from adcache.ingest.models import Account, Platform
from adcache.logic.aggregates import MetricsPayload
from adcache.logic.archive import SUMMARIES, payload_from_summary
from adcache.logic.periods import Granularity, Period, period_containing, period_for
from adcache.utils.dates import now_in_tz

logger = logging.getLogger(__name__)

CURRENT_CACHE = "current_cache"

FRESH_THRESHOLD_HOURS = float(os.environ.get("FRESH_THRESHOLD_HOURS", 3))
PROACTIVE_THRESHOLD_HOURS = float(os.environ.get("PROACTIVE_THRESHOLD_HOURS", 2.5))
REFRESH_CONCURRENCY = int(os.environ.get("REFRESH_CONCURRENCY", 3))


class CacheSource(str, enum.Enum):
    FRESH_CACHE = "fresh-cache"
    STALE_CACHE_REFRESHED = "stale-cache-refreshed"
    LIVE_FALLBACK = "live-fallback"
    HISTORICAL_FALLBACK = "historical-fallback"
    EMPTY = "empty"


@dataclass(frozen=True, slots=True)
class CachePolicy:
    """Freshness thresholds shared by every platform and granularity."""

    fresh_threshold: timedelta = timedelta(hours=FRESH_THRESHOLD_HOURS)
    proactive_threshold: timedelta = timedelta(hours=PROACTIVE_THRESHOLD_HOURS)
    refresh_concurrency: int = REFRESH_CONCURRENCY

    def __post_init__(self) -> None:
        if self.proactive_threshold > self.fresh_threshold:
            raise ValueError("proactive_threshold must not exceed fresh_threshold")

    def is_fresh(self, last_updated: datetime, now: datetime) -> bool:
        return age(last_updated, now) < self.fresh_threshold

    def is_due(self, last_updated: datetime, now: datetime) -> bool:
        return age(last_updated, now) >= self.proactive_threshold


def age(last_updated: datetime, now: datetime) -> timedelta:
    return timedelta(seconds=now.timestamp() - last_updated.timestamp())


@dataclass(slots=True)
class CachedSnapshot:
    account_id: str
    platform: Platform
    period_id: str
    granularity: Granularity
    period_start: date
    period_end: date
    payload: MetricsPayload = field(default_factory=MetricsPayload)
    last_updated: datetime | None = None

    @classmethod
    def for_period(
        cls, account_id: str, platform: Platform, period: Period, payload: MetricsPayload, last_updated: datetime | None
    ) -> "CachedSnapshot":
        return cls(
            account_id=account_id,
            platform=platform,
            period_id=period.id,
            granularity=period.granularity,
            period_start=period.start,
            period_end=period.end,
            payload=payload,
            last_updated=last_updated,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CachedSnapshot":
        return cls(
            account_id=row["account_id"],
            platform=Platform(row["platform"]),
            period_id=row["period_id"],
            granularity=Granularity(row["granularity"]),
            period_start=row["period_start"],
            period_end=row["period_end"],
            payload=MetricsPayload.from_dict(row["payload"]),
            last_updated=row["last_updated"],
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "platform": self.platform.value,
            "period_id": self.period_id,
            "granularity": self.granularity.value,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "payload": self.payload.to_dict(),
            "last_updated": self.last_updated,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.to_row()
        data["period_start"] = self.period_start.isoformat()
        data["period_end"] = self.period_end.isoformat()
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return data


@dataclass(slots=True)
class CacheResult:
    snapshot: CachedSnapshot
    source: CacheSource
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.error is not None or self.source in {CacheSource.HISTORICAL_FALLBACK, CacheSource.EMPTY}

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source.value, "error": self.error, "snapshot": self.snapshot.to_dict()}


@dataclass(slots=True)
class RefreshReport:
    refreshed: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"refreshed": self.refreshed, "skipped": self.skipped, "failed": self.failed, "failures": self.failures}


class SmartCache:
    def __init__(
        self,
        store: SqlPeriodStore,
        sources: Mapping[Platform, MetricsSource],
        accounts: Iterable[Account],
        *,
        policy: CachePolicy | None = None,
        clock: Callable[[], datetime] = now_in_tz,
    ) -> None:
        self.store = store
        self.sources = dict(sources)
        self.accounts = {account.account_id: account for account in accounts}
        self.policy = policy or CachePolicy()
        self.clock = clock
        self._in_flight: dict[tuple, asyncio.Task] = {}

    def account(self, account_id: str) -> Account:
        try:
            return self.accounts[account_id]
        except KeyError:
            raise UnknownAccountError(account_id) from None

    async def get(
        self,
        account_id: str,
        platform: Platform | str,
        *,
        granularity: Granularity = Granularity.MONTH,
        force_refresh: bool = False,
    ) -> CacheResult:
        account = self.account(account_id)
        platform = Platform(platform)
        granularity = Granularity(granularity)
        if platform not in self.sources:
            raise ValueError(f"No metrics source configured for {platform.value}")
        period = period_for(granularity, self.clock())
        # one resolution per period key; a forced and a plain read share it
        key = (account_id, platform, period.id, granularity)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._resolve(account, platform, period, force_refresh))
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.debug("Joining in-flight resolution for %s", key)
        # shield so one cancelled caller does not cancel the shared resolution
        return await asyncio.shield(task)

    def _forget(self, key: tuple, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _resolve(self, account: Account, platform: Platform, period: Period, force_refresh: bool) -> CacheResult:
        context = f"{account.account_id}/{platform.value}/{period.id}"
        cached = await self._read(account.account_id, platform, period)
        now = self.clock()
        if cached and not force_refresh and cached.last_updated and self.policy.is_fresh(cached.last_updated, now):
            return CacheResult(cached, CacheSource.FRESH_CACHE)

        source = self.sources[platform]
        start, end = period.fetch_range()
        try:
            campaigns = await source.fetch(account, start, end)
        except (CacheEngineError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.warning("Upstream fetch failed for %s: %s", context, exc)
            return await self._fallback(account.account_id, platform, period, cached, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error fetching %s", context)
            return await self._fallback(account.account_id, platform, period, cached, f"{type(exc).__name__}: {exc}")

        fetched_at = self.clock()
        snapshot = CachedSnapshot.for_period(
            account.account_id, platform, period, MetricsPayload.from_campaigns(campaigns), fetched_at
        )
        try:
            await run_sync(self.store.upsert, CURRENT_CACHE, [snapshot.to_row()])
        except CacheEngineError as exc:
            logger.error("Write-through failed for %s: %s", context, exc)
        source_tag = CacheSource.STALE_CACHE_REFRESHED if cached else CacheSource.LIVE_FALLBACK
        logger.info("Refreshed %s from upstream (%s campaigns, %s)", context, len(campaigns), source_tag.value)
        return CacheResult(snapshot, source_tag)

    async def _read(self, account_id: str, platform: Platform, period: Period) -> CachedSnapshot | None:
        try:
            row = await run_sync(
                self.store.get,
                CURRENT_CACHE,
                account_id=account_id,
                platform=platform.value,
                period_id=period.id,
                granularity=period.granularity.value,
            )
        except CacheEngineError as exc:
            logger.error("Cache read failed for %s/%s/%s, treating as miss: %s", account_id, platform.value, period.id, exc)
            return None
        return CachedSnapshot.from_row(row) if row else None

    async def _fallback(
        self, account_id: str, platform: Platform, period: Period, cached: CachedSnapshot | None, error: str
    ) -> CacheResult:
        if cached:
            return CacheResult(cached, CacheSource.STALE_CACHE_REFRESHED, error)
        try:
            snapshot = await self._historical(account_id, platform, period)
        except NotYetCollected:
            logger.info("No history for %s/%s before %s, returning empty", account_id, platform.value, period.id)
        except CacheEngineError as exc:
            logger.error("Historical lookup failed for %s/%s: %s", account_id, platform.value, exc)
        else:
            return CacheResult(snapshot, CacheSource.HISTORICAL_FALLBACK, error)
        empty = CachedSnapshot.for_period(account_id, platform, period, MetricsPayload(), None)
        return CacheResult(empty, CacheSource.EMPTY, error)

    async def _historical(self, account_id: str, platform: Platform, period: Period) -> CachedSnapshot:
        row = await run_sync(
            self.store.latest,
            SUMMARIES,
            {
                "account_id": account_id,
                "platform": platform.value,
                "summary_type": period.granularity.summary_type,
                "summary_date__lt": period.start,
            },
            order_by="summary_date",
        )
        if row is None:
            raise NotYetCollected(f"No completed {period.granularity.value} summary for {account_id}/{platform.value}")
        completed = period_containing(period.granularity, row["summary_date"])
        return CachedSnapshot.for_period(
            account_id, platform, completed, payload_from_summary(row), row.get("last_updated")
        )

    async def refresh_due(
        self,
        account_ids: Iterable[str] | None = None,
        platforms: Iterable[Platform | str] | None = None,
        granularities: Iterable[Granularity] = (Granularity.MONTH,),
    ) -> RefreshReport:
        """Refresh every current-period row older than the proactive threshold, or missing."""
        accounts = [self.account(account_id) for account_id in account_ids] if account_ids else list(self.accounts.values())
        wanted = {Platform(p) for p in platforms} if platforms else set(self.sources)
        semaphore = asyncio.Semaphore(self.policy.refresh_concurrency)
        report = RefreshReport()

        async def refresh_one(account: Account, platform: Platform, granularity: Granularity) -> None:
            period = period_for(granularity, self.clock())
            cached = await self._read(account.account_id, platform, period)
            if cached and cached.last_updated and not self.policy.is_due(cached.last_updated, self.clock()):
                report.skipped += 1
                return
            async with semaphore:
                result = await self.get(account.account_id, platform, granularity=granularity, force_refresh=True)
            if result.error:
                report.failed += 1
                report.failures.append(f"{account.account_id}/{platform.value}/{period.id}: {result.error}")
            else:
                report.refreshed += 1

        units = [
            refresh_one(account, platform, Granularity(granularity))
            for account in accounts
            for platform in account.platforms
            if platform in wanted and platform in self.sources
            for granularity in granularities
        ]
        await asyncio.gather(*units)
        logger.info(
            "Proactive refresh: %s refreshed, %s skipped, %s failed", report.refreshed, report.skipped, report.failed
        )
        return report
