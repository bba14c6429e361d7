import asyncio
from datetime import date, timedelta

import httpx
import pytest
import respx

from adcache.db.store import SqlPeriodStore
from adcache.errors import PersistenceError, UnknownAccountError, UpstreamAuthInvalid, UpstreamUnavailable
from adcache.ingest.meta_ads import MetaAdsSource
from adcache.ingest.models import Platform
from adcache.logic.aggregates import MetricsPayload
from adcache.logic.archive import SUMMARIES, summary_row
from adcache.logic.periods import Granularity, parse_period
from adcache.logic.smart_cache import CURRENT_CACHE, CachePolicy, CacheSource, SmartCache
from adcache.utils.rate_limit import RateLimiter
from tests.conftest import NOW, campaign, seed_cache

SEPTEMBER = parse_period("2025-09")


@pytest.fixture()
def cache(store, sources, accounts, clock):
    return SmartCache(store, sources, accounts, clock=clock)


@pytest.mark.asyncio
async def test_fresh_row_is_served_without_upstream_call(cache, store, meta_source):
    seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(hours=2))
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.FRESH_CACHE
    assert result.error is None
    assert meta_source.calls == []


@pytest.mark.asyncio
async def test_stale_row_triggers_one_fetch_and_write(cache, store, meta_source):
    seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(hours=4))
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.STALE_CACHE_REFRESHED
    assert result.error is None
    assert meta_source.calls == [("alpha", date(2025, 9, 1), date(2025, 9, 30))]
    row = store.get(CURRENT_CACHE, account_id="alpha", platform="meta", period_id="2025-09", granularity="month")
    assert row["last_updated"] == NOW
    assert row["payload"]["totals"]["spend"] == 100.0


@pytest.mark.asyncio
async def test_missing_row_is_a_live_fallback(cache, store):
    result = await cache.get("alpha", Platform.GOOGLE, granularity=Granularity.WEEK)
    assert result.source is CacheSource.LIVE_FALLBACK
    assert result.snapshot.period_id == "2025-W38"
    assert result.snapshot.payload.totals.spend == 50.0
    assert store.count(CURRENT_CACHE, {"granularity": "week"}) == 1


@pytest.mark.asyncio
async def test_force_refresh_bypasses_fresh_row(cache, store, meta_source):
    seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(minutes=5))
    result = await cache.get("alpha", "meta", force_refresh=True)
    assert result.source is CacheSource.STALE_CACHE_REFRESHED
    assert len(meta_source.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_reads_share_one_fetch(cache, store, meta_source):
    meta_source.delay = 0.05
    seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(hours=4))
    results = await asyncio.gather(*(cache.get("alpha", "meta") for _ in range(10)))
    assert len(meta_source.calls) == 1
    assert len(results) == 10
    expected = results[0].snapshot.payload.to_dict()
    assert all(result.snapshot.payload.to_dict() == expected for result in results)
    assert expected["totals"]["spend"] == 100.0
    # the in-flight entry is released once resolved
    await cache.get("alpha", "meta")
    assert len(meta_source.calls) == 1


@pytest.mark.asyncio
async def test_upstream_failure_serves_stale_row(cache, store, meta_source):
    seeded = seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(hours=5))
    meta_source.errors["alpha"] = UpstreamUnavailable("boom", platform="meta", account_id="alpha")
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.STALE_CACHE_REFRESHED
    assert result.error == "boom"
    assert result.degraded
    assert result.snapshot.payload.totals.spend == seeded.payload.totals.spend
    row = store.get(CURRENT_CACHE, account_id="alpha", platform="meta", period_id="2025-09", granularity="month")
    assert row["last_updated"] == NOW - timedelta(hours=5)


@pytest.mark.asyncio
async def test_upstream_failure_without_row_uses_latest_summary(cache, store, meta_source):
    for period_id, spend in (("2025-07", 70.0), ("2025-08", 80.0)):
        payload = MetricsPayload.from_campaigns([campaign("h", spend=spend)])
        store.upsert(
            SUMMARIES,
            [summary_row("alpha", "meta", parse_period(period_id), payload, data_source="background_collector", now=NOW)],
        )
    meta_source.errors["alpha"] = UpstreamAuthInvalid("expired", platform="meta", account_id="alpha")
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.HISTORICAL_FALLBACK
    assert result.snapshot.period_id == "2025-08"
    assert result.snapshot.payload.totals.spend == 80.0
    assert result.error == "expired"


@pytest.mark.asyncio
async def test_upstream_failure_without_any_data_is_empty(cache, meta_source):
    meta_source.errors["alpha"] = UpstreamUnavailable("down")
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.EMPTY
    assert result.snapshot.period_id == "2025-09"
    assert result.snapshot.payload.is_empty
    assert result.snapshot.last_updated is None


class BrokenWriteStore(SqlPeriodStore):
    def upsert(self, table_name, rows):
        raise PersistenceError("disk full")


class BrokenReadStore(SqlPeriodStore):
    def get(self, table_name, **key):
        raise PersistenceError("connection reset")


@pytest.mark.asyncio
async def test_write_through_failure_still_returns_fetched_value(engine, sources, accounts, clock):
    cache = SmartCache(BrokenWriteStore(engine), sources, accounts, clock=clock)
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.LIVE_FALLBACK
    assert result.snapshot.payload.totals.spend == 100.0


@pytest.mark.asyncio
async def test_read_failure_is_treated_as_miss(engine, sources, accounts, clock, meta_source):
    cache = SmartCache(BrokenReadStore(engine), sources, accounts, clock=clock)
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.LIVE_FALLBACK
    assert len(meta_source.calls) == 1


@pytest.mark.asyncio
async def test_unknown_account_raises(cache):
    with pytest.raises(UnknownAccountError):
        await cache.get("nobody", "meta")
    with pytest.raises(ValueError):
        await cache.get("alpha", "tiktok")


@pytest.mark.asyncio
async def test_refresh_due_refreshes_rows_past_proactive_threshold(cache, store, meta_source):
    seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(hours=1))
    seed_cache(store, "bravo", "meta", SEPTEMBER, NOW - timedelta(hours=2, minutes=45))
    report = await cache.refresh_due(platforms=["meta"])
    assert (report.refreshed, report.skipped, report.failed) == (2, 1, 0)
    assert sorted(call[0] for call in meta_source.calls) == ["bravo", "charlie"]


@pytest.mark.asyncio
async def test_refresh_due_counts_failures(cache, meta_source):
    meta_source.errors["bravo"] = UpstreamUnavailable("down")
    report = await cache.refresh_due(["alpha", "bravo"], platforms=[Platform.META])
    assert (report.refreshed, report.failed) == (1, 1)
    assert report.failures[0].startswith("bravo/meta/2025-09")


def test_policy_thresholds():
    policy = CachePolicy()
    assert policy.is_fresh(NOW - timedelta(hours=2, minutes=59), NOW)
    assert not policy.is_fresh(NOW - timedelta(hours=3), NOW)
    assert policy.is_due(NOW - timedelta(hours=2, minutes=30), NOW)
    assert not policy.is_due(NOW - timedelta(hours=2), NOW)
    with pytest.raises(ValueError):
        CachePolicy(fresh_threshold=timedelta(hours=1), proactive_threshold=timedelta(hours=2))


@pytest.mark.asyncio
async def test_forced_and_plain_reads_share_one_fetch(cache, store, meta_source):
    meta_source.delay = 0.05
    seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(hours=4))
    forced, plain = await asyncio.gather(cache.get("alpha", "meta", force_refresh=True), cache.get("alpha", "meta"))
    assert len(meta_source.calls) == 1
    assert forced.source is plain.source is CacheSource.STALE_CACHE_REFRESHED


class UnparseableSource:
    platform = Platform.META

    async def fetch(self, account, start, end):
        raise KeyError("access_token")

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_unexpected_source_error_degrades_instead_of_raising(store, accounts, clock):
    cache = SmartCache(store, {Platform.META: UnparseableSource()}, accounts, clock=clock)
    result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.EMPTY
    assert "KeyError" in result.error

    seed_cache(store, "alpha", "meta", SEPTEMBER, NOW - timedelta(hours=5))
    stale = await cache.get("alpha", "meta")
    assert stale.source is CacheSource.STALE_CACHE_REFRESHED
    assert stale.degraded


@pytest.mark.asyncio
async def test_html_body_from_meta_falls_back_to_empty(store, accounts, clock):
    async with respx.mock() as router:
        router.get(url__startswith="https://graph.facebook.com/").mock(
            return_value=httpx.Response(200, text="<html>gateway</html>")
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            source = MetaAdsSource(session=session, rate_limiter=RateLimiter(rate=1000))
            cache = SmartCache(store, {Platform.META: source}, accounts, clock=clock)
            result = await cache.get("alpha", "meta")
    assert result.source is CacheSource.EMPTY
    assert "unreadable" in result.error
