import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from adcache.db.store import SqlPeriodStore
from adcache.db.tables import metadata
from adcache.ingest.models import Account, CampaignMetric, Platform
from adcache.logic.aggregates import MetricsPayload
from adcache.logic.smart_cache import CURRENT_CACHE, CachedSnapshot
from adcache.utils import retry

# Monday of ISO week 2025-W38, midday in Warsaw
NOW = datetime(2025, 9, 15, 10, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeSource:
    def __init__(self, platform=Platform.META, campaigns=None, delay=0.0):
        self.platform = platform
        self.campaigns = campaigns if campaigns is not None else [campaign("c1", spend=100.0)]
        self.delay = delay
        self.errors = {}
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def fetch(self, account, start, end):
        self.calls.append((account.account_id, start, end))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            error = self.errors.get(account.account_id)
            if error is not None:
                raise error
            return list(self.campaigns)
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True


def campaign(campaign_id, *, spend=0.0, impressions=1000, clicks=50, reservations=2, value=800.0, status="ACTIVE"):
    return CampaignMetric(
        campaign_id=campaign_id,
        campaign_name=f"Campaign {campaign_id}",
        status=status,
        spend=spend,
        impressions=impressions,
        clicks=clicks,
        conversions=float(reservations),
        reservations=reservations,
        reservation_value=value,
    )


def seed_cache(store, account_id, platform, period, last_updated, campaigns=None):
    payload = MetricsPayload.from_campaigns(campaigns or [campaign("seed", spend=10.0)])
    snapshot = CachedSnapshot.for_period(account_id, Platform(platform), period, payload, last_updated)
    store.upsert(CURRENT_CACHE, [snapshot.to_row()])
    return snapshot


@pytest.fixture(autouse=True)
def reporting_timezone(monkeypatch):
    monkeypatch.setenv("TIMEZONE", "Europe/Warsaw")
    monkeypatch.setattr(retry, "BASE_DELAY", 0)
    monkeypatch.setattr(retry, "JITTER", 0)


@pytest.fixture()
def engine(tmp_path):
    # file-backed so executor threads share one database
    engine = create_engine(
        f"sqlite:///{tmp_path / 'cache.db'}", future=True, connect_args={"check_same_thread": False}
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine):
    return SqlPeriodStore(engine)


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def accounts():
    return [
        Account(
            account_id=name,
            name=name.title(),
            meta_ad_account_id=f"act_{index}",
            meta_access_token="meta-token",
            google_customer_id=f"123-456-00{index}",
            google_refresh_token="google-refresh",
        )
        for index, name in enumerate(["alpha", "bravo", "charlie"], start=1)
    ]


@pytest.fixture()
def meta_source():
    return FakeSource(Platform.META)


@pytest.fixture()
def google_source():
    return FakeSource(Platform.GOOGLE, campaigns=[campaign("g1", spend=50.0)])


@pytest.fixture()
def sources(meta_source, google_source):
    return {Platform.META: meta_source, Platform.GOOGLE: google_source}
