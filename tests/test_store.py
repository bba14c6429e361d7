from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from adcache.db.migrate import run_migrations
from adcache.db.store import SqlPeriodStore, run_sync
from adcache.errors import PersistenceError
from adcache.logic.archive import DAILY, SUMMARIES, payload_from_summary, summary_row
from adcache.logic.aggregates import MetricsPayload
from adcache.logic.periods import parse_period
from tests.conftest import NOW, campaign


def _daily(day, *, spend=10.0, archived=False, account_id="alpha"):
    return {
        "account_id": account_id,
        "platform": "meta",
        "date": day,
        "total_spend": spend,
        "archived": archived,
        "last_updated": NOW,
    }


def test_upsert_overwrites_existing_key(store):
    store.upsert(DAILY, [_daily(date(2025, 9, 1), spend=10.0)])
    store.upsert(DAILY, [_daily(date(2025, 9, 1), spend=25.0)])
    assert store.count(DAILY) == 1
    row = store.get(DAILY, account_id="alpha", platform="meta", date=date(2025, 9, 1))
    assert row["total_spend"] == 25.0


def test_timestamps_come_back_in_utc(store):
    warsaw_noon = datetime(2025, 9, 15, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    store.upsert(DAILY, [{**_daily(date(2025, 9, 1)), "last_updated": warsaw_noon}])
    row = store.get(DAILY, account_id="alpha", platform="meta", date=date(2025, 9, 1))
    assert row["last_updated"] == NOW
    assert row["last_updated"].utcoffset() == timedelta(0)


def test_delete_where_is_predicate_based_and_rerunnable(store):
    store.upsert(DAILY, [_daily(date(2025, 9, day)) for day in range(1, 11)])
    assert store.delete_where(DAILY, {"date__lt": date(2025, 9, 5)}) == 4
    assert store.delete_where(DAILY, {"date__lt": date(2025, 9, 5)}) == 0
    assert store.count(DAILY) == 6
    with pytest.raises(ValueError):
        store.delete_where(DAILY, {})


def test_select_update_and_bounds(store):
    store.upsert(DAILY, [_daily(date(2025, 9, day)) for day in (3, 1, 2)])
    rows = store.select(DAILY, {"date__gte": date(2025, 9, 2)}, order_by="date")
    assert [row["date"] for row in rows] == [date(2025, 9, 2), date(2025, 9, 3)]
    assert store.update_where(DAILY, {"date__lte": date(2025, 9, 2)}, {"archived": True}) == 2
    assert store.count(DAILY, {"archived": True}) == 2
    assert store.bounds(DAILY, "date") == (date(2025, 9, 1), date(2025, 9, 3))
    assert store.latest(DAILY, {"account_id": "alpha"}, order_by="date")["date"] == date(2025, 9, 3)


def test_summary_rows_keep_campaigns_and_totals(store):
    period = parse_period("2025-08")
    payload = MetricsPayload.from_campaigns([campaign("a", spend=40.0), campaign("b", spend=60.0)])
    store.upsert(SUMMARIES, [summary_row("alpha", "meta", period, payload, data_source="background_collector", now=NOW)])
    row = store.get(SUMMARIES, account_id="alpha", summary_type="monthly", summary_date=date(2025, 8, 1), platform="meta")
    assert row["total_spend"] == 100.0
    restored = payload_from_summary(row)
    assert [c.campaign_id for c in restored.campaigns] == ["a", "b"]
    assert restored.totals.spend == 100.0


def test_unknown_table_is_rejected(store):
    with pytest.raises(ValueError):
        store.count("nope")


def test_database_errors_become_persistence_errors(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}", future=True)
    store = SqlPeriodStore(engine)
    with pytest.raises(PersistenceError):
        store.count(DAILY)
    run_migrations(engine)
    assert store.count(DAILY) == 0


@pytest.mark.asyncio
async def test_run_sync_uses_executor(store):
    await run_sync(store.upsert, DAILY, [_daily(date(2025, 9, 1))])
    assert await run_sync(store.count, DAILY) == 1
