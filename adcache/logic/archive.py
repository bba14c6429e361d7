"""Conversions between metrics payloads and durable summary rows."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from adcache.db.store import SqlPeriodStore
from adcache.ingest.models import Platform
from adcache.logic.aggregates import AccountTotals, MetricsPayload
from adcache.logic.periods import Period

logger = logging.getLogger(__name__)

SUMMARIES = "campaign_summaries"
DAILY = "daily_metrics"

BACKGROUND_COLLECTOR = "background_collector"
TRANSITION_ARCHIVE = "period_transition_archive"
LIFECYCLE_ARCHIVE = "lifecycle_archive"
DAILY_ROLLUP = "daily_rollup"

# AccountTotals attribute -> column name where they differ
RENAMED_COLUMNS = {
    "spend": "total_spend",
    "impressions": "total_impressions",
    "clicks": "total_clicks",
    "conversions": "total_conversions",
    "ctr": "average_ctr",
    "cpc": "average_cpc",
}


def totals_columns(totals: AccountTotals) -> dict[str, Any]:
    return {RENAMED_COLUMNS.get(name, name): value for name, value in totals.to_dict().items()}


def totals_from_row(row: Mapping[str, Any]) -> AccountTotals:
    columns = {column: attr for attr, column in RENAMED_COLUMNS.items()}
    return AccountTotals.from_dict({columns.get(key, key): value for key, value in row.items()})


def summary_key(account_id: str, platform: Platform | str, period: Period) -> dict[str, Any]:
    return {
        "account_id": account_id,
        "summary_type": period.granularity.summary_type,
        "summary_date": period.start,
        "platform": Platform(platform).value,
    }


def summary_row(
    account_id: str,
    platform: Platform | str,
    period: Period,
    payload: MetricsPayload,
    *,
    data_source: str,
    now: datetime,
) -> dict[str, Any]:
    return {
        **summary_key(account_id, platform, period),
        **totals_columns(payload.totals),
        "campaign_data": [campaign.to_dict() for campaign in payload.campaigns],
        "data_source": data_source,
        "last_updated": now,
    }


def payload_from_summary(row: Mapping[str, Any]) -> MetricsPayload:
    payload = MetricsPayload.from_dict({"campaigns": row.get("campaign_data") or []})
    payload.totals = totals_from_row(row)
    return payload


def ensure_summary(
    store: SqlPeriodStore,
    account_id: str,
    platform: Platform | str,
    period: Period,
    payload: MetricsPayload,
    *,
    data_source: str,
    now: datetime,
) -> bool:
    """Write a summary for ``period`` unless one is already stored. Returns True when written."""
    if store.get(SUMMARIES, **summary_key(account_id, platform, period)) is not None:
        return False
    store.upsert(SUMMARIES, [summary_row(account_id, platform, period, payload, data_source=data_source, now=now)])
    logger.info("Archived %s %s %s as %s", account_id, Platform(platform).value, period.id, data_source)
    return True
