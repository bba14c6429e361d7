"""Retention and archival of completed periods."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable

import pandas as pd
import pendulum

from adcache.db.store import SqlPeriodStore, run_sync
from adcache.errors import CacheEngineError
from adcache.logic.aggregates import SUMMED_FIELDS, MetricsPayload, derive
from adcache.logic.archive import DAILY, DAILY_ROLLUP, LIFECYCLE_ARCHIVE, RENAMED_COLUMNS, SUMMARIES, ensure_summary
from adcache.logic.periods import Granularity, parse_period, period_containing
from adcache.logic.smart_cache import CURRENT_CACHE, CachedSnapshot
from adcache.utils.dates import localize, now_in_tz

logger = logging.getLogger(__name__)

DAILY_RETENTION_DAYS = int(os.environ.get("DAILY_RETENTION_DAYS", 90))
MONTHLY_RETENTION_MONTHS = int(os.environ.get("MONTHLY_RETENTION_MONTHS", 14))
WEEKLY_RETENTION_WEEKS = int(os.environ.get("WEEKLY_RETENTION_WEEKS", 53))

SUM_COLUMNS = [RENAMED_COLUMNS.get(name, name) for name in SUMMED_FIELDS]
ROLLUPS = {Granularity.WEEK: "week_start", Granularity.MONTH: "month_start"}


@dataclass(slots=True)
class ArchiveReport:
    cache_archived: int = 0
    cache_already_archived: int = 0
    rollups_written: int = 0
    rollups_existing: int = 0
    daily_marked: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CleanupReport:
    daily_cutoff: date | None = None
    weekly_cutoff: date | None = None
    monthly_cutoff: date | None = None
    daily_deleted: int = 0
    weekly_deleted: int = 0
    monthly_deleted: int = 0
    cache_deleted: int = 0

    @property
    def total_deleted(self) -> int:
        return self.daily_deleted + self.weekly_deleted + self.monthly_deleted + self.cache_deleted

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("daily_cutoff", "weekly_cutoff", "monthly_cutoff"):
            data[key] = data[key].isoformat() if data[key] else None
        data["total_deleted"] = self.total_deleted
        return data


@dataclass(slots=True)
class LifecycleStatus:
    cache_rows: dict[str, int] = field(default_factory=dict)
    summaries: dict[str, int] = field(default_factory=dict)
    daily_rows: int = 0
    archived_daily_rows: int = 0
    earliest_summary: date | None = None
    latest_summary: date | None = None
    earliest_daily: date | None = None
    latest_daily: date | None = None
    total_deleted: int = 0
    total_archived: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("earliest_summary", "latest_summary", "earliest_daily", "latest_daily"):
            data[key] = data[key].isoformat() if data[key] else None
        return data


class DataLifecycleManager:
    def __init__(
        self,
        store: SqlPeriodStore,
        *,
        daily_retention_days: int = DAILY_RETENTION_DAYS,
        monthly_retention_months: int = MONTHLY_RETENTION_MONTHS,
        weekly_retention_weeks: int = WEEKLY_RETENTION_WEEKS,
        clock: Callable[[], datetime] = now_in_tz,
    ) -> None:
        self.store = store
        self.daily_retention_days = daily_retention_days
        self.monthly_retention_months = monthly_retention_months
        self.weekly_retention_weeks = weekly_retention_weeks
        self.clock = clock
        self.total_deleted = 0
        self.total_archived = 0

    async def archive_completed_periods(self, now: datetime | None = None) -> ArchiveReport:
        report = await run_sync(self._archive, now or self.clock())
        self.total_archived += report.cache_archived + report.rollups_written + report.daily_marked
        return report

    async def cleanup_old_data(self, now: datetime | None = None) -> CleanupReport:
        report = await run_sync(self._cleanup, now or self.clock())
        self.total_deleted += report.total_deleted
        return report

    async def status(self) -> LifecycleStatus:
        return await run_sync(self._status)

    def _archive(self, now: datetime) -> ArchiveReport:
        report = ArchiveReport()
        for row in self.store.select(CURRENT_CACHE):
            context = f"{row['account_id']}/{row['platform']}/{row['period_id']}"
            try:
                snapshot = CachedSnapshot.from_row(row)
                period = parse_period(snapshot.period_id)
                if not period.has_ended(now):
                    continue
                written = ensure_summary(
                    self.store,
                    snapshot.account_id,
                    snapshot.platform,
                    period,
                    snapshot.payload,
                    data_source=LIFECYCLE_ARCHIVE,
                    now=now,
                )
            except (CacheEngineError, ValueError) as exc:
                report.errors += 1
                logger.error("Archiving %s failed: %s", context, exc)
                continue
            if written:
                report.cache_archived += 1
            else:
                report.cache_already_archived += 1
        self._rollup_daily(now, report)
        logger.info(
            "Archive pass: %s cache rows archived, %s rollups written, %s daily rows marked, %s errors",
            report.cache_archived,
            report.rollups_written,
            report.daily_marked,
            report.errors,
        )
        return report

    def _rollup_daily(self, now: datetime, report: ArchiveReport) -> None:
        today = localize(now).date()
        starts = [period_containing(granularity, today).start for granularity in ROLLUPS]
        # a day is fully folded once both its week and its month have ended
        fold_before = min(starts)
        rows = self.store.select(DAILY, {"date__lt": max(starts)})
        if not rows:
            return
        frame = daily_frame(rows)
        failed: set[tuple[str, str]] = set()
        for granularity, column in ROLLUPS.items():
            for group in rollup(frame, column).to_dict("records"):
                period = period_containing(granularity, group[column])
                if period.end > today:
                    continue
                totals = derive(
                    {name: group[RENAMED_COLUMNS.get(name, name)] for name in SUMMED_FIELDS},
                    active_campaigns=int(group["active_campaigns"]),
                    total_campaigns=int(group["total_campaigns"]),
                )
                key = (group["account_id"], group["platform"])
                try:
                    written = ensure_summary(
                        self.store,
                        group["account_id"],
                        group["platform"],
                        period,
                        MetricsPayload(totals=totals),
                        data_source=DAILY_ROLLUP,
                        now=now,
                    )
                except CacheEngineError as exc:
                    report.errors += 1
                    failed.add(key)
                    logger.error("Daily rollup of %s/%s/%s failed: %s", *key, period.id, exc)
                    continue
                if written:
                    report.rollups_written += 1
                else:
                    report.rollups_existing += 1

        for account_id, platform in frame[["account_id", "platform"]].drop_duplicates().itertuples(index=False):
            if (account_id, platform) in failed:
                continue
            report.daily_marked += self.store.update_where(
                DAILY,
                {"account_id": account_id, "platform": platform, "archived": False, "date__lt": fold_before},
                {"archived": True},
            )

    def _cleanup(self, now: datetime) -> CleanupReport:
        today = localize(now).date()
        report = CleanupReport()
        if self.daily_retention_days > 0:
            report.daily_cutoff = today - timedelta(days=self.daily_retention_days)
            report.daily_deleted = self.store.delete_where(
                DAILY, {"archived": True, "date__lt": report.daily_cutoff}
            )
            # cache rows for periods that closed before the horizon and were never retired
            report.cache_deleted = self.store.delete_where(
                CURRENT_CACHE, {"period_end__lte": report.daily_cutoff}
            )
        if self.weekly_retention_weeks > 0:
            week_start = period_containing(Granularity.WEEK, today).start
            report.weekly_cutoff = week_start - timedelta(weeks=self.weekly_retention_weeks)
            report.weekly_deleted = self.store.delete_where(
                SUMMARIES, {"summary_type": Granularity.WEEK.summary_type, "summary_date__lt": report.weekly_cutoff}
            )
        if self.monthly_retention_months > 0:
            month_start = pendulum.date(today.year, today.month, 1)
            report.monthly_cutoff = month_start.subtract(months=self.monthly_retention_months)
            report.monthly_deleted = self.store.delete_where(
                SUMMARIES, {"summary_type": Granularity.MONTH.summary_type, "summary_date__lt": report.monthly_cutoff}
            )
        logger.info(
            "Cleanup: %s daily, %s weekly, %s monthly, %s cache rows deleted",
            report.daily_deleted,
            report.weekly_deleted,
            report.monthly_deleted,
            report.cache_deleted,
        )
        return report

    def _status(self) -> LifecycleStatus:
        status = LifecycleStatus(total_deleted=self.total_deleted, total_archived=self.total_archived)
        for granularity in Granularity:
            status.cache_rows[granularity.value] = self.store.count(CURRENT_CACHE, {"granularity": granularity.value})
            status.summaries[granularity.summary_type] = self.store.count(
                SUMMARIES, {"summary_type": granularity.summary_type}
            )
        status.daily_rows = self.store.count(DAILY)
        status.archived_daily_rows = self.store.count(DAILY, {"archived": True})
        status.earliest_summary, status.latest_summary = self.store.bounds(SUMMARIES, "summary_date")
        status.earliest_daily, status.latest_daily = self.store.bounds(DAILY, "date")
        return status


def daily_frame(rows: list[dict[str, Any]]) -> pd.DataFrame:
    frame = pd.DataFrame(rows)
    frame["date"] = pd.to_datetime(frame["date"]).dt.date
    frame["week_start"] = frame["date"].map(lambda day: day - timedelta(days=day.weekday()))
    frame["month_start"] = frame["date"].map(lambda day: day.replace(day=1))
    return frame


def rollup(frame: pd.DataFrame, period_column: str) -> pd.DataFrame:
    """Sum daily rows per account, platform and period start."""
    aggregations = {column: (column, "sum") for column in SUM_COLUMNS}
    aggregations["active_campaigns"] = ("active_campaigns", "max")
    aggregations["total_campaigns"] = ("total_campaigns", "max")
    aggregations["days"] = ("date", "nunique")
    return frame.groupby(["account_id", "platform", period_column]).agg(**aggregations).reset_index()
