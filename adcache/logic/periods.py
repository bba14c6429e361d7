"""Canonical reporting period identifiers.

Month ids look like ``2025-09``, ISO week ids like ``2025-W40`` and day ids
like ``2025-09-30``. Every function is pure given ``now``; ``now`` is read in
the reporting timezone (see :mod:`adcache.utils.dates`).
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from adcache.utils.dates import localize

MONTH_ID_RE = re.compile(r"^(\d{4})-(\d{2})$")
WEEK_ID_RE = re.compile(r"^(\d{4})-W(\d{2})$")
DAY_ID_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


class Granularity(str, enum.Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def summary_type(self) -> str:
        return {"day": "daily", "week": "weekly", "month": "monthly"}[self.value]

    @classmethod
    def from_summary_type(cls, summary_type: str) -> "Granularity":
        for member in cls:
            if member.summary_type == summary_type:
                return member
        raise ValueError(f"Unknown summary type {summary_type}")


class PeriodStatus(str, enum.Enum):
    CURRENT = "current"
    COMPLETED = "completed"
    ARCHIVED = "archived"


@dataclass(frozen=True, slots=True)
class Period:
    id: str
    granularity: Granularity
    start: date
    end: date  # exclusive

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    def fetch_range(self) -> tuple[date, date]:
        """Inclusive first and last day, as upstream insight APIs expect."""
        return self.start, self.end - timedelta(days=1)

    def has_ended(self, now: datetime) -> bool:
        return localize(now).date() >= self.end

    def status(self, now: datetime, *, archived: bool = False) -> PeriodStatus:
        if self.id == current_id(self.granularity, now):
            return PeriodStatus.CURRENT
        if not self.has_ended(now):
            raise ValueError(f"Period {self.id} has not started yet")
        return PeriodStatus.ARCHIVED if archived else PeriodStatus.COMPLETED


def format_id(granularity: Granularity, day: date) -> str:
    if granularity is Granularity.MONTH:
        return f"{day.year:04d}-{day.month:02d}"
    if granularity is Granularity.WEEK:
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    return day.isoformat()


def current_id(granularity: Granularity, now: datetime) -> str:
    return format_id(granularity, localize(now).date())


def period_containing(granularity: Granularity, day: date) -> Period:
    if granularity is Granularity.MONTH:
        start = day.replace(day=1)
        end = (start + timedelta(days=32)).replace(day=1)
    elif granularity is Granularity.WEEK:
        start = day - timedelta(days=day.weekday())
        end = start + timedelta(days=7)
    else:
        start = day
        end = day + timedelta(days=1)
    return Period(id=format_id(granularity, start), granularity=granularity, start=start, end=end)


def period_for(granularity: Granularity, now: datetime) -> Period:
    return period_containing(granularity, localize(now).date())


def parse_period(period_id: str) -> Period:
    if match := WEEK_ID_RE.match(period_id):
        year, week = int(match.group(1)), int(match.group(2))
        try:
            monday = date.fromisocalendar(year, week, 1)
        except ValueError as exc:
            raise ValueError(f"Invalid period id {period_id}") from exc
        return period_containing(Granularity.WEEK, monday)
    if match := MONTH_ID_RE.match(period_id):
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise ValueError(f"Invalid period id {period_id}")
        return period_containing(Granularity.MONTH, date(year, month, 1))
    if DAY_ID_RE.match(period_id):
        try:
            day = date.fromisoformat(period_id)
        except ValueError as exc:
            raise ValueError(f"Invalid period id {period_id}") from exc
        return period_containing(Granularity.DAY, day)
    raise ValueError(f"Invalid period id {period_id}")


def previous(period: Period) -> Period:
    return period_containing(period.granularity, period.start - timedelta(days=1))


def window_periods(granularity: Granularity, count: int, now: datetime) -> list[Period]:
    """``count`` consecutive periods ending with the current one, oldest first."""
    if count <= 0:
        return []
    periods = [period_for(granularity, now)]
    while len(periods) < count:
        periods.append(previous(periods[-1]))
    periods.reverse()
    return periods


def window(granularity: Granularity, count: int, now: datetime) -> list[str]:
    return [period.id for period in window_periods(granularity, count, now)]
