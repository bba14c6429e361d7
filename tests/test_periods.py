from datetime import date, datetime, timedelta, timezone

import pytest

from adcache.logic import periods
from adcache.logic.periods import Granularity, PeriodStatus


def test_current_ids():
    now = datetime(2025, 9, 15, 10, 0, tzinfo=timezone.utc)
    assert periods.current_id(Granularity.MONTH, now) == "2025-09"
    assert periods.current_id(Granularity.WEEK, now) == "2025-W38"
    assert periods.current_id(Granularity.DAY, now) == "2025-09-15"


def test_week_id_uses_iso_week_year():
    assert periods.format_id(Granularity.WEEK, date(2024, 12, 30)) == "2025-W01"
    assert periods.format_id(Granularity.WEEK, date(2021, 1, 3)) == "2020-W53"
    assert periods.format_id(Granularity.WEEK, date(2025, 1, 6)) == "2025-W02"


def test_current_id_reads_now_in_reporting_timezone():
    # 22:30 UTC on Sep 30 is already October in Warsaw
    now = datetime(2025, 9, 30, 22, 30, tzinfo=timezone.utc)
    assert periods.current_id(Granularity.MONTH, now) == "2025-10"


WARSAW_SUMMER = timezone(timedelta(hours=2))


@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2025, 9, 30, 23, 59, 59, tzinfo=WARSAW_SUMMER), "2025-09"),
        (datetime(2025, 10, 1, 0, 0, 0, tzinfo=WARSAW_SUMMER), "2025-10"),
        # the same instants expressed in UTC
        (datetime(2025, 9, 30, 21, 59, 59, tzinfo=timezone.utc), "2025-09"),
        (datetime(2025, 9, 30, 22, 0, 0, tzinfo=timezone.utc), "2025-10"),
    ],
)
def test_month_boundary_in_reporting_timezone(now, expected):
    assert periods.current_id(Granularity.MONTH, now) == expected
    assert periods.period_for(Granularity.MONTH, now).id == expected


def test_window_is_oldest_first_and_ends_at_current():
    now = datetime(2025, 9, 15, 10, 0, tzinfo=timezone.utc)
    assert periods.window(Granularity.MONTH, 3, now) == ["2025-07", "2025-08", "2025-09"]
    assert periods.window(Granularity.MONTH, 0, now) == []
    weeks = periods.window(Granularity.WEEK, 53, now)
    assert len(weeks) == 53
    assert weeks[-1] == "2025-W38"
    assert weeks[0] == "2024-W38"


def test_window_crosses_year_boundary():
    now = datetime(2025, 1, 8, 12, 0, tzinfo=timezone.utc)
    assert periods.window(Granularity.WEEK, 3, now) == ["2024-W52", "2025-W01", "2025-W02"]
    assert periods.window(Granularity.MONTH, 2, now) == ["2024-12", "2025-01"]


def test_parse_period():
    week = periods.parse_period("2025-W01")
    assert week.granularity is Granularity.WEEK
    assert (week.start, week.end) == (date(2024, 12, 30), date(2025, 1, 6))

    month = periods.parse_period("2024-02")
    assert month.fetch_range() == (date(2024, 2, 1), date(2024, 2, 29))

    day = periods.parse_period("2025-09-14")
    assert (day.start, day.end) == (date(2025, 9, 14), date(2025, 9, 15))


@pytest.mark.parametrize("period_id", ["2025-13", "2025-W54", "2025-W53", "2025/09", "2025-02-30", ""])
def test_parse_period_rejects_invalid_ids(period_id):
    with pytest.raises(ValueError):
        periods.parse_period(period_id)


def test_period_status():
    now = datetime(2025, 9, 15, 10, 0, tzinfo=timezone.utc)
    assert periods.parse_period("2025-09").status(now) is PeriodStatus.CURRENT
    assert periods.parse_period("2025-08").status(now) is PeriodStatus.COMPLETED
    assert periods.parse_period("2025-08").status(now, archived=True) is PeriodStatus.ARCHIVED
    with pytest.raises(ValueError):
        periods.parse_period("2025-10").status(now)


def test_summary_type_names():
    assert Granularity.WEEK.summary_type == "weekly"
    assert Granularity.from_summary_type("monthly") is Granularity.MONTH
    with pytest.raises(ValueError):
        Granularity.from_summary_type("yearly")
