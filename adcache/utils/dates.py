"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import date, datetime

import pendulum

DEFAULT_TZ = "Europe/Warsaw"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def localize(value: datetime) -> pendulum.DateTime:
    """Interpret ``value`` in the reporting timezone (naive values are UTC)."""
    return pendulum.instance(value).in_timezone(timezone_name())


def to_utc(value: datetime) -> pendulum.DateTime:
    return pendulum.instance(value).in_timezone("UTC")


def parse_iso_date(value: str) -> date:
    return pendulum.parse(value).date()
