"""SQLAlchemy Core tables mirroring schema.sql."""

from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, Float, Integer, MetaData, Table, Text

metadata = MetaData()


def _totals_columns() -> list[Column]:
    return [
        Column("total_spend", Float, nullable=False, default=0),
        Column("total_impressions", Integer, nullable=False, default=0),
        Column("total_clicks", Integer, nullable=False, default=0),
        Column("total_conversions", Float, nullable=False, default=0),
        Column("average_ctr", Float, nullable=False, default=0),
        Column("average_cpc", Float, nullable=False, default=0),
        Column("click_to_call", Integer, nullable=False, default=0),
        Column("email_contacts", Integer, nullable=False, default=0),
        Column("booking_step_1", Integer, nullable=False, default=0),
        Column("booking_step_2", Integer, nullable=False, default=0),
        Column("booking_step_3", Integer, nullable=False, default=0),
        Column("reservations", Integer, nullable=False, default=0),
        Column("reservation_value", Float, nullable=False, default=0),
        Column("roas", Float, nullable=False, default=0),
        Column("cost_per_reservation", Float, nullable=False, default=0),
        Column("active_campaigns", Integer, nullable=False, default=0),
        Column("total_campaigns", Integer, nullable=False, default=0),
    ]


current_cache = Table(
    "current_cache",
    metadata,
    Column("account_id", Text, primary_key=True),
    Column("platform", Text, primary_key=True),
    Column("period_id", Text, primary_key=True),
    Column("granularity", Text, primary_key=True),
    Column("period_start", Date, nullable=False),
    Column("period_end", Date, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("last_updated", DateTime(timezone=True), nullable=False),
)

campaign_summaries = Table(
    "campaign_summaries",
    metadata,
    Column("account_id", Text, primary_key=True),
    Column("summary_type", Text, primary_key=True),
    Column("summary_date", Date, primary_key=True),
    Column("platform", Text, primary_key=True),
    *_totals_columns(),
    Column("campaign_data", JSON),
    Column("data_source", Text, nullable=False),
    Column("last_updated", DateTime(timezone=True), nullable=False),
)

daily_metrics = Table(
    "daily_metrics",
    metadata,
    Column("account_id", Text, primary_key=True),
    Column("platform", Text, primary_key=True),
    Column("date", Date, primary_key=True),
    *_totals_columns(),
    Column("archived", Boolean, nullable=False, default=False),
    Column("last_updated", DateTime(timezone=True), nullable=False),
)

TABLES = {table.name: table for table in (current_cache, campaign_summaries, daily_metrics)}
