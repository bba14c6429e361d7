"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import asyncio
import os
from datetime import date

from celery import Celery
from celery.schedules import crontab

from adcache.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("adcache", broker=broker_url, backend=backend_url)
celery_app.conf.timezone = timezone_name()
celery_app.conf.task_track_started = True
celery_app.conf.beat_schedule = {
    "refresh-cache": {
        "task": "adcache.jobs.refresh",
        "schedule": crontab(minute="*/30"),
    },
    "period-transition": {
        "task": "adcache.jobs.transition",
        "schedule": crontab(hour=0, minute=5),
    },
    "collect-daily": {
        "task": "adcache.jobs.collect_daily",
        "schedule": crontab(hour=1, minute=0),
    },
    "lifecycle-archive": {
        "task": "adcache.jobs.lifecycle_archive",
        "schedule": crontab(hour=2, minute=0),
    },
    "lifecycle-cleanup": {
        "task": "adcache.jobs.lifecycle_cleanup",
        "schedule": crontab(day_of_week="sun", hour=3, minute=0),
    },
    "weekly-backfill": {
        "task": "adcache.jobs.collect_history",
        "schedule": crontab(day_of_week="mon", hour=4, minute=0),
        "kwargs": {"granularity": "week"},
    },
    "monthly-backfill": {
        "task": "adcache.jobs.collect_history",
        "schedule": crontab(day_of_month=1, hour=4, minute=30),
        "kwargs": {"granularity": "month"},
    },
}


@celery_app.task(name="adcache.jobs.refresh")
def refresh_task(account_id: str | None = None):  # pragma: no cover - executed by worker
    from adcache.jobs.refresh import run_refresh

    return asyncio.run(run_refresh(account_id)).to_dict()


@celery_app.task(name="adcache.jobs.collect_history", bind=True)
def collect_history_task(
    self,
    granularity: str = "week",
    periods: int | list[str] | None = None,
    account_ids: list[str] | None = None,
    platforms: list[str] | None = None,
):
    from adcache.jobs.backfill import run_collect_history

    def report_progress(job) -> None:
        self.update_state(state="PROGRESS", meta=job.to_dict())

    job = asyncio.run(
        run_collect_history(granularity, periods, account_ids, platforms, on_progress=report_progress)
    )
    return job.to_dict()


@celery_app.task(name="adcache.jobs.collect_daily")
def collect_daily_task(day: str | None = None, account_ids: list[str] | None = None):  # pragma: no cover
    from adcache.jobs.backfill import run_collect_daily

    target = date.fromisoformat(day) if day else None
    return asyncio.run(run_collect_daily(target, account_ids)).to_dict()


@celery_app.task(name="adcache.jobs.transition")
def transition_task(warm: bool = True):  # pragma: no cover - executed by worker
    from adcache.jobs.maintenance import run_transition

    return asyncio.run(run_transition(warm=warm))


@celery_app.task(name="adcache.jobs.lifecycle_archive")
def lifecycle_archive_task():  # pragma: no cover - executed by worker
    from adcache.jobs.maintenance import run_archive

    return asyncio.run(run_archive())


@celery_app.task(name="adcache.jobs.lifecycle_cleanup")
def lifecycle_cleanup_task():  # pragma: no cover - executed by worker
    from adcache.jobs.maintenance import run_cleanup

    return asyncio.run(run_cleanup())
