"""Bulk historical backfill of campaign summaries and daily metrics."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

import httpx

from adcache.db.store import SqlPeriodStore, run_sync
from adcache.errors import CacheEngineError, UpstreamAuthInvalid
from adcache.ingest.base import MetricsSource
from adcache.ingest.models import Account, Platform
from adcache.logic.aggregates import MetricsPayload
from adcache.logic.archive import BACKGROUND_COLLECTOR, DAILY, SUMMARIES, summary_row, totals_columns
from adcache.logic.periods import Granularity, Period, parse_period, window_periods
from adcache.utils.dates import localize, now_in_tz

logger = logging.getLogger(__name__)

BATCH_SIZE = int(os.environ.get("COLLECTOR_BATCH_SIZE", 3))
BATCH_DELAY = float(os.environ.get("COLLECTOR_BATCH_DELAY", 1.5))
DEFAULT_WINDOW = {Granularity.WEEK: 53, Granularity.MONTH: 12, Granularity.DAY: 1}
UNIT_ERRORS = (CacheEngineError, httpx.HTTPError, asyncio.TimeoutError)


class JobState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass(slots=True)
class CollectionJob:
    granularity: Granularity
    period_ids: list[str]
    account_ids: list[str]
    platforms: list[Platform]
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.PENDING
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "granularity": self.granularity.value,
            "period_ids": self.period_ids,
            "account_ids": self.account_ids,
            "platforms": [platform.value for platform in self.platforms],
            "state": self.state.value,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": self.failures,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobTracker:
    """In-process status store for collection jobs started with :meth:`BackgroundCollector.start`."""

    def __init__(self, max_jobs: int = 100) -> None:
        self.max_jobs = max_jobs
        self._jobs: OrderedDict[str, CollectionJob] = OrderedDict()
        self._tasks: dict[str, asyncio.Task] = {}

    def register(self, job: CollectionJob, task: asyncio.Task | None = None) -> None:
        self._jobs[job.job_id] = job
        while len(self._jobs) > self.max_jobs:
            self._jobs.popitem(last=False)
        if task is not None:
            self._tasks[job.job_id] = task
            task.add_done_callback(lambda done: self._finished(job, done))

    def _finished(self, job: CollectionJob, task: asyncio.Task) -> None:
        self._tasks.pop(job.job_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background job %s failed: %r", job.job_id, task.exception())

    def get(self, job_id: str) -> CollectionJob | None:
        return self._jobs.get(job_id)

    def jobs(self) -> list[CollectionJob]:
        return list(self._jobs.values())

    def running(self) -> list[CollectionJob]:
        return [job for job in self._jobs.values() if job.state in {JobState.PENDING, JobState.RUNNING}]

    async def wait(self, job_id: str) -> CollectionJob | None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait([task])
        return self.get(job_id)


ProgressCallback = Callable[[CollectionJob], Any]


class BackgroundCollector:
    def __init__(
        self,
        store: SqlPeriodStore,
        sources: Mapping[Platform, MetricsSource],
        *,
        tracker: JobTracker | None = None,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
        clock: Callable[[], datetime] = now_in_tz,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.sources = dict(sources)
        self.tracker = tracker or JobTracker()
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.clock = clock
        self._sleep = sleep

    def plan(
        self,
        accounts: Iterable[Account],
        platforms: Iterable[Platform | str] | None = None,
        *,
        granularity: Granularity = Granularity.WEEK,
        periods: int | Sequence[str] | None = None,
        account_ids: Iterable[str] | None = None,
    ) -> tuple[CollectionJob, list[Account], list[Period]]:
        """Resolve the accounts, platforms and periods a backfill run will cover.

        ``periods`` is either a window size (counted back from the current
        period) or an explicit list of period ids of ``granularity``.
        """
        granularity = Granularity(granularity)
        if periods is None or isinstance(periods, int):
            count = DEFAULT_WINDOW[granularity] if periods is None else periods
            resolved = window_periods(granularity, count, self.clock())
        else:
            resolved = [parse_period(period_id) for period_id in periods]
            mismatched = [period.id for period in resolved if period.granularity is not granularity]
            if mismatched:
                raise ValueError(f"Periods {mismatched} are not {granularity.value} periods")
        selected = list(accounts)
        if account_ids:
            wanted_ids = set(account_ids)
            selected = [account for account in selected if account.account_id in wanted_ids]
        wanted = [Platform(p) for p in platforms] if platforms else list(Platform)
        wanted = [platform for platform in wanted if platform in self.sources]
        job = CollectionJob(
            granularity=granularity,
            period_ids=[period.id for period in resolved],
            account_ids=[account.account_id for account in selected],
            platforms=wanted,
        )
        job.total = sum(len(self._platforms_for(account, wanted)) for account in selected) * len(resolved)
        return job, selected, resolved

    @staticmethod
    def _platforms_for(account: Account, wanted: Sequence[Platform]) -> list[Platform]:
        return [platform for platform in wanted if account.supports(platform)]

    async def collect_history(
        self,
        accounts: Iterable[Account],
        platforms: Iterable[Platform | str] | None = None,
        *,
        granularity: Granularity = Granularity.WEEK,
        periods: int | Sequence[str] | None = None,
        account_ids: Iterable[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CollectionJob:
        job, selected, resolved = self.plan(
            accounts, platforms, granularity=granularity, periods=periods, account_ids=account_ids
        )
        self.tracker.register(job)
        return await self._run(job, selected, resolved, on_progress)

    def start(
        self,
        accounts: Iterable[Account],
        platforms: Iterable[Platform | str] | None = None,
        *,
        granularity: Granularity = Granularity.WEEK,
        periods: int | Sequence[str] | None = None,
        account_ids: Iterable[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CollectionJob:
        """Schedule a backfill on the running loop and return its job record immediately."""
        job, selected, resolved = self.plan(
            accounts, platforms, granularity=granularity, periods=periods, account_ids=account_ids
        )
        task = asyncio.get_running_loop().create_task(self._run(job, selected, resolved, on_progress))
        self.tracker.register(job, task)
        logger.info("Started %s backfill job %s for %s units", job.granularity.value, job.job_id, job.total)
        return job

    async def collect_daily(
        self,
        accounts: Iterable[Account],
        day: date | None = None,
        platforms: Iterable[Platform | str] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> CollectionJob:
        """Store one daily metrics row per account and platform for ``day`` (default: yesterday)."""
        day = day or localize(self.clock()).date() - timedelta(days=1)
        job, selected, resolved = self.plan(accounts, platforms, granularity=Granularity.DAY, periods=[day.isoformat()])
        self.tracker.register(job)
        return await self._run(job, selected, resolved, on_progress)

    async def _run(
        self,
        job: CollectionJob,
        accounts: list[Account],
        periods: list[Period],
        on_progress: ProgressCallback | None,
    ) -> CollectionJob:
        job.state = JobState.RUNNING
        job.started_at = self.clock()
        logger.info(
            "Collecting %s %s periods for %s accounts (%s units)",
            len(periods),
            job.granularity.value,
            len(accounts),
            job.total,
        )
        try:
            for offset in range(0, len(accounts), self.batch_size):
                if offset:
                    await self._sleep(self.batch_delay)
                batch = accounts[offset : offset + self.batch_size]
                await asyncio.gather(
                    *(self._collect_account(job, account, periods, on_progress) for account in batch)
                )
        except Exception:
            job.state = JobState.FAILED
            job.finished_at = self.clock()
            logger.exception("Collection job %s aborted", job.job_id)
            raise
        job.state = JobState.FINISHED
        job.finished_at = self.clock()
        logger.info(
            "Collection job %s finished: %s succeeded, %s failed, %s skipped",
            job.job_id,
            job.succeeded,
            job.failed,
            job.skipped,
        )
        return job

    async def _collect_account(
        self,
        job: CollectionJob,
        account: Account,
        periods: list[Period],
        on_progress: ProgressCallback | None,
    ) -> None:
        for platform in self._platforms_for(account, job.platforms):
            abandoned = False
            for period in periods:
                if abandoned:
                    job.skipped += 1
                else:
                    abandoned = await self._collect_unit(job, account, platform, period)
                _notify(on_progress, job)

    async def _collect_unit(self, job: CollectionJob, account: Account, platform: Platform, period: Period) -> bool:
        """Fetch and store one unit. Returns True when the account/platform should be abandoned."""
        context = f"{account.account_id}/{platform.value}/{period.id}"
        start, end = period.fetch_range()
        try:
            campaigns = await self.sources[platform].fetch(account, start, end)
            payload = MetricsPayload.from_campaigns(campaigns)
            await run_sync(self._store_unit, account.account_id, platform, period, payload)
        except UpstreamAuthInvalid as exc:
            job.failed += 1
            job.failures.append({"unit": context, "error": str(exc)})
            logger.error("Credentials rejected for %s, abandoning remaining periods: %s", context, exc)
            return True
        except UNIT_ERRORS as exc:
            job.failed += 1
            job.failures.append({"unit": context, "error": str(exc)})
            logger.warning("Collection failed for %s: %s", context, exc)
            return False
        except Exception as exc:
            job.failed += 1
            job.failures.append({"unit": context, "error": f"{type(exc).__name__}: {exc}"})
            logger.exception("Unexpected error collecting %s", context)
            return False
        job.succeeded += 1
        logger.debug("Collected %s (%s campaigns)", context, len(campaigns))
        return False

    def _store_unit(self, account_id: str, platform: Platform, period: Period, payload: MetricsPayload) -> None:
        now = self.clock()
        if period.granularity is Granularity.DAY:
            row = {
                "account_id": account_id,
                "platform": platform.value,
                "date": period.start,
                **totals_columns(payload.totals),
                "archived": False,
                "last_updated": now,
            }
            self.store.upsert(DAILY, [row])
            return
        row = summary_row(account_id, platform, period, payload, data_source=BACKGROUND_COLLECTOR, now=now)
        self.store.upsert(SUMMARIES, [row])


def _notify(callback: ProgressCallback | None, job: CollectionJob) -> None:
    if callback is None:
        return
    try:
        callback(job)
    except Exception:
        logger.exception("Progress callback failed for job %s", job.job_id)
