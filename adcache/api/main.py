"""FastAPI application serving cached metrics and the automated job triggers."""

from __future__ import annotations

import hmac
import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from adcache.errors import UnknownAccountError
from adcache.ingest.models import Platform
from adcache.jobs.celery_app import celery_app, collect_daily_task, collect_history_task
from adcache.logic.periods import Granularity
from adcache.services import Services, build_services
from adcache.utils.urls import sign_path, verify_path

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = build_services()
    try:
        yield
    finally:
        await app.state.services.aclose()


app = FastAPI(title="Ad Metrics Cache API", lifespan=lifespan)


class RefreshRequest(BaseModel):
    account_id: str | None = None
    granularities: list[Granularity] = Field(default_factory=lambda: [Granularity.MONTH, Granularity.WEEK])


class CollectHistoryRequest(BaseModel):
    granularity: Granularity = Granularity.WEEK
    periods: int | list[str] | None = None
    account_ids: list[str] | None = None
    platforms: list[Platform] | None = None
    in_process: bool = False


class CollectDailyRequest(BaseModel):
    day: date | None = None
    account_ids: list[str] | None = None


class TransitionRequest(BaseModel):
    warm: bool = False


class JobStarted(BaseModel):
    status: str = "started"
    task_id: str
    status_url: str


def get_services(request: Request) -> Services:
    return request.app.state.services


def _authorized(authorization: str | None) -> bool:
    secret = os.environ.get("CRON_SECRET")
    if not secret:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured")
    return hmac.compare_digest((authorization or "").encode(), f"Bearer {secret}".encode())


def require_cron_secret(authorization: str | None = Header(None)) -> None:
    if not _authorized(authorization):
        raise HTTPException(status_code=401, detail="Invalid credentials")


def task_status(task_id: str) -> dict[str, Any]:
    result = celery_app.AsyncResult(task_id)
    info = result.info
    if isinstance(info, Exception):
        info = {"error": str(info)}
    return {"task_id": task_id, "state": result.state, "info": info}


def _started(task_id: str) -> JobStarted:
    return JobStarted(task_id=task_id, status_url=sign_path(f"/automated/jobs/{task_id}"))


@app.get("/metrics/{account_id}/{platform}")
async def get_metrics(
    account_id: str,
    platform: Platform,
    granularity: Granularity = Granularity.MONTH,
    force_refresh: bool = False,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        result = await services.cache.get(account_id, platform, granularity=granularity, force_refresh=force_refresh)
    except UnknownAccountError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.to_dict()


@app.post("/automated/refresh-cache", dependencies=[Depends(require_cron_secret)])
async def refresh_cache(
    payload: RefreshRequest | None = None, services: Services = Depends(get_services)
) -> dict[str, Any]:
    payload = payload or RefreshRequest()
    try:
        report = await services.cache.refresh_due(
            [payload.account_id] if payload.account_id else None, granularities=payload.granularities
        )
    except UnknownAccountError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return report.to_dict()


@app.post("/automated/collect-history", dependencies=[Depends(require_cron_secret)], response_model=JobStarted)
async def collect_history(
    payload: CollectHistoryRequest | None = None, services: Services = Depends(get_services)
) -> JobStarted:
    payload = payload or CollectHistoryRequest()
    platforms = [platform.value for platform in payload.platforms] if payload.platforms else None
    if payload.in_process:
        try:
            job = services.collector.start(
                services.accounts,
                platforms,
                granularity=payload.granularity,
                periods=payload.periods,
                account_ids=payload.account_ids,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _started(job.job_id)
    task = collect_history_task.delay(
        granularity=payload.granularity.value,
        periods=payload.periods,
        account_ids=payload.account_ids,
        platforms=platforms,
    )
    logger.info("Dispatched %s backfill as task %s", payload.granularity.value, task.id)
    return _started(task.id)


@app.get("/automated/jobs/{task_id}")
async def job_status(
    task_id: str,
    token: str | None = Query(None),
    authorization: str | None = Header(None),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    signed = bool(token) and verify_path(token, f"/automated/jobs/{task_id}")
    if not signed and not _authorized(authorization):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    job = services.collector.tracker.get(task_id)
    if job is not None:
        return {"task_id": task_id, "state": job.state.value, "info": job.to_dict()}
    return task_status(task_id)


@app.post("/automated/collect-daily", dependencies=[Depends(require_cron_secret)], response_model=JobStarted)
async def collect_daily(payload: CollectDailyRequest | None = None) -> JobStarted:
    payload = payload or CollectDailyRequest()
    task = collect_daily_task.delay(
        day=payload.day.isoformat() if payload.day else None, account_ids=payload.account_ids
    )
    return _started(task.id)


@app.post("/automated/period-transition", dependencies=[Depends(require_cron_secret)])
async def period_transition(
    payload: TransitionRequest | None = None, services: Services = Depends(get_services)
) -> dict[str, Any]:
    payload = payload or TransitionRequest()
    results = await services.transition.handle_transition(warm=payload.warm)
    return {name: result.to_dict() for name, result in results.items()}


@app.post("/automated/lifecycle/archive", dependencies=[Depends(require_cron_secret)])
async def lifecycle_archive(services: Services = Depends(get_services)) -> dict[str, Any]:
    report = await services.lifecycle.archive_completed_periods()
    return report.to_dict()


@app.post("/automated/lifecycle/cleanup", dependencies=[Depends(require_cron_secret)])
async def lifecycle_cleanup(services: Services = Depends(get_services)) -> dict[str, Any]:
    report = await services.lifecycle.cleanup_old_data()
    return report.to_dict()


@app.get("/automated/lifecycle/status", dependencies=[Depends(require_cron_secret)])
async def lifecycle_status(services: Services = Depends(get_services)) -> dict[str, Any]:
    status = await services.lifecycle.status()
    return status.to_dict()
