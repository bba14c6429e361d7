import time
from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from adcache.api import main
from adcache.errors import UpstreamUnavailable
from adcache.logic.collector import BackgroundCollector, JobTracker
from adcache.logic.periods import parse_period
from adcache.services import build_services
from tests.conftest import NOW, seed_cache

AUTH = {"Authorization": "Bearer cron-secret"}


class FakeTask:
    def __init__(self, task_id):
        self.task_id = task_id
        self.calls = []

    def delay(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(id=self.task_id)


@pytest.fixture()
def services(engine, accounts, sources, clock):
    services = build_services(engine, accounts, sources=sources, clock=clock)
    services.collector = BackgroundCollector(
        services.store, sources, tracker=JobTracker(), clock=clock, batch_delay=0
    )
    return services


@pytest.fixture()
def client(monkeypatch, services):
    monkeypatch.setenv("CRON_SECRET", "cron-secret")
    monkeypatch.setenv("SIGNING_SECRET", "signing-secret")
    monkeypatch.setattr(main, "build_services", lambda: services)
    with TestClient(main.app) as client:
        yield client


def test_metrics_fetches_live_on_miss(client):
    response = client.get("/metrics/alpha/meta")
    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "live-fallback"
    assert body["snapshot"]["period_id"] == "2025-09"
    assert body["snapshot"]["payload"]["totals"]["spend"] == 100.0


def test_metrics_serves_fresh_cache(client, services, meta_source):
    seed_cache(services.store, "alpha", "meta", parse_period("2025-W38"), NOW - timedelta(minutes=10))
    response = client.get("/metrics/alpha/meta", params={"granularity": "week"})
    assert response.json()["source"] == "fresh-cache"
    assert meta_source.calls == []


def test_metrics_reports_degraded_result(client, meta_source):
    meta_source.errors["alpha"] = UpstreamUnavailable("meta is down")
    body = client.get("/metrics/alpha/meta").json()
    assert body["source"] == "empty"
    assert body["error"] == "meta is down"


def test_metrics_rejects_unknown_account_and_platform(client):
    assert client.get("/metrics/nobody/meta").status_code == 404
    assert client.get("/metrics/alpha/tiktok").status_code == 422


def test_automated_routes_require_the_cron_secret(client, monkeypatch):
    assert client.post("/automated/refresh-cache").status_code == 401
    wrong = {"Authorization": "Bearer nope"}
    assert client.post("/automated/lifecycle/cleanup", headers=wrong).status_code == 401
    monkeypatch.delenv("CRON_SECRET")
    assert client.post("/automated/refresh-cache", headers=AUTH).status_code == 503


def test_refresh_cache(client, meta_source, google_source):
    response = client.post("/automated/refresh-cache", headers=AUTH, json={"account_id": "alpha"})
    assert response.status_code == 200
    # month and week for both platforms
    assert response.json()["refreshed"] == 4
    assert len(meta_source.calls) == 2
    assert len(google_source.calls) == 2


def test_refresh_cache_unknown_account(client):
    response = client.post("/automated/refresh-cache", headers=AUTH, json={"account_id": "nobody"})
    assert response.status_code == 404


def test_collect_history_dispatches_celery_task(client, monkeypatch):
    task = FakeTask("celery-123")
    monkeypatch.setattr(main, "collect_history_task", task)
    monkeypatch.setattr(main, "task_status", lambda task_id: {"task_id": task_id, "state": "PROGRESS", "info": {}})

    response = client.post(
        "/automated/collect-history",
        headers=AUTH,
        json={"granularity": "month", "periods": 3, "platforms": ["google"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["task_id"] == "celery-123"
    assert task.calls == [{"granularity": "month", "periods": 3, "account_ids": None, "platforms": ["google"]}]

    # the signed link works without the bearer secret
    status = client.get(body["status_url"])
    assert status.status_code == 200
    assert status.json()["state"] == "PROGRESS"
    assert client.get("/automated/jobs/celery-123?token=forged").status_code == 401
    assert client.get("/automated/jobs/celery-123", headers=AUTH).status_code == 200


def test_collect_history_in_process_can_be_polled(client, services):
    response = client.post(
        "/automated/collect-history",
        headers=AUTH,
        json={"granularity": "month", "periods": 2, "platforms": ["meta"], "in_process": True},
    )
    assert response.status_code == 200
    task_id = response.json()["task_id"]

    for _ in range(100):
        status = client.get(f"/automated/jobs/{task_id}", headers=AUTH).json()
        if status["state"] == "finished":
            break
        time.sleep(0.02)
    assert status["state"] == "finished"
    assert status["info"]["succeeded"] == 6
    assert services.store.count("campaign_summaries") == 6


def test_collect_history_rejects_mismatched_periods(client):
    response = client.post(
        "/automated/collect-history",
        headers=AUTH,
        json={"granularity": "week", "periods": ["2025-08"], "in_process": True},
    )
    assert response.status_code == 400


def test_collect_daily_dispatches_task(client, monkeypatch):
    task = FakeTask("daily-1")
    monkeypatch.setattr(main, "collect_daily_task", task)
    response = client.post("/automated/collect-daily", headers=AUTH, json={"day": "2025-09-10"})
    assert response.json()["task_id"] == "daily-1"
    assert task.calls == [{"day": "2025-09-10", "account_ids": None}]


def test_period_transition_and_lifecycle_routes(client, services):
    seed_cache(services.store, "alpha", "meta", parse_period("2025-08"), NOW - timedelta(days=20))

    transition = client.post("/automated/period-transition", headers=AUTH).json()
    assert transition["month"]["archived"] == 1
    assert transition["week"]["state"] == "aligned"

    archive = client.post("/automated/lifecycle/archive", headers=AUTH)
    assert archive.status_code == 200
    cleanup = client.post("/automated/lifecycle/cleanup", headers=AUTH).json()
    assert cleanup["total_deleted"] == 0

    status = client.get("/automated/lifecycle/status", headers=AUTH).json()
    assert status["summaries"]["monthly"] == 1
    assert status["cache_rows"]["month"] == 0
