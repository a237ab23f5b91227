"""
Tests for the Jobs API

The scheduler is mocked; these cover auth, status codes and messages.
"""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from iptv_ingest.config import get_settings
from iptv_ingest.core.exceptions import JobNotFound
from iptv_ingest.main import create_app
from iptv_ingest.models.jobs import DispatchResult
from iptv_ingest.services.progress import ProgressRegistry

HEADERS = {"X-API-Key": "secret"}


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEY", "secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.dispatch = AsyncMock(return_value=DispatchResult("syncLiveTV", True))
    scheduler.list_jobs = AsyncMock(return_value=[{"name": "syncLiveTV", "status": "idle"}])
    scheduler.get_job = AsyncMock(return_value={"name": "syncLiveTV", "status": "idle"})
    scheduler.abort_job = MagicMock(return_value=True)
    return scheduler


@pytest.fixture
def client(settings, admin_key, scheduler):
    # No context manager: the lifespan (store, scheduler) is not started
    app = create_app(settings)
    app.state.scheduler = scheduler
    app.state.ctx = MagicMock(progress=ProgressRegistry())
    return TestClient(app)


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_requires_api_key(client):
    response = client.get("/jobs")
    assert response.status_code == 401
    assert response.json()["error"] is True

    assert client.get("/jobs", headers={"X-API-Key": "wrong"}).status_code == 401


def test_list_jobs(client):
    response = client.get("/jobs", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"jobs": [{"name": "syncLiveTV", "status": "idle"}]}


def test_trigger_job(client, scheduler):
    response = client.post("/jobs/syncLiveTV/trigger", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Job 'syncLiveTV' triggered successfully"
    params = scheduler.dispatch.await_args.args[1]
    assert params.provider_id is None


def test_trigger_job_for_provider(client, scheduler):
    response = client.post("/jobs/syncLiveTV/trigger", headers=HEADERS, json={"provider_id": "px"})

    assert response.json()["message"] == "Job 'syncLiveTV' triggered successfully for provider 'px'"
    assert scheduler.dispatch.await_args.args[1].provider_id == "px"


def test_rejected_trigger_is_conflict(client, scheduler):
    reason = "Job 'A' cannot run because the following job(s) are currently running: B"
    scheduler.dispatch = AsyncMock(return_value=DispatchResult("A", False, reason))

    response = client.post("/jobs/A/trigger", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["message"] == reason


def test_unknown_job_is_not_found(client, scheduler):
    scheduler.get_job = AsyncMock(side_effect=JobNotFound("nope"))

    response = client.get("/jobs/nope", headers=HEADERS)

    assert response.status_code == 404
    assert response.json()["message"] == "Job not found: nope"


def test_abort_job(client, scheduler):
    response = client.post("/jobs/syncLiveTV/abort", headers=HEADERS)
    assert response.json()["success"] is True

    scheduler.abort_job.return_value = False
    response = client.post("/jobs/syncLiveTV/abort", headers=HEADERS)
    assert response.json()["message"] == "Job 'syncLiveTV' is not running"


def test_progress(client):
    client.app.state.ctx.progress.register("px:movies", 10)
    client.app.state.ctx.progress.advance("px:movies", 4)

    response = client.get("/jobs/progress", headers=HEADERS)

    assert response.json()["progress"] == {"px:movies": {"total": 10, "remaining": 6}}
