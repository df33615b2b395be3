import pytest
from httpx import ASGITransport, AsyncClient

from groomhub_api.app import APP_VERSION
from groomhub_api.core.settings import settings
from groomhub_api.workers.reward_expiration import RewardExpirationWorker


@pytest.mark.asyncio
async def test_root_health_reports_version(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["version"] == APP_VERSION


@pytest.mark.asyncio
async def test_versioned_health_and_readiness(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "loyalty_expiration_worker_enabled", False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        health = await client.get("/api/v1/healthz")
        ready = await client.get("/api/v1/readyz")

    assert health.json() == {"status": "ok"}
    assert ready.status_code == 200
    payload = ready.json()
    assert payload["status"] == "ready"
    assert payload["components"]["database"]["status"] == "ready"
    assert payload["components"]["reward_expiration"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_readiness_degraded_when_worker_not_running(app_with_db, monkeypatch, session_factory) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "loyalty_expiration_worker_enabled", True)
    app.state.reward_expiration_worker = RewardExpirationWorker(session_factory, interval_seconds=60)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        ready = await client.get("/api/v1/readyz")

    payload = ready.json()
    assert payload["status"] == "degraded"
    assert payload["components"]["reward_expiration"]["status"] == "starting"
