"""Test HTTP endpoint functionality."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from src.server.app import SyncService
from src.server.http import create_app


class _StubRunner:
    def __init__(self) -> None:
        self.calls = 0

    async def run_tick(self):
        self.calls += 1
        return {"grafanas": {"default": {}}, "autoconfig": {"test_runs": 0}}


@pytest.fixture
def runner():
    return _StubRunner()


@pytest.fixture
def client(context, runner):
    """Create a test client for the FastAPI app around a pre-built service."""
    service = SyncService(context, runner=runner)
    app = create_app(service, start_loop=False)
    with TestClient(app) as test_client:
        yield test_client


def test_health_endpoint_no_auth(client):
    """Test that /health endpoint works without authentication."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ready_endpoint_with_service(client):
    """Test that /ready reports ready once the service exists."""
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_ready_without_service_is_unavailable(settings):
    """Without lifespan startup there is no service yet."""
    app = create_app(settings=settings, start_loop=False)
    test_client = TestClient(app)

    response = test_client.get("/ready")

    assert response.status_code == 503
    assert response.json() == {
        "detail": {"detail": "service not initialized", "error_type": "http_error"}
    }


def test_status_reports_last_tick(client):
    """Status shows configuration and the most recent tick."""
    before = client.get("/status").json()
    assert before["ticks"] == 0
    assert before["running"] is False
    assert before["sync_interval_ms"] == 1000
    assert before["grafana_database"] is True
    assert before["last_tick"] is None

    client.post("/sync")
    after = client.get("/status").json()
    assert after["ticks"] == 1
    assert after["last_tick"]["status"] == "ok"


def test_sync_without_token_env_needs_no_auth(client, runner):
    """Test that /sync is open when no token is configured."""
    with patch.dict(os.environ, {}, clear=True):
        response = client.post("/sync")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["summary"]["autoconfig"] == {"test_runs": 0}
    assert runner.calls == 1


def test_sync_requires_bearer_token_when_configured(client, runner):
    """Test that /sync enforces the bearer token when set."""
    with patch.dict(os.environ, {"SYNC_HTTP_TOKEN": "test-token"}):
        missing = client.post("/sync")
        wrong = client.post("/sync", headers={"Authorization": "Bearer nope"})
        ok = client.post("/sync", headers={"Authorization": "Bearer test-token"})

    assert missing.status_code == 401
    assert wrong.status_code == 403
    assert ok.status_code == 200
    assert runner.calls == 1


def test_health_endpoints_stay_open_with_token(client):
    """Liveness and readiness never require authentication."""
    with patch.dict(os.environ, {"SYNC_HTTP_TOKEN": "test-token"}):
        assert client.get("/health").status_code == 200
        assert client.get("/ready").status_code == 200
        assert client.get("/status").status_code == 200
