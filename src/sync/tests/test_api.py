"""Tests for the local control API (FastAPI TestClient, real lifespan)."""

from __future__ import annotations

import time
from datetime import timedelta
from pathlib import Path
from typing import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src import main
from src.config import Settings
from src.main import create_app
from src.services.transport import UploadResult
from src.sync.base import utc_now
from src.sync.encryption import EncryptionService
from src.sync.registry import WHATSAPP_TARGET, ServiceFactory
from src.sync.tests.conftest import ListSource, make_messages


@pytest.fixture
def app(tmp_path: Path) -> FastAPI:
    shots = tmp_path / "screenshots"
    shots.mkdir()
    settings = Settings(data_dir=tmp_path / "state", screenshots_dir=shots, server_url=None)
    return create_app(settings)


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as c:
        yield c


def _register_whatsapp(app: FastAPI, count: int) -> MagicMock:
    """Register a whatsapp service with a backfill engine over in-memory messages."""
    transport = MagicMock()
    transport.upload_json = AsyncMock(return_value=UploadResult(data={}, status=200))
    factory = ServiceFactory(app.state.store, transport, EncryptionService(lambda: None))
    messages = make_messages(count, start=utc_now() - timedelta(days=1))
    scheduler, backfill = factory.record_service(
        "whatsapp", lambda: ListSource(messages), WHATSAPP_TARGET
    )
    app.state.registry.register(scheduler, backfill)
    return transport


def _wait_for_backfill(client: TestClient, name: str) -> dict:
    progress: dict = {}
    for _ in range(100):
        progress = client.get(f"/api/v1/services/{name}/backfill").json()
        if progress["status"] != "running":
            break
        time.sleep(0.01)
    return progress


class TestHealth:
    def test_health_reports_services(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "degraded"
        assert body["server"] == "not configured"
        assert body["services"] == ["screenshots"]


class TestServices:
    def test_list_services(self, client: TestClient) -> None:
        resp = client.get("/api/v1/services")
        assert resp.status_code == 200
        [screenshots] = resp.json()
        assert screenshots["name"] == "screenshots"
        assert screenshots["enabled"] is True
        assert screenshots["is_running"] is True
        assert screenshots["status"] == "success"
        assert screenshots["time_until_next_run_ms"] > 0

    def test_unknown_service(self, client: TestClient) -> None:
        assert client.get("/api/v1/services/nope").status_code == 404

    def test_run_now(self, client: TestClient) -> None:
        resp = client.post("/api/v1/services/screenshots/run")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "success"
        assert resp.json()["trigger"] == "manual"

    def test_update_config_restarts(self, client: TestClient) -> None:
        resp = client.patch("/api/v1/services/screenshots/config", json={"interval_minutes": 10})
        assert resp.status_code == 200
        assert resp.json()["interval_minutes"] == 10
        assert resp.json()["is_running"] is True

        config = client.get("/api/v1/services/screenshots/config").json()
        assert config["interval_minutes"] == 10
        assert config["next_sync_after"] is not None

    def test_disable_then_run_is_conflict(self, client: TestClient) -> None:
        resp = client.patch("/api/v1/services/screenshots/config", json={"enabled": False})
        assert resp.json()["is_running"] is False
        assert client.post("/api/v1/services/screenshots/run").status_code == 409

    def test_invalid_interval_rejected(self, client: TestClient) -> None:
        resp = client.patch("/api/v1/services/screenshots/config", json={"interval_minutes": 0})
        assert resp.status_code == 422


class TestLogs:
    def test_sync_logs_listed_and_cleared(self, client: TestClient) -> None:
        logs = client.get("/api/v1/logs/sync", params={"source": "screenshots"}).json()
        assert [log["trigger"] for log in logs] == ["startup"]

        assert client.delete("/api/v1/logs/sync").status_code == 204
        assert client.get("/api/v1/logs/sync").json() == []

    def test_request_logs_empty_without_uploads(self, client: TestClient) -> None:
        assert client.get("/api/v1/logs/requests").json() == []
        assert client.delete("/api/v1/logs/requests").status_code == 204


class TestBackfillApi:
    def test_unknown_service_has_no_backfill(self, client: TestClient) -> None:
        assert client.get("/api/v1/services/nope/backfill").status_code == 404
        assert client.post("/api/v1/services/nope/backfill", json={"days": 7}).status_code == 404

    def test_screenshots_backfill_empty_folder(self, client: TestClient) -> None:
        resp = client.post("/api/v1/services/screenshots/backfill", json={"days": 7})
        assert resp.status_code == 202

        progress = _wait_for_backfill(client, "screenshots")
        assert progress["status"] == "completed"
        assert progress["items_uploaded"] == 0

    def test_screenshots_backfill_without_server(self, app: FastAPI, client: TestClient) -> None:
        shots = app.state.settings.screenshots_dir
        (shots / "a.png").write_bytes(b"a")
        (shots / "b.png").write_bytes(b"b")

        client.post("/api/v1/services/screenshots/backfill", json={"days": 7})
        progress = _wait_for_backfill(client, "screenshots")

        assert progress["status"] == "error"
        assert progress["failed_batch"] == 1
        assert progress["items_uploaded"] == 0
        assert "Server URL is not set" in progress["error"]

    def test_backfill_runs_to_completion(self, app: FastAPI, client: TestClient) -> None:
        transport = _register_whatsapp(app, count=75)

        resp = client.post("/api/v1/services/whatsapp/backfill", json={"days": 30})
        assert resp.status_code == 202
        assert resp.json()["status"] in ("running", "completed")

        progress = _wait_for_backfill(client, "whatsapp")
        assert progress["status"] == "completed"
        assert progress["items_uploaded"] == 75
        assert progress["total"] == 2
        assert transport.upload_json.await_count == 2

    def test_cancel_when_idle(self, app: FastAPI, client: TestClient) -> None:
        _register_whatsapp(app, count=0)
        resp = client.post("/api/v1/services/whatsapp/backfill/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "idle"


class TestEntryPoint:
    def test_run_serves_configured_address(self, monkeypatch: pytest.MonkeyPatch) -> None:
        settings = Settings(api_host="127.0.0.1", api_port=9123, debug=True, log_level="DEBUG")
        serve = MagicMock()
        monkeypatch.setattr(main, "get_settings", lambda: settings)
        monkeypatch.setattr(main.uvicorn, "run", serve)

        main.run()

        serve.assert_called_once_with(
            "src.main:app", host="127.0.0.1", port=9123, reload=True, log_level="debug"
        )
