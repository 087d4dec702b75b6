"""Tests for the /health and /ready endpoints."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

from fastapi import FastAPI
from fastapi.testclient import TestClient

from brokerage.health import register_health_routes
from brokerage.state.db import Database


def _make_app(services: dict | None = None) -> FastAPI:
    """Create a minimal FastAPI app with health routes and given services."""
    app = FastAPI()
    app.state.services = services or {}
    register_health_routes(app)
    return app


def _running_task() -> MagicMock:
    task = MagicMock()
    task.done.return_value = False
    return task


class TestHealthEndpoint:
    """GET /health liveness check."""

    def test_health_returns_200(self) -> None:
        client = TestClient(_make_app())

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestReadyEndpoint:
    """GET /ready readiness check."""

    def test_ready_when_everything_answers(self, tmp_path: Path) -> None:
        app = _make_app(
            {
                "db": Database(tmp_path / "brokerage.db"),
                "audit_db": Database(tmp_path / "audit.db"),
                "sweeper_task": _running_task(),
            }
        )

        response = TestClient(app).get("/ready")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ready",
            "checks": {"db": "ok", "audit_db": "ok", "sweeper": "ok"},
        }

    def test_not_ready_when_database_unreachable(self, tmp_path: Path) -> None:
        app = _make_app(
            {
                "db": Database(tmp_path / "missing-dir" / "brokerage.db"),
                "audit_db": Database(tmp_path / "audit.db"),
                "sweeper_task": _running_task(),
            }
        )

        response = TestClient(app).get("/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "not_ready"
        assert body["checks"]["db"] == "fail"
        assert body["checks"]["audit_db"] == "ok"

    def test_not_ready_when_sweeper_stopped(self, tmp_path: Path) -> None:
        task = MagicMock()
        task.done.return_value = True
        app = _make_app(
            {
                "db": Database(tmp_path / "brokerage.db"),
                "audit_db": Database(tmp_path / "audit.db"),
                "sweeper_task": task,
            }
        )

        response = TestClient(app).get("/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["sweeper"] == "fail"

    def test_not_ready_without_services(self) -> None:
        response = TestClient(_make_app()).get("/ready")

        assert response.status_code == 503
        assert set(response.json()["checks"].values()) == {"fail"}
