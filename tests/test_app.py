"""Tests for the application entry point: logging, service wiring and app creation."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient
from structlog_sentry import SentryProcessor

from brokerage.app import configure_logging, create_app, initialize_services
from brokerage.commands import CommandService
from brokerage.config import Settings
from brokerage.ops.notifier import OpsNotifier
from brokerage.registry.store import AgentRegistry


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Reset structlog so cached loggers don't leak between tests."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _base_settings(tmp_path: Path, **overrides) -> Settings:
    """Settings with both databases under *tmp_path* and no ops credentials."""
    defaults = {
        "db_path": tmp_path / "brokerage.db",
        "audit_db_path": tmp_path / "audit.db",
        "sweep_interval_seconds": 0.05,
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)  # type: ignore[call-arg]


def _processors() -> list:
    return structlog.get_config()["processors"]


class TestConfigureLogging:
    """structlog configuration in development and production modes."""

    def test_development_mode_uses_console_renderer(self) -> None:
        configure_logging(production=False)
        assert isinstance(_processors()[-1], structlog.dev.ConsoleRenderer)

    def test_production_mode_uses_json_renderer(self) -> None:
        configure_logging(production=True)
        assert isinstance(_processors()[-1], structlog.processors.JSONRenderer)

    def test_sentry_processor_only_when_enabled(self) -> None:
        configure_logging(production=True)
        assert not any(isinstance(p, SentryProcessor) for p in _processors())

        configure_logging(production=True, sentry_enabled=True)
        assert any(isinstance(p, SentryProcessor) for p in _processors())

    def test_binds_service_name(self) -> None:
        configure_logging()
        assert structlog.contextvars.get_contextvars()["service"] == "session-brokerage"


class TestInitializeServices:
    def test_builds_every_service(self, tmp_path: Path) -> None:
        services = initialize_services(_base_settings(tmp_path))

        for name in (
            "db",
            "audit_db",
            "audit_logger",
            "ops_notifier",
            "ledger",
            "alert_executor",
            "settlement",
            "registry",
            "quotes",
            "sessions",
            "engine",
            "gateway",
            "sweeper",
        ):
            assert name in services, name
        assert isinstance(services["commands"], CommandService)
        assert (tmp_path / "brokerage.db").exists()
        assert (tmp_path / "audit.db").exists()

    def test_ops_channel_disabled_without_credentials(self, tmp_path: Path) -> None:
        services = initialize_services(_base_settings(tmp_path))
        notifier = services["ops_notifier"]
        assert isinstance(notifier, OpsNotifier)
        assert notifier.enabled is False

    def test_registry_defaults_follow_settings(self, tmp_path: Path) -> None:
        settings = _base_settings(
            tmp_path, default_sla_minutes=9, default_max_extensions=1, default_fan_out_limit=3
        )
        registry: AgentRegistry = initialize_services(settings)["registry"]
        config = registry.get("unregistered_agent")
        assert (config.sla_minutes, config.max_extensions, config.fan_out_limit) == (9, 1, 3)

    def test_injected_notifier_is_used(self, tmp_path: Path) -> None:
        notifier = MagicMock(spec=OpsNotifier)
        notifier.enabled = True
        services = initialize_services(_base_settings(tmp_path), notifier=notifier)
        assert services["ops_notifier"] is notifier


class TestCreateApp:
    def test_routes_registered(self, tmp_path: Path) -> None:
        app = create_app(initialize_services(_base_settings(tmp_path)))
        assert isinstance(app, FastAPI)
        paths = {route.path for route in app.routes}
        assert {
            "/sessions",
            "/sessions/{session_id}",
            "/sessions/{session_id}/quotes",
            "/sessions/kpis",
            "/sessions/expiring",
            "/sweep",
            "/ledger/accounts",
            "/ledger/accounts/{profile_id}",
            "/ledger/transfers",
            "/health",
            "/ready",
            "/metrics",
        } <= paths

    def test_lifespan_runs_sweeper(self, tmp_path: Path) -> None:
        services = initialize_services(_base_settings(tmp_path))
        app = create_app(services)

        with TestClient(app) as client:
            response = client.get("/ready")
            assert response.status_code == 200
            assert response.json()["checks"]["sweeper"] == "ok"
            task = services["sweeper_task"]

        assert services["sweeper_stop"].is_set()
        assert task.done()
