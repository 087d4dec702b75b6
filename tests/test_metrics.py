"""Tests for the Prometheus endpoint and the brokerage business metrics."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from brokerage.observability.metrics import (
    ACTIVE_SESSIONS,
    STATE_CONFLICTS,
    setup_metrics,
)
from brokerage.sessions.engine import SessionEngine


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Reset the gauge between tests; counters are checked by relative increments."""
    ACTIVE_SESSIONS.set(0)
    yield


@pytest.fixture()
def metrics_app() -> FastAPI:
    """Create a minimal FastAPI app with Prometheus instrumentation."""
    app = FastAPI()

    @app.get("/hello")
    async def hello():
        return {"msg": "hello"}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready():
        return {"status": "ready"}

    setup_metrics(app)
    return app


@pytest.fixture()
def metrics_client(metrics_app: FastAPI) -> TestClient:
    return TestClient(metrics_app)


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_metrics_endpoint_returns_prometheus_format(metrics_client: TestClient) -> None:
    metrics_client.get("/hello")
    resp = metrics_client.get("/metrics")
    assert resp.status_code == 200
    assert "http_request" in resp.text
    assert "brokerage_active_sessions" in resp.text


def test_excluded_handlers_not_in_metrics(metrics_client: TestClient) -> None:
    """/health and /ready are not reported as handler labels."""
    metrics_client.get("/health")
    metrics_client.get("/ready")
    body = metrics_client.get("/metrics").text
    lines = [
        line
        for line in body.splitlines()
        if "http_request_duration" in line and 'handler="' in line
    ]
    for line in lines:
        assert '/health"' not in line, f"/health found in metrics: {line}"
        assert '/ready"' not in line, f"/ready found in metrics: {line}"


def test_active_sessions_gauge_in_output(metrics_client: TestClient) -> None:
    ACTIVE_SESSIONS.set(5)
    assert "brokerage_active_sessions 5.0" in metrics_client.get("/metrics").text


def test_session_lifecycle_moves_metrics(engine: SessionEngine) -> None:
    cancelled_before = _sample("brokerage_sessions_finished_total", status="cancelled")

    session = engine.create_session("req-m", "nearby_shops", "shop_broker")
    assert _sample("brokerage_active_sessions") == 1

    engine.cancel(session.id, "changed my mind")
    assert _sample("brokerage_active_sessions") == 0
    assert _sample("brokerage_sessions_finished_total", status="cancelled") == cancelled_before + 1


def test_state_conflict_counter() -> None:
    before = _sample("brokerage_state_conflicts_total", operation="select_quote")
    STATE_CONFLICTS.labels(operation="select_quote").inc()
    assert _sample("brokerage_state_conflicts_total", operation="select_quote") == before + 1
