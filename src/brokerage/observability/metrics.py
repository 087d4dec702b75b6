"""Prometheus metrics for the session brokerage engine.

Provides:
- ``setup_metrics(app)``: Attach prometheus-fastapi-instrumentator to a FastAPI app,
  exposing ``/metrics`` with HTTP request duration/count plus the business metrics below.
- ``ACTIVE_SESSIONS``: Gauge of sessions created by this process and not yet terminal.
- ``SESSIONS_FINISHED``: Counter of sessions reaching a terminal status, by status.
- ``STATE_CONFLICTS``: Counter of lost compare-and-set races, by operation.
- ``SETTLEMENTS``: Counter of commission settlement attempts, by outcome.

Business metrics are updated at transitions, never by polling the database.
"""

from __future__ import annotations

from fastapi import FastAPI
from prometheus_client import Counter, Gauge
from prometheus_fastapi_instrumentator import Instrumentator

ACTIVE_SESSIONS: Gauge = Gauge(
    "brokerage_active_sessions",
    "Number of currently active (non-terminal) negotiation sessions",
)

SESSIONS_FINISHED: Counter = Counter(
    "brokerage_sessions_finished_total",
    "Total number of sessions reaching a terminal status",
    ["status"],
)

STATE_CONFLICTS: Counter = Counter(
    "brokerage_state_conflicts_total",
    "Guarded session writes that lost a concurrent race",
    ["operation"],
)

SETTLEMENTS: Counter = Counter(
    "brokerage_settlements_total",
    "Commission settlement attempts",
    ["outcome"],
)


def setup_metrics(app: FastAPI) -> None:
    """Instrument *app* with Prometheus HTTP metrics and expose ``/metrics``.

    Health, readiness and the metrics endpoint itself are excluded.

    Args:
        app: The FastAPI application to instrument.
    """
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/ready", "/metrics"],
    ).instrument(app).expose(app, include_in_schema=False, should_gzip=True)
