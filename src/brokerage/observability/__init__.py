"""Metrics, request tracing and error reporting."""

from brokerage.observability.metrics import (
    ACTIVE_SESSIONS,
    SESSIONS_FINISHED,
    SETTLEMENTS,
    STATE_CONFLICTS,
    setup_metrics,
)
from brokerage.observability.middleware import RequestIdMiddleware

__all__ = [
    "ACTIVE_SESSIONS",
    "SESSIONS_FINISHED",
    "SETTLEMENTS",
    "STATE_CONFLICTS",
    "RequestIdMiddleware",
    "setup_metrics",
]
