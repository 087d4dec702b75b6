"""Request ID middleware for HTTP request tracing.

Every response carries an ``X-Request-ID`` header, echoed from the client or
generated, and the same id is bound into structlog contextvars so all log
lines of one request can be correlated.
"""

from __future__ import annotations

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

SERVICE_NAME = "session-brokerage"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to every HTTP request/response cycle."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, service=SERVICE_NAME)
        idempotency_key = request.headers.get("Idempotency-Key")
        if idempotency_key:
            structlog.contextvars.bind_contextvars(idempotency_key=idempotency_key)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
