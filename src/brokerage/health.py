"""Health and readiness endpoints for container orchestration.

- ``GET /health``: liveness; 200 while the process is alive.
- ``GET /ready``: readiness; 200 only when the engine and audit databases
  answer and the deadline sweeper task is running, 503 with per-check
  details otherwise.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


def register_health_routes(app: FastAPI) -> None:
    """Register ``/health`` and ``/ready`` endpoints on *app*."""

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Liveness check."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request) -> JSONResponse:
        """Readiness check."""
        services: dict[str, Any] = request.app.state.services
        checks: dict[str, str] = {}

        for name in ("db", "audit_db"):
            db = services.get(name)
            ok = db is not None and await asyncio.to_thread(db.ping)
            checks[name] = "ok" if ok else "fail"

        sweeper_task = services.get("sweeper_task")
        checks["sweeper"] = (
            "ok" if sweeper_task is not None and not sweeper_task.done() else "fail"
        )

        all_ok = all(v == "ok" for v in checks.values())
        status = "ready" if all_ok else "not_ready"
        code = 200 if all_ok else 503

        return JSONResponse(content={"status": status, "checks": checks}, status_code=code)
