"""HTTP routes for sessions, sweeps, the agent registry and the ledger.

Handlers are thin: they validate the body shape, hand the request to the
:class:`~brokerage.commands.CommandService` on a worker thread and render
its :class:`CommandResult`.  Every mutating route accepts an
``Idempotency-Key`` header; a replayed response carries
``Idempotent-Replayed: true``.
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from brokerage.api.schemas import (
    CreateSessionRequest,
    OpenAccountRequest,
    SubmitQuoteRequest,
    SweepRequest,
    TransferRequest,
    UpdateAgentConfigRequest,
    UpdateSessionRequest,
)
from brokerage.commands import CommandService, error_result
from brokerage.domain.errors import BrokerageError
from brokerage.domain.types import FlowType, SessionStatus
from brokerage.idempotency.gateway import CommandResult

logger = structlog.get_logger()

router = APIRouter()

IdempotencyKey = Annotated[str | None, Header(alias="Idempotency-Key")]
ActorId = Annotated[str | None, Header(alias="X-Actor-Id")]


def _commands(request: Request) -> CommandService:
    services: dict[str, Any] = request.app.state.services
    return services["commands"]


def _respond(result: CommandResult) -> JSONResponse:
    headers = {"Idempotent-Replayed": "true"} if result.replayed else None
    return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)


async def brokerage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render domain errors raised outside a command (queries, bad keys)."""
    if not isinstance(exc, BrokerageError):
        raise exc
    logger.info("request_rejected", path=request.url.path, error=exc.code)
    return _respond(error_result(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BrokerageError, brokerage_error_handler)


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------


@router.post("/sessions")
async def create_session(
    body: CreateSessionRequest,
    request: Request,
    idempotency_key: IdempotencyKey = None,
) -> JSONResponse:
    result = await asyncio.to_thread(
        _commands(request).create_session, idempotency_key, body.model_dump(mode="json")
    )
    return _respond(result)


@router.get("/sessions")
async def list_sessions(
    request: Request,
    status: SessionStatus | None = None,
    flow_type: FlowType | None = None,
    agent_type: str | None = None,
    requester_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> dict[str, Any]:
    return await asyncio.to_thread(
        _commands(request).list_sessions,
        status,
        flow_type,
        agent_type,
        requester_id,
        limit,
        offset,
    )


@router.get("/sessions/kpis")
async def session_kpis(request: Request, agent_type: str | None = None) -> dict[str, Any]:
    return await asyncio.to_thread(_commands(request).kpis, agent_type)


@router.get("/sessions/expiring")
async def expiring_sessions(
    request: Request,
    within_minutes: Annotated[int | None, Query(ge=1, le=60)] = None,
) -> dict[str, Any]:
    return await asyncio.to_thread(_commands(request).list_expiring, within_minutes)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request) -> dict[str, Any]:
    """Session with countdown and its quotes ranked best-first."""
    return await asyncio.to_thread(_commands(request).get_session, session_id)


@router.patch("/sessions/{session_id}")
async def update_session(
    session_id: str,
    body: UpdateSessionRequest,
    request: Request,
    idempotency_key: IdempotencyKey = None,
    actor_id: ActorId = None,
) -> JSONResponse:
    """Select a quote, cancel, extend the deadline or present; one per call."""
    result = await asyncio.to_thread(
        _commands(request).update_session,
        idempotency_key,
        session_id,
        body.model_dump(mode="json", exclude_defaults=True),
        actor_id,
    )
    return _respond(result)


@router.post("/sessions/{session_id}/quotes")
async def submit_quote(
    session_id: str,
    body: SubmitQuoteRequest,
    request: Request,
    idempotency_key: IdempotencyKey = None,
) -> JSONResponse:
    result = await asyncio.to_thread(
        _commands(request).submit_quote,
        idempotency_key,
        session_id,
        body.model_dump(mode="json"),
    )
    return _respond(result)


@router.post("/sweep")
async def sweep(
    request: Request,
    body: SweepRequest | None = None,
    idempotency_key: IdempotencyKey = None,
) -> JSONResponse:
    """Time out overdue sessions now (or at a simulated ``now``)."""
    now = body.now if body is not None else None
    result = await asyncio.to_thread(_commands(request).sweep, idempotency_key, now)
    return _respond(result)


# ----------------------------------------------------------------------
# Agent registry
# ----------------------------------------------------------------------


@router.get("/registry")
async def list_agents(request: Request) -> dict[str, Any]:
    return await asyncio.to_thread(_commands(request).list_agents)


@router.get("/registry/{agent_type}")
async def get_agent(agent_type: str, request: Request) -> dict[str, Any]:
    """Effective policy, falling back to the defaults when unregistered."""
    return await asyncio.to_thread(_commands(request).get_agent, agent_type)


@router.patch("/registry/{agent_type}")
async def update_agent(
    agent_type: str,
    body: UpdateAgentConfigRequest,
    request: Request,
    idempotency_key: IdempotencyKey = None,
    actor_id: ActorId = None,
) -> JSONResponse:
    result = await asyncio.to_thread(
        _commands(request).update_agent,
        idempotency_key,
        agent_type,
        body.model_dump(mode="json", exclude_unset=True),
        actor_id,
    )
    return _respond(result)


# ----------------------------------------------------------------------
# Ledger
# ----------------------------------------------------------------------


@router.post("/ledger/accounts")
async def open_account(
    body: OpenAccountRequest,
    request: Request,
    idempotency_key: IdempotencyKey = None,
) -> JSONResponse:
    result = await asyncio.to_thread(
        _commands(request).open_account, idempotency_key, body.model_dump(mode="json")
    )
    return _respond(result)


@router.get("/ledger/accounts/{profile_id}")
async def get_account(
    profile_id: str,
    request: Request,
    entries_limit: Annotated[int, Query(ge=1, le=200)] = 20,
) -> dict[str, Any]:
    return await asyncio.to_thread(_commands(request).get_account, profile_id, entries_limit)


@router.post("/ledger/transfers")
async def transfer(
    body: TransferRequest,
    request: Request,
    idempotency_key: IdempotencyKey = None,
    actor_id: ActorId = None,
) -> JSONResponse:
    result = await asyncio.to_thread(
        _commands(request).transfer,
        idempotency_key,
        body.model_dump(mode="json"),
        actor_id,
    )
    return _respond(result)
