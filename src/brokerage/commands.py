"""Structured command surface over the engine.

Each mutating command goes through the idempotency gateway and comes back as
a :class:`CommandResult`: an HTTP-style status code plus a JSON-ready body.
Domain errors become error results (and are therefore stored and replayed
like any other response); anything else propagates.

The HTTP layer is a thin adapter over this module, and a messaging
front-end can call it directly with the same semantics.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from brokerage.audit.logger import AuditLogger
from brokerage.domain.errors import BrokerageError, ValidationError
from brokerage.domain.models import (
    AgentConfig,
    LedgerAccount,
    Payload,
    Quote,
    Session,
    VendorMeta,
)
from brokerage.domain.types import FlowType, SessionStatus, VendorType
from brokerage.idempotency.gateway import CommandResult, IdempotencyGateway
from brokerage.ledger.ledger import Ledger
from brokerage.registry.store import AgentRegistry
from brokerage.sessions.engine import SessionEngine
from brokerage.state.serializers import format_timestamp, utc_now
from brokerage.sweeper.sweeper import DeadlineSweeper

logger = structlog.get_logger()


def error_result(exc: BrokerageError) -> CommandResult:
    """Render a domain error as a response."""
    return CommandResult(
        status_code=exc.status_code,
        body={"error": exc.code, "message": str(exc)},
    )


def session_view(session: Session, now: datetime) -> dict[str, Any]:
    """JSON view of a session including the requester-facing countdown."""
    view = session.model_dump(mode="json")
    view["seconds_remaining"] = session.seconds_remaining(now)
    view["is_terminal"] = session.is_terminal
    return view


def quote_view(quote: Quote) -> dict[str, Any]:
    return quote.model_dump(mode="json")


def account_view(account: LedgerAccount) -> dict[str, Any]:
    return account.model_dump(mode="json")


def payload_from_request(value: Any) -> Payload:
    """Accept either a bare dict or a ``{schema_version, data}`` envelope.

    Raises:
        ValidationError: If *value* is neither.
    """
    if value is None:
        return Payload()
    if not isinstance(value, dict):
        raise ValidationError("payload must be a JSON object")
    if "data" in value and set(value) <= {"schema_version", "data"}:
        try:
            return Payload.model_validate(value)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid payload envelope: {exc.errors()}") from None
    return Payload(data=value)


def resolve_update_intent(payload: dict[str, Any]) -> str:
    """Work out which single intent a session update payload carries.

    ``selected_quote_id`` selects, optionally alongside
    ``status="completed"``; ``status="cancelled"`` or a bare
    ``cancellation_reason`` cancels; ``extend_deadline=true`` extends and
    ``status="presenting"`` presents.

    Raises:
        ValidationError: Zero or several intents, or an unsupported status.
    """
    intents: list[str] = []
    status = payload.get("status")
    quote_id = payload.get("selected_quote_id")

    if status == SessionStatus.COMPLETED and not quote_id:
        raise ValidationError("status 'completed' requires selected_quote_id")
    if quote_id:
        intents.append("select")
    if status == SessionStatus.CANCELLED or (
        status is None and payload.get("cancellation_reason")
    ):
        intents.append("cancel")
    if payload.get("extend_deadline"):
        intents.append("extend")
    if status == SessionStatus.PRESENTING:
        intents.append("present")

    settable = (SessionStatus.CANCELLED, SessionStatus.PRESENTING, SessionStatus.COMPLETED)
    if status is not None and status not in settable:
        raise ValidationError(
            f"status can only be set to cancelled, presenting or completed, not '{status}'"
        )
    if not intents:
        raise ValidationError("no update requested")
    if len(intents) > 1:
        raise ValidationError(f"exactly one update per request, got {', '.join(intents)}")
    return intents[0]


class CommandService:
    """Idempotent commands and plain queries over the brokerage engine.

    Args:
        engine: The session engine.
        ledger: The token ledger.
        gateway: Idempotency gateway fronting every mutating command.
        sweeper: Deadline sweeper, for on-demand sweeps and expiry lists.
        registry: Agent registry, for reading and editing agent policies.
        audit: Audit trail sink for wallet operations.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        engine: SessionEngine,
        ledger: Ledger,
        gateway: IdempotencyGateway,
        sweeper: DeadlineSweeper,
        registry: AgentRegistry,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = engine
        self._ledger = ledger
        self._gateway = gateway
        self._sweeper = sweeper
        self._registry = registry
        self._audit = audit
        self._clock = clock

    def _dispatch(
        self,
        key: str | None,
        scope: str,
        payload: dict[str, Any],
        action: Callable[[], dict[str, Any]],
        success_status: int = 200,
    ) -> CommandResult:
        def _operation() -> CommandResult:
            try:
                return CommandResult(status_code=success_status, body=action())
            except BrokerageError as exc:
                logger.info("command_rejected", scope=scope, error=exc.code, detail=str(exc))
                return error_result(exc)

        return self._gateway.execute(key, scope, payload, _operation)

    # ------------------------------------------------------------------
    # Session commands
    # ------------------------------------------------------------------

    def create_session(self, key: str | None, payload: dict[str, Any]) -> CommandResult:
        """Open a session; responds 201 with its id and deadline."""

        def _create() -> dict[str, Any]:
            session = self._engine.create_session(
                requester_id=payload.get("requester_id", ""),
                flow_type=payload.get("flow_type", ""),
                agent_type=payload.get("agent_type", ""),
                request_data=payload_from_request(payload.get("request_data")),
                sla_minutes=payload.get("sla_minutes"),
                metadata=payload.get("metadata"),
            )
            return {
                "session_id": session.id,
                "deadline_at": format_timestamp(session.deadline_at),
                "session": session_view(session, self._clock()),
            }

        return self._dispatch(key, "create_session", payload, _create, success_status=201)

    def submit_quote(
        self, key: str | None, session_id: str, payload: dict[str, Any]
    ) -> CommandResult:
        """Record a vendor quote; responds 201 with the quote id and status."""

        def _submit() -> dict[str, Any]:
            expires_at = payload.get("expires_at")
            if isinstance(expires_at, str):
                try:
                    expires_at = datetime.fromisoformat(expires_at)
                except ValueError:
                    raise ValidationError(f"expires_at '{expires_at}' is not ISO 8601") from None
            try:
                vendor_type = VendorType(payload.get("vendor_type") or VendorType.OTHER)
            except ValueError:
                raise ValidationError(f"unknown vendor_type '{payload.get('vendor_type')}'") from None
            quote = self._engine.submit_quote(
                session_id,
                vendor_contact=payload.get("vendor_contact", ""),
                vendor_meta=VendorMeta(
                    vendor_id=payload.get("vendor_id"),
                    vendor_type=vendor_type,
                    vendor_name=payload.get("vendor_name"),
                ),
                offer=payload_from_request(payload.get("offer_data")),
                ranking_score=payload.get("ranking_score"),
                expires_at=expires_at,
            )
            return {
                "quote_id": quote.id,
                "session_id": quote.session_id,
                "status": quote.status.value,
                "quote": quote_view(quote),
            }

        return self._dispatch(
            key,
            "submit_quote",
            {"session_id": session_id, **payload},
            _submit,
            success_status=201,
        )

    def update_session(
        self,
        key: str | None,
        session_id: str,
        payload: dict[str, Any],
        actor: str | None = None,
    ) -> CommandResult:
        """Apply exactly one of select / cancel / extend / present."""

        def _update() -> dict[str, Any]:
            intent = resolve_update_intent(payload)
            if intent == "select":
                session = self._engine.select_quote(
                    session_id, payload["selected_quote_id"], actor=actor
                )
            elif intent == "cancel":
                session = self._engine.cancel(
                    session_id, payload.get("cancellation_reason"), actor=actor
                )
            elif intent == "extend":
                session = self._engine.extend_deadline(session_id, actor=actor)
            else:
                session = self._engine.present(session_id, actor=actor)
            return {"session": session_view(session, self._clock())}

        return self._dispatch(
            key, "update_session", {"session_id": session_id, **payload}, _update
        )

    def sweep(self, key: str | None, now: datetime | None = None) -> CommandResult:
        """Run the timeout sweep once, optionally at a simulated *now*."""

        if now is not None and now.tzinfo is None:
            now = now.replace(tzinfo=UTC)

        def _sweep() -> dict[str, Any]:
            return {"transitioned": self._sweeper.sweep_expired(now)}

        payload = {"now": format_timestamp(now) if now else None}
        return self._dispatch(key, "sweep", payload, _sweep)

    # ------------------------------------------------------------------
    # Agent registry
    # ------------------------------------------------------------------

    def update_agent(
        self,
        key: str | None,
        agent_type: str,
        payload: dict[str, Any],
        actor: str | None = None,
    ) -> CommandResult:
        """Merge *payload* onto the agent's current policy and save it.

        Unregistered agent types start from the settings defaults, so the
        first update registers them.
        """

        def _update() -> dict[str, Any]:
            current = self._registry.get(agent_type)
            try:
                config = AgentConfig.model_validate(
                    {**current.model_dump(), **payload, "agent_type": agent_type}
                )
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid agent config: {exc.errors()}") from None
            saved = self._registry.upsert(config)
            logger.info("agent_config_updated", agent_type=agent_type, actor=actor)
            return {"agent": saved.model_dump(mode="json")}

        return self._dispatch(
            key, "update_agent", {"agent_type": agent_type, **payload}, _update
        )

    # ------------------------------------------------------------------
    # Ledger commands
    # ------------------------------------------------------------------

    def open_account(self, key: str | None, payload: dict[str, Any]) -> CommandResult:
        def _open() -> dict[str, Any]:
            account = self._ledger.open_account(
                payload.get("profile_id", ""),
                initial_balance=payload.get("initial_balance", 0),
            )
            return {"account": account_view(account)}

        return self._dispatch(key, "open_account", payload, _open, success_status=201)

    def transfer(
        self, key: str | None, payload: dict[str, Any], actor: str | None = None
    ) -> CommandResult:
        """Move tokens between two accounts."""

        def _transfer() -> dict[str, Any]:
            from_profile = payload.get("from_profile_id", "")
            to_profile = payload.get("to_profile_id", "")
            amount = payload.get("amount")
            reason = payload.get("reason") or "transfer"
            result = self._ledger.transfer(
                from_profile, to_profile, amount, reason, payload.get("metadata")
            )
            if self._audit is not None:
                self._audit.log_ledger_transfer(from_profile, to_profile, amount, reason, actor)
            return result.model_dump(mode="json")

        return self._dispatch(key, "transfer", payload, _transfer)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> dict[str, Any]:
        """Session with its quotes ranked best-first."""
        session, quotes = self._engine.get_detail(session_id)
        return {
            "session": session_view(session, self._clock()),
            "quotes": [quote_view(q) for q in quotes],
        }

    def list_sessions(
        self,
        status: SessionStatus | None = None,
        flow_type: FlowType | None = None,
        agent_type: str | None = None,
        requester_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        now = self._clock()
        sessions = self._engine.list_sessions(
            status=status,
            flow_type=flow_type,
            agent_type=agent_type,
            requester_id=requester_id,
            limit=limit,
            offset=offset,
        )
        return {"sessions": [session_view(s, now) for s in sessions], "limit": limit, "offset": offset}

    def kpis(self, agent_type: str | None = None) -> dict[str, Any]:
        return self._engine.kpis(agent_type)

    def list_expiring(self, within_minutes: int | None = None) -> dict[str, Any]:
        return {"sessions": self._sweeper.list_expiring(within_minutes)}

    def get_account(self, profile_id: str, entries_limit: int = 20) -> dict[str, Any]:
        account = self._ledger.get_account(profile_id)
        entries = self._ledger.list_entries(profile_id, limit=entries_limit)
        return {
            "account": account_view(account),
            "entries": [entry.model_dump(mode="json") for entry in entries],
        }

    def list_agents(self) -> dict[str, Any]:
        """Every registered agent policy, ordered by agent type."""
        return {"agents": [c.model_dump(mode="json") for c in self._registry.list_all()]}

    def get_agent(self, agent_type: str) -> dict[str, Any]:
        """The effective policy for *agent_type* (defaults when unregistered)."""
        return {"agent": self._registry.get(agent_type).model_dump(mode="json")}
