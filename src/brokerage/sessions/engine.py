"""Session engine: the negotiation lifecycle over the session and quote stores.

Every state-changing operation follows the same shape:

1. read a snapshot of the session,
2. check the guards and ask the state machine where the event leads,
3. write the result with :meth:`SessionStore.compare_and_set`, which only
   succeeds if the row still matches the snapshot.

Two actors deciding from the same snapshot (a requester selecting a quote
and the sweeper timing the session out) therefore cannot both win; the
loser gets :class:`StateConflictError` and should re-read the session.

An unexpected fault inside a transition moves the session to ``error`` and
is re-raised, so no session is left active with nobody driving it.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import structlog

from brokerage.audit.logger import AuditLogger
from brokerage.domain.errors import (
    BrokerageError,
    ExtensionLimitError,
    NotFoundError,
    SessionNotActiveError,
    StateConflictError,
    ValidationError,
)
from brokerage.domain.models import Payload, Quote, Session, VendorMeta
from brokerage.domain.types import SELECTABLE_QUOTE_STATUSES, FlowType, SessionStatus
from brokerage.observability.metrics import ACTIVE_SESSIONS, SESSIONS_FINISHED, STATE_CONFLICTS
from brokerage.quotes.store import QuoteStore
from brokerage.registry.store import AgentRegistry
from brokerage.sessions.store import SessionStore
from brokerage.settlement.engine import SettlementEngine
from brokerage.state.db import Database
from brokerage.state.serializers import format_timestamp, utc_now
from brokerage.state_machine.machine import SessionStateMachine
from brokerage.state_machine.transitions import SessionEvent

logger = structlog.get_logger()

T = TypeVar("T")

MAX_SLA_MINUTES = 24 * 60


def _as_payload(value: Payload | dict[str, Any] | None) -> Payload:
    if value is None:
        return Payload()
    if isinstance(value, Payload):
        return value
    return Payload(data=value)


class SessionEngine:
    """Create sessions and drive them through their lifecycle.

    Args:
        db: The engine database.
        sessions: Session persistence with guarded transitions.
        quotes: Quote persistence.
        registry: Per agent-type policy (SLA, extensions, fan-out).
        settlement: Commission settlement run after a successful selection.
        audit: Audit trail sink.
        extension_minutes: How far each extension pushes the deadline.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        db: Database,
        sessions: SessionStore,
        quotes: QuoteStore,
        registry: AgentRegistry,
        settlement: SettlementEngine | None = None,
        audit: AuditLogger | None = None,
        extension_minutes: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if extension_minutes < 1:
            raise ValueError("extension_minutes must be at least 1")
        self._db = db
        self._sessions = sessions
        self._quotes = quotes
        self._registry = registry
        self._settlement = settlement
        self._audit = audit
        self._extension = timedelta(minutes=extension_minutes)
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_session(
        self,
        requester_id: str,
        flow_type: FlowType | str,
        agent_type: str,
        request_data: Payload | dict[str, Any] | None = None,
        sla_minutes: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Open a new ``searching`` session with a deadline.

        Args:
            requester_id: The (pre-authorized) requester.
            flow_type: Which negotiation flow this session runs.
            agent_type: Registry key selecting the negotiation policy.
            request_data: Opaque request payload.
            sla_minutes: Negotiation window; defaults to the agent's SLA.
            metadata: Free-form context; ``broker_id`` and
                ``commission_tokens`` drive settlement.

        Raises:
            ValidationError: On malformed input, a disabled agent, or when
                the requester already has an active session for the flow.
        """
        if not requester_id or not requester_id.strip():
            raise ValidationError("requester_id must not be empty")
        if not agent_type or not agent_type.strip():
            raise ValidationError("agent_type must not be empty")
        try:
            flow = FlowType(flow_type)
        except ValueError:
            raise ValidationError(f"unknown flow_type '{flow_type}'") from None

        config = self._registry.get(agent_type)
        if not config.enabled:
            raise ValidationError(f"agent '{agent_type}' is disabled")

        if sla_minutes is None:
            sla_minutes = config.sla_minutes
        if isinstance(sla_minutes, bool) or not isinstance(sla_minutes, int):
            raise ValidationError("sla_minutes must be an integer")
        if not 1 <= sla_minutes <= MAX_SLA_MINUTES:
            raise ValidationError(f"sla_minutes must be within 1..{MAX_SLA_MINUTES}")

        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            requester_id=requester_id,
            flow_type=flow,
            agent_type=agent_type,
            status=SessionStatus.SEARCHING,
            request_data=_as_payload(request_data),
            metadata=metadata or {},
            started_at=now,
            deadline_at=now + timedelta(minutes=sla_minutes),
            max_extensions=config.max_extensions,
        )

        with self._db.transaction() as conn:
            existing = self._sessions.find_active(conn, requester_id, flow)
            if existing is not None:
                raise ValidationError(
                    f"requester already has active session '{existing.id}' for {flow}"
                )
            self._sessions.insert(conn, session)

        ACTIVE_SESSIONS.inc()
        logger.info(
            "session_created",
            session_id=session.id,
            requester_id=requester_id,
            flow_type=flow.value,
            agent_type=agent_type,
            deadline_at=format_timestamp(session.deadline_at),
        )
        if self._audit is not None:
            self._audit.log_session_created(
                session_id=session.id,
                requester_id=requester_id,
                flow_type=flow.value,
                agent_type=agent_type,
                deadline_at=format_timestamp(session.deadline_at),
            )
        return self._sessions.get(session.id)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def submit_quote(
        self,
        session_id: str,
        vendor_contact: str,
        vendor_meta: VendorMeta | None = None,
        offer: Payload | dict[str, Any] | None = None,
        ranking_score: float | None = None,
        expires_at: datetime | None = None,
    ) -> Quote:
        """Record a vendor's offer on an active session.

        The first quote moves a ``searching`` session to ``negotiating``.  A
        repeat submission from the same vendor contact updates that vendor's
        quote as a counter-offer.

        Raises:
            ValidationError: Empty contact, or the agent's fan-out limit is
                reached by a new vendor.
            NotFoundError: Unknown session.
            SessionNotActiveError: Session is terminal or past its deadline.
            DuplicateVendorError: The vendor's existing quote is final.
        """
        if not vendor_contact or not vendor_contact.strip():
            raise ValidationError("vendor_contact must not be empty")
        meta = vendor_meta or VendorMeta()
        payload = _as_payload(offer)

        def _submit() -> tuple[Quote, Session, Session]:
            with self._db.transaction() as conn:
                session = self._sessions.get(session_id, conn)
                self._require_open(session, self._clock())

                if not self._quotes.has_vendor(conn, session_id, vendor_contact):
                    limit = self._registry.get(session.agent_type).fan_out_limit
                    if self._quotes.count_vendors(conn, session_id) >= limit:
                        raise ValidationError(
                            f"session '{session_id}' reached its limit of {limit} vendors"
                        )

                quote, _created = self._quotes.upsert(
                    conn,
                    session_id,
                    vendor_contact,
                    meta,
                    payload,
                    ranking_score=ranking_score,
                    expires_at=expires_at,
                )

                updated = session
                if session.status is SessionStatus.SEARCHING:
                    target = self._next_state(session, SessionEvent.RECEIVE_QUOTE)
                    if not self._sessions.compare_and_set(
                        conn,
                        session,
                        {"status": target},
                        SessionEvent.RECEIVE_QUOTE,
                        actor=vendor_contact,
                    ):
                        raise StateConflictError(session_id, "submit_quote")
                    updated = session.model_copy(update={"status": target})
            return quote, session, updated

        quote, before, after = self._guarded(session_id, "submit_quote", _submit)

        if self._audit is not None:
            self._audit.log_quote_received(
                session_id=session_id,
                quote_id=quote.id,
                vendor_contact=quote.vendor_contact,
                quote_status=quote.status.value,
                session_status=after.status.value,
            )
            if after.status is not before.status:
                self._audit.log_state_transition(
                    session_id=session_id,
                    from_state=before.status.value,
                    to_state=after.status.value,
                    event=SessionEvent.RECEIVE_QUOTE.value,
                    actor=quote.vendor_contact,
                )
        return quote

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def select_quote(self, session_id: str, quote_id: str, actor: str | None = None) -> Session:
        """Complete the session with the chosen quote, then settle.

        Settlement runs after the completion has committed; its failure
        leaves the session ``completed`` and the commission ``due``.

        Raises:
            NotFoundError: Unknown session, or the quote is not in it.
            SessionNotActiveError: Session is terminal or past its deadline.
            ValidationError: The quote can no longer be selected.
            StateConflictError: Another transition landed first.
        """
        snapshot = self._sessions.get(session_id)
        now = self._clock()
        self._require_open(snapshot, now)
        if snapshot.selected_quote_id is not None:
            raise StateConflictError(session_id, "select_quote")

        quote = self._quotes.get(quote_id)
        if quote.session_id != session_id:
            raise NotFoundError("quote", quote_id)
        if quote.status not in SELECTABLE_QUOTE_STATUSES:
            raise ValidationError(f"quote '{quote_id}' is {quote.status} and cannot be selected")

        target = self._next_state(snapshot, SessionEvent.SELECT_QUOTE)

        def _select() -> Session:
            with self._db.transaction() as conn:
                if not self._sessions.compare_and_set(
                    conn,
                    snapshot,
                    {"status": target, "selected_quote_id": quote_id, "completed_at": now},
                    SessionEvent.SELECT_QUOTE,
                    actor=actor,
                    require_no_selection=True,
                ):
                    raise StateConflictError(session_id, "select_quote")
                if not self._quotes.mark_accepted(conn, session_id, quote_id):
                    # The quote expired or changed between the read and the write.
                    raise StateConflictError(session_id, "select_quote")
            return self._sessions.get(session_id)

        session = self._guarded(session_id, "select_quote", _select)
        self._finished(snapshot, session, SessionEvent.SELECT_QUOTE, actor, quote_id=quote_id)
        self._settle(session, quote_id)
        return session

    def _settle(self, session: Session, quote_id: str) -> None:
        """Settle a completed session; failures are logged, never raised."""
        if self._settlement is None:
            return
        try:
            self._settlement.settle(session, self._quotes.get(quote_id))
        except Exception as exc:
            logger.exception(
                "settlement_failed_after_completion", session_id=session.id, quote_id=quote_id
            )
            if self._audit is not None:
                self._audit.log_error(session.id, str(exc), "settle")

    def extend_deadline(self, session_id: str, actor: str | None = None) -> Session:
        """Push the deadline forward by one extension increment.

        Raises:
            SessionNotActiveError: Session is terminal.
            ExtensionLimitError: All extensions are used; the deadline is
                left unchanged.
            StateConflictError: Another transition landed first.
        """
        snapshot = self._sessions.get(session_id)
        if snapshot.is_terminal:
            raise SessionNotActiveError(session_id, snapshot.status)
        if snapshot.extensions_count >= snapshot.max_extensions:
            raise ExtensionLimitError(session_id, snapshot.status, snapshot.max_extensions)

        target = self._next_state(snapshot, SessionEvent.EXTEND)
        new_deadline = snapshot.deadline_at + self._extension

        def _extend() -> Session:
            with self._db.transaction() as conn:
                if not self._sessions.compare_and_set(
                    conn,
                    snapshot,
                    {
                        "status": target,
                        "deadline_at": new_deadline,
                        "extensions_count": snapshot.extensions_count + 1,
                    },
                    SessionEvent.EXTEND,
                    actor=actor,
                ):
                    raise StateConflictError(session_id, "extend_deadline")
            return self._sessions.get(session_id)

        session = self._guarded(session_id, "extend_deadline", _extend)
        logger.info(
            "session_deadline_extended",
            session_id=session_id,
            extensions_count=session.extensions_count,
            deadline_at=format_timestamp(session.deadline_at),
        )
        if self._audit is not None:
            self._audit.log_deadline_extended(
                session_id=session_id,
                extensions_count=session.extensions_count,
                deadline_at=format_timestamp(session.deadline_at),
                actor=actor,
            )
        return session

    def cancel(self, session_id: str, reason: str | None = None, actor: str | None = None) -> Session:
        """Cancel an active session.

        Raises:
            SessionNotActiveError: Session is already terminal.
            StateConflictError: Another transition landed first.
        """
        snapshot = self._sessions.get(session_id)
        if snapshot.is_terminal:
            raise SessionNotActiveError(session_id, snapshot.status)
        return self._finish(
            snapshot,
            SessionEvent.CANCEL,
            {"cancellation_reason": reason or "cancelled by requester"},
            actor=actor,
            reason=reason,
        )

    def present(self, session_id: str, actor: str | None = None) -> Session:
        """Mark that the collected quotes are being shown to the requester.

        Raises:
            SessionNotActiveError: Session is terminal.
            InvalidTransitionError: Session is not ``negotiating``.
            StateConflictError: Another transition landed first.
        """
        snapshot = self._sessions.get(session_id)
        if snapshot.is_terminal:
            raise SessionNotActiveError(session_id, snapshot.status)
        target = self._next_state(snapshot, SessionEvent.PRESENT)

        def _present() -> Session:
            with self._db.transaction() as conn:
                if not self._sessions.compare_and_set(
                    conn, snapshot, {"status": target}, SessionEvent.PRESENT, actor=actor
                ):
                    raise StateConflictError(session_id, "present")
            return self._sessions.get(session_id)

        session = self._guarded(session_id, "present", _present)
        if self._audit is not None:
            self._audit.log_state_transition(
                session_id=session_id,
                from_state=snapshot.status.value,
                to_state=session.status.value,
                event=SessionEvent.PRESENT.value,
                actor=actor,
            )
        return session

    def expire(self, session_id: str, now: datetime | None = None) -> Session:
        """Time the session out if its deadline has passed.

        Used by the deadline sweeper; *now* defaults to the engine clock.

        Raises:
            SessionNotActiveError: Session is already terminal.
            ValidationError: The deadline has not passed yet.
            StateConflictError: Another transition landed first.
        """
        now = now or self._clock()
        snapshot = self._sessions.get(session_id)
        if snapshot.is_terminal:
            raise SessionNotActiveError(session_id, snapshot.status)
        if not snapshot.deadline_passed(now):
            raise ValidationError(f"session '{session_id}' deadline has not passed")
        return self.expire_snapshot(snapshot, now)

    def expire_snapshot(self, snapshot: Session, now: datetime) -> Session:
        """Apply the ``timeout`` transition decided from *snapshot*."""
        return self._finish(snapshot, SessionEvent.TIMEOUT, {}, actor="sweeper", completed_at=now)

    def fail(self, session_id: str, message: str, actor: str | None = None) -> Session | None:
        """Move an active session to ``error``.

        Re-reads and retries a few times if concurrent transitions keep
        winning.

        Returns:
            The failed session, or ``None`` if it was already terminal.
        """
        for _attempt in range(3):
            snapshot = self._sessions.get(session_id)
            if snapshot.is_terminal:
                return None
            try:
                return self._finish(
                    snapshot,
                    SessionEvent.FAIL,
                    {"error_message": message[:1000]},
                    actor=actor,
                    reason=message,
                    guard_faults=False,
                )
            except StateConflictError:
                continue
        logger.warning("session_fail_abandoned", session_id=session_id)
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        return self._sessions.get(session_id)

    def get_detail(self, session_id: str) -> tuple[Session, list[Quote]]:
        """Return the session and its quotes ranked best-first."""
        session = self._sessions.get(session_id)
        return session, self._quotes.rank(session_id)

    def list_sessions(self, **filters: Any) -> list[Session]:
        """List sessions; see :meth:`SessionStore.list_sessions` for filters."""
        return self._sessions.list_sessions(**filters)

    def kpis(self, agent_type: str | None = None) -> dict[str, Any]:
        return self._sessions.kpis(agent_type)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _next_state(session: Session, event: SessionEvent) -> SessionStatus:
        return SessionStateMachine.from_snapshot(session.status).peek(event)

    @staticmethod
    def _require_open(session: Session, now: datetime) -> None:
        if session.is_terminal:
            raise SessionNotActiveError(session.id, session.status)
        if session.deadline_passed(now):
            raise SessionNotActiveError(session.id, session.status, reason="deadline has passed")

    def _finish(
        self,
        snapshot: Session,
        event: SessionEvent,
        updates: dict[str, Any],
        actor: str | None = None,
        reason: str | None = None,
        completed_at: datetime | None = None,
        guard_faults: bool = True,
    ) -> Session:
        """Apply a transition into a terminal state other than ``completed``."""
        target = self._next_state(snapshot, event)
        operation = event.value

        def _write() -> Session:
            with self._db.transaction() as conn:
                if not self._sessions.compare_and_set(
                    conn,
                    snapshot,
                    {"status": target, "completed_at": completed_at or self._clock(), **updates},
                    event,
                    actor=actor,
                ):
                    raise StateConflictError(snapshot.id, operation)
            return self._sessions.get(snapshot.id)

        session = self._guarded(snapshot.id, operation, _write) if guard_faults else _write()
        self._finished(snapshot, session, event, actor, reason=reason)
        return session

    def _finished(
        self,
        before: Session,
        after: Session,
        event: SessionEvent,
        actor: str | None,
        quote_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        ACTIVE_SESSIONS.dec()
        SESSIONS_FINISHED.labels(status=after.status.value).inc()
        logger.info(
            "session_finished",
            session_id=after.id,
            status=after.status.value,
            transition=event.value,
            actor=actor,
        )
        if self._audit is not None:
            self._audit.log_state_transition(
                session_id=after.id,
                from_state=before.status.value,
                to_state=after.status.value,
                event=event.value,
                actor=actor,
                quote_id=quote_id,
                reason=reason,
            )

    def _guarded(self, session_id: str, operation: str, action: Callable[[], T]) -> T:
        """Run *action*; turn unexpected faults into an ``error`` session.

        Domain errors pass through untouched.  Lost races are counted.
        """
        try:
            return action()
        except StateConflictError:
            STATE_CONFLICTS.labels(operation=operation).inc()
            logger.info("session_state_conflict", session_id=session_id, operation=operation)
            raise
        except BrokerageError:
            raise
        except Exception as exc:
            logger.exception("session_transition_fault", session_id=session_id, operation=operation)
            if self._audit is not None:
                self._audit.log_error(session_id, str(exc), operation)
            try:
                self.fail(session_id, f"{operation} failed: {exc}", actor="engine")
            except Exception:
                logger.exception("session_fail_transition_failed", session_id=session_id)
            raise
