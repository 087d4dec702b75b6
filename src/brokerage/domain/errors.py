"""Domain-specific exception classes for the session brokerage engine.

Each error carries a stable ``code`` string used by the command layer when
the error is turned into a stored (and replayable) response, and an HTTP
``status_code`` used by the API layer.
"""

from brokerage.domain.types import SessionStatus


class BrokerageError(Exception):
    """Base class for all domain errors in the brokerage engine."""

    code: str = "brokerage_error"
    status_code: int = 400


class ValidationError(BrokerageError):
    """Raised when input is malformed; no state has been changed."""

    code = "invalid_payload"
    status_code = 422


class NotFoundError(BrokerageError):
    """Raised when a session, quote, or ledger profile does not exist.

    Attributes:
        kind: The kind of entity that was looked up (``"session"``, ...).
        identifier: The identifier that was not found.
    """

    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


class DuplicateVendorError(BrokerageError):
    """Raised when a vendor contact already holds a quote in the session.

    The quote store resolves this by upserting, so callers only see it when
    the upsert itself cannot be applied (e.g. the existing quote is final).
    """

    code = "duplicate_vendor"
    status_code = 409

    def __init__(self, session_id: str, vendor_contact: str) -> None:
        self.session_id = session_id
        self.vendor_contact = vendor_contact
        super().__init__(
            f"Vendor '{vendor_contact}' already has a final quote in session '{session_id}'"
        )


class SessionNotActiveError(BrokerageError):
    """Raised when an operation targets a terminal or deadline-passed session.

    Attributes:
        session_id: The session the operation targeted.
        status: The session status observed at the time of the attempt.
    """

    code = "session_not_active"
    status_code = 409

    def __init__(self, session_id: str, status: SessionStatus, reason: str = "") -> None:
        self.session_id = session_id
        self.status = status
        self.reason = reason or f"session is {status}"
        super().__init__(f"Session '{session_id}' is no longer active: {self.reason}")


class ExtensionLimitError(SessionNotActiveError):
    """Raised when a session has used all of its deadline extensions."""

    code = "extension_limit_reached"

    def __init__(self, session_id: str, status: SessionStatus, max_extensions: int) -> None:
        self.max_extensions = max_extensions
        super().__init__(
            session_id,
            status,
            reason=f"maximum of {max_extensions} extensions reached",
        )


class StateConflictError(BrokerageError):
    """Raised when a guarded write lost the race to a concurrent transition.

    Callers should re-read the session instead of retrying blindly; another
    actor has already moved it.
    """

    code = "state_conflict"
    status_code = 409

    def __init__(self, session_id: str, operation: str) -> None:
        self.session_id = session_id
        self.operation = operation
        super().__init__(
            f"Session '{session_id}' changed concurrently during '{operation}'"
        )


class InsufficientBalanceError(BrokerageError):
    """Raised when a ledger debit would take a balance below zero."""

    code = "insufficient_balance"
    status_code = 402

    def __init__(self, profile_id: str, balance: int, delta: int) -> None:
        self.profile_id = profile_id
        self.balance = balance
        self.delta = delta
        super().__init__(
            f"Profile '{profile_id}' balance {balance} cannot absorb delta {delta}"
        )


class InvalidTransitionError(BrokerageError):
    """Raised when an event is not allowed from the current session state.

    Attributes:
        current_state: The state the session was in when the event was applied.
        event: The event that was rejected.
    """

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current_state: SessionStatus, event: str) -> None:
        self.current_state = current_state
        self.event = event
        super().__init__(f"Cannot apply event '{event}' in state '{current_state}'")


class IdempotencyKeyReusedError(ValidationError):
    """Raised when an idempotency key is replayed with a different request."""

    code = "idempotency_key_reused"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(
            f"Idempotency key '{key}' was already used for a different request"
        )
