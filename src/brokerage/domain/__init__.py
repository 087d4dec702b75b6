"""Domain types, models, and errors for the session brokerage engine."""

from brokerage.domain.errors import (
    BrokerageError,
    DuplicateVendorError,
    ExtensionLimitError,
    IdempotencyKeyReusedError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    SessionNotActiveError,
    StateConflictError,
    ValidationError,
)
from brokerage.domain.models import (
    AgentConfig,
    CommissionRecord,
    IdempotencyRecord,
    LedgerAccount,
    LedgerEntry,
    Payload,
    Quote,
    Session,
    SessionTransition,
    TransferResult,
    VendorMeta,
)
from brokerage.domain.types import (
    CommissionStatus,
    FlowType,
    QuoteStatus,
    SessionStatus,
    VendorType,
)

__all__ = [
    "AgentConfig",
    "BrokerageError",
    "CommissionRecord",
    "CommissionStatus",
    "DuplicateVendorError",
    "ExtensionLimitError",
    "FlowType",
    "IdempotencyKeyReusedError",
    "IdempotencyRecord",
    "InsufficientBalanceError",
    "InvalidTransitionError",
    "LedgerAccount",
    "LedgerEntry",
    "NotFoundError",
    "Payload",
    "Quote",
    "QuoteStatus",
    "Session",
    "SessionNotActiveError",
    "SessionStatus",
    "SessionTransition",
    "StateConflictError",
    "TransferResult",
    "ValidationError",
    "VendorMeta",
    "VendorType",
]
