"""Pydantic v2 models for the brokerage data model.

Sessions and quotes are rebuilt from storage rows on every read; the models
are frozen so an instance always reflects exactly one observed snapshot.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from brokerage.domain.types import (
    CommissionStatus,
    FlowType,
    QuoteStatus,
    SessionStatus,
    VendorType,
)

PAYLOAD_SCHEMA_VERSION = 1


class Payload(BaseModel):
    """Opaque, versioned blob owned by the caller.

    The engine stores and returns ``data`` untouched; it never inspects it.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: int = PAYLOAD_SCHEMA_VERSION
    data: dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    """One bounded negotiation between a requester and fan-out vendors."""

    model_config = ConfigDict(frozen=True)

    id: str
    requester_id: str
    flow_type: FlowType
    agent_type: str
    status: SessionStatus = SessionStatus.SEARCHING
    request_data: Payload = Field(default_factory=Payload)
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    deadline_at: datetime
    extensions_count: int = 0
    max_extensions: int = 2
    selected_quote_id: str | None = None
    cancellation_reason: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def deadline_must_follow_start(self) -> "Session":
        """Ensure deadline_at is strictly after started_at."""
        if self.deadline_at <= self.started_at:
            raise ValueError(
                f"deadline_at ({self.deadline_at}) must be after started_at ({self.started_at})"
            )
        return self

    @model_validator(mode="after")
    def extensions_within_bounds(self) -> "Session":
        """Ensure 0 <= extensions_count <= max_extensions."""
        if self.max_extensions < 0:
            raise ValueError("max_extensions must not be negative")
        if not 0 <= self.extensions_count <= self.max_extensions:
            raise ValueError(
                f"extensions_count ({self.extensions_count}) must be within "
                f"0..{self.max_extensions}"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        """Return True once the session can no longer change status."""
        from brokerage.state_machine.transitions import TERMINAL_STATES

        return self.status in TERMINAL_STATES

    def deadline_passed(self, now: datetime) -> bool:
        return now >= self.deadline_at

    def seconds_remaining(self, now: datetime) -> int:
        """Countdown shown to the requester; zero once terminal or overdue."""
        if self.is_terminal:
            return 0
        return max(0, int((self.deadline_at - now).total_seconds()))


class Quote(BaseModel):
    """A single vendor's offer within a session."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    vendor_id: str | None = None
    vendor_type: VendorType = VendorType.OTHER
    vendor_name: str | None = None
    vendor_contact: str
    offer_data: Payload = Field(default_factory=Payload)
    status: QuoteStatus = QuoteStatus.RECEIVED
    responded_at: datetime
    expires_at: datetime | None = None
    ranking_score: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("vendor_contact")
    @classmethod
    def contact_must_not_be_empty(cls, v: str) -> str:
        """Ensure vendor_contact is not empty or whitespace-only."""
        if not v.strip():
            raise ValueError("vendor_contact must not be empty")
        return v.strip()


class VendorMeta(BaseModel):
    """Vendor identity attached to a quote submission."""

    model_config = ConfigDict(frozen=True)

    vendor_id: str | None = None
    vendor_type: VendorType = VendorType.OTHER
    vendor_name: str | None = None


class LedgerAccount(BaseModel):
    """Token balance held by one profile."""

    model_config = ConfigDict(frozen=True)

    profile_id: str
    balance: int = 0
    pending: int = 0
    updated_at: datetime | None = None

    @field_validator("balance", "pending")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        """Negative balances are never persisted."""
        if v < 0:
            raise ValueError("ledger amounts must not be negative")
        return v


class LedgerEntry(BaseModel):
    """Immutable record of one applied, non-zero balance change."""

    model_config = ConfigDict(frozen=True)

    id: int
    profile_id: str
    delta: int
    type: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    balance_after: int
    created_at: datetime


class TransferResult(BaseModel):
    """Outcome of a paired debit/credit."""

    model_config = ConfigDict(frozen=True)

    from_balance: int
    to_balance: int
    entry_from: int
    entry_to: int


class CommissionRecord(BaseModel):
    """Broker commission owed by a vendor for a completed session."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    quote_id: str
    vendor_id: str | None
    broker_id: str
    amount: int
    status: CommissionStatus = CommissionStatus.DUE
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime
    paid_at: datetime | None = None


class IdempotencyRecord(BaseModel):
    """Stored outcome for one client-supplied idempotency key."""

    model_config = ConfigDict(frozen=True)

    key: str
    scope: str
    request_hash: str
    status_code: int | None = None
    body: dict[str, Any] | None = None
    created_at: datetime
    finalized_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status_code is None


class AgentConfig(BaseModel):
    """Per agent-type negotiation policy from the agent registry."""

    model_config = ConfigDict(frozen=True)

    agent_type: str
    name: str = ""
    enabled: bool = True
    sla_minutes: int = 5
    max_extensions: int = 2
    fan_out_limit: int = 10

    @field_validator("sla_minutes", "fan_out_limit")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        """Ensure SLA and fan-out are at least 1."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("max_extensions")
    @classmethod
    def extensions_not_negative(cls, v: int) -> int:
        """Ensure max_extensions is not negative."""
        if v < 0:
            raise ValueError("max_extensions must not be negative")
        return v


class SessionTransition(BaseModel):
    """One successful session state change."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    from_status: SessionStatus
    event: str
    to_status: SessionStatus
    actor: str | None = None
    created_at: datetime
