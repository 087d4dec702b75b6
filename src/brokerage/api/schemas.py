"""Request bodies for the HTTP API.

Only shape is validated here; business rules (known agent, fan-out,
deadline, ...) are enforced by the engine and reported as domain errors.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from brokerage.domain.types import FlowType, SessionStatus, VendorType


class CreateSessionRequest(BaseModel):
    requester_id: str = Field(min_length=1)
    flow_type: FlowType
    agent_type: str = Field(min_length=1)
    request_data: dict[str, Any] = Field(default_factory=dict)
    sla_minutes: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubmitQuoteRequest(BaseModel):
    vendor_contact: str = Field(min_length=1)
    vendor_id: str | None = None
    vendor_type: VendorType = VendorType.OTHER
    vendor_name: str | None = None
    offer_data: dict[str, Any] = Field(default_factory=dict)
    ranking_score: float | None = None
    expires_at: datetime | None = None


class UpdateSessionRequest(BaseModel):
    """One of: select a quote, cancel, extend the deadline, or present."""

    status: SessionStatus | None = None
    selected_quote_id: str | None = None
    cancellation_reason: str | None = None
    extend_deadline: bool = False


class SweepRequest(BaseModel):
    now: datetime | None = None


class OpenAccountRequest(BaseModel):
    profile_id: str = Field(min_length=1)
    initial_balance: int = Field(default=0, ge=0)


class TransferRequest(BaseModel):
    from_profile_id: str = Field(min_length=1)
    to_profile_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    reason: str = "transfer"
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateAgentConfigRequest(BaseModel):
    """Partial agent policy; unset fields keep their current value."""

    name: str | None = None
    enabled: bool | None = None
    sla_minutes: int | None = Field(default=None, ge=1)
    max_extensions: int | None = Field(default=None, ge=0)
    fan_out_limit: int | None = Field(default=None, ge=1)
