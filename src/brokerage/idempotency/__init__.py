"""Idempotency gateway: at-most-once execution per client key."""

from brokerage.idempotency.gateway import (
    FAILED_RESULT,
    TIMED_OUT_RESULT,
    CommandResult,
    IdempotencyGateway,
    canonical_request_hash,
    validate_key,
)

__all__ = [
    "FAILED_RESULT",
    "TIMED_OUT_RESULT",
    "CommandResult",
    "IdempotencyGateway",
    "canonical_request_hash",
    "validate_key",
]
