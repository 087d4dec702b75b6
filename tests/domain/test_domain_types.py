"""Tests for domain enumerations."""

from __future__ import annotations

from brokerage.domain.types import (
    EXPIRABLE_QUOTE_STATUSES,
    SELECTABLE_QUOTE_STATUSES,
    FlowType,
    QuoteStatus,
    SessionStatus,
)


def test_session_status_values() -> None:
    assert {s.value for s in SessionStatus} == {
        "searching",
        "negotiating",
        "presenting",
        "completed",
        "timeout",
        "cancelled",
        "error",
    }


def test_flow_types_are_strings() -> None:
    assert FlowType("nearby_drivers") is FlowType.NEARBY_DRIVERS
    assert f"{FlowType.AI_WAITER}" == "ai_waiter"


def test_accepted_quotes_are_not_selectable() -> None:
    assert QuoteStatus.ACCEPTED not in SELECTABLE_QUOTE_STATUSES
    assert QuoteStatus.EXPIRED not in SELECTABLE_QUOTE_STATUSES
    assert QuoteStatus.COUNTER_OFFERED in SELECTABLE_QUOTE_STATUSES


def test_expirable_is_subset_of_selectable() -> None:
    assert EXPIRABLE_QUOTE_STATUSES <= SELECTABLE_QUOTE_STATUSES
