"""Domain enumerations for the session brokerage engine."""

from enum import StrEnum


class FlowType(StrEnum):
    """Supported negotiation verticals."""

    NEARBY_DRIVERS = "nearby_drivers"
    NEARBY_PHARMACIES = "nearby_pharmacies"
    NEARBY_QUINCAILLERIES = "nearby_quincailleries"
    NEARBY_SHOPS = "nearby_shops"
    SCHEDULED_TRIP = "scheduled_trip"
    RECURRING_TRIP = "recurring_trip"
    AI_WAITER = "ai_waiter"


class VendorType(StrEnum):
    """Kinds of vendors that can answer a session."""

    DRIVER = "driver"
    PHARMACY = "pharmacy"
    QUINCAILLERIE = "quincaillerie"
    SHOP = "shop"
    RESTAURANT = "restaurant"
    OTHER = "other"


class SessionStatus(StrEnum):
    """States in the session lifecycle."""

    SEARCHING = "searching"
    NEGOTIATING = "negotiating"
    PRESENTING = "presenting"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ERROR = "error"


class QuoteStatus(StrEnum):
    """Lifecycle of a single vendor offer."""

    PENDING = "pending"
    RECEIVED = "received"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"
    COUNTER_OFFERED = "counter_offered"


class CommissionStatus(StrEnum):
    """Settlement state of a broker commission."""

    DUE = "due"
    PAID = "paid"


# Quotes in these states may still be selected by the requester.
SELECTABLE_QUOTE_STATUSES: frozenset[QuoteStatus] = frozenset(
    {QuoteStatus.PENDING, QuoteStatus.RECEIVED, QuoteStatus.COUNTER_OFFERED}
)

# Quotes in these states are swept to EXPIRED once their expires_at passes.
EXPIRABLE_QUOTE_STATUSES: frozenset[QuoteStatus] = frozenset(
    {QuoteStatus.PENDING, QuoteStatus.RECEIVED}
)
