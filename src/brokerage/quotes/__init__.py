"""Quote store: vendor offers collected for a session."""

from brokerage.quotes.store import QuoteScorer, QuoteStore

__all__ = [
    "QuoteScorer",
    "QuoteStore",
]
