"""Token ledger with atomic deltas and paired transfers."""

from brokerage.ledger.ledger import AccountLocks, Ledger, LedgerTransaction

__all__ = [
    "AccountLocks",
    "Ledger",
    "LedgerTransaction",
]
