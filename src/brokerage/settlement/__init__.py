"""Settlement engine: broker commissions paid through the ledger."""

from brokerage.settlement.engine import COMMISSION_REASON, SettlementEngine

__all__ = ["COMMISSION_REASON", "SettlementEngine"]
