"""Operational alerting."""

from brokerage.ops.notifier import OpsNotifier, build_settlement_failure_blocks

__all__ = ["OpsNotifier", "build_settlement_failure_blocks"]
