"""Deadline sweeper."""

from brokerage.sweeper.sweeper import DeadlineSweeper, SweepReport

__all__ = ["DeadlineSweeper", "SweepReport"]
