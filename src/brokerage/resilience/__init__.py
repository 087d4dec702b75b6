"""Resilience helpers for calls to external services."""

from brokerage.resilience.retry import resilient_api_call

__all__ = ["resilient_api_call"]
