"""Agent registry: per agent-type negotiation policy."""

from brokerage.registry.store import AgentRegistry

__all__ = ["AgentRegistry"]
