"""Negotiation sessions: guarded persistence and the lifecycle engine."""

from brokerage.sessions.engine import SessionEngine
from brokerage.sessions.store import SessionStore

__all__ = ["SessionEngine", "SessionStore"]
