"""HTTP API."""

from brokerage.api.routes import register_error_handlers, router

__all__ = ["register_error_handlers", "router"]
