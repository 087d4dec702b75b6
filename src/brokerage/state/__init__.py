"""Persistence package.

Provides SQLite connection management, the engine schema, and
serialization helpers for domain objects.
"""

from brokerage.state.db import Database
from brokerage.state.schema import init_brokerage_tables, init_database
from brokerage.state.serializers import (
    dump_json,
    dump_payload,
    format_timestamp,
    load_json,
    load_payload,
    parse_timestamp,
    utc_now,
)

__all__ = [
    "Database",
    "dump_json",
    "dump_payload",
    "format_timestamp",
    "init_brokerage_tables",
    "init_database",
    "load_json",
    "load_payload",
    "parse_timestamp",
    "utc_now",
]
