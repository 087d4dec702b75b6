"""Serialization helpers between domain objects and SQLite columns.

Timestamps are stored as fixed-width UTC strings
(``YYYY-MM-DDTHH:MM:SS.ffffffZ``) so that lexicographic comparison in SQL
matches chronological order -- the deadline queries depend on it.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from brokerage.domain.models import Payload

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as a sortable UTC string.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a string produced by :func:`format_timestamp`."""
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def dump_json(data: dict[str, Any] | None) -> str:
    """JSON-encode a dict column, rendering unknown types via ``str``."""
    return json.dumps(data or {}, default=str, sort_keys=True)


def load_json(text: str | None) -> dict[str, Any]:
    """Decode a JSON dict column; ``NULL`` and empty strings become ``{}``."""
    if not text:
        return {}
    result: dict[str, Any] = json.loads(text)
    return result


def dump_payload(payload: Payload) -> str:
    """Serialize an opaque payload together with its schema version."""
    return payload.model_dump_json()


def load_payload(text: str | None) -> Payload:
    """Rebuild a :class:`Payload` from its stored JSON."""
    if not text:
        return Payload()
    return Payload.model_validate_json(text)
