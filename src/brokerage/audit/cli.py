"""CLI query interface for the brokerage audit trail.

Usage::

    python -m brokerage.audit.cli --session 3f2a... --format json
    python -m brokerage.audit.cli --requester user-42 --last 24h
    python -m brokerage.audit.cli --event-type settlement_failed --last 7d
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta
from typing import Any

from brokerage.audit.models import EventType
from brokerage.audit.store import init_audit_db, query_audit_trail
from brokerage.state.db import Database
from brokerage.state.serializers import format_timestamp, utc_now


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for audit trail queries."""
    parser = argparse.ArgumentParser(description="Query the session brokerage audit trail")

    parser.add_argument("--session", type=str, help="Filter by session ID")
    parser.add_argument("--requester", type=str, help="Filter by requester ID")
    parser.add_argument("--from-date", type=str, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--to-date", type=str, help="End date (YYYY-MM-DD)")
    parser.add_argument(
        "--event-type",
        type=str,
        choices=[e.value for e in EventType],
        help="Filter by event type",
    )
    parser.add_argument(
        "--last",
        type=str,
        help='Shorthand duration (e.g., "7d", "24h", "30m")',
    )
    parser.add_argument(
        "--format",
        type=str,
        choices=["table", "json"],
        default="table",
        dest="output_format",
        help="Output format (default: table)",
    )
    parser.add_argument("--limit", type=int, default=50, help="Maximum results (default: 50)")
    parser.add_argument(
        "--db",
        type=str,
        default="data/audit.db",
        help="Path to audit database (default: data/audit.db)",
    )
    return parser


def parse_last_duration(last: str, now: datetime | None = None) -> str:
    """Convert a shorthand duration (``7d``, ``24h``, ``30m``) to a timestamp.

    Raises:
        ValueError: If the format is not recognized.
    """
    if not last or len(last) < 2:
        msg = f"Unrecognized duration format: {last!r}"
        raise ValueError(msg)

    unit = last[-1]
    try:
        value = int(last[:-1])
    except ValueError:
        msg = f"Unrecognized duration format: {last!r}"
        raise ValueError(msg) from None

    units = {"d": "days", "h": "hours", "m": "minutes"}
    if unit not in units:
        msg = f"Unrecognized duration format: {last!r}. Use 'd', 'h' or 'm'."
        raise ValueError(msg)

    return format_timestamp((now or utc_now()) - timedelta(**{units[unit]: value}))


def format_table(results: list[dict[str, Any]]) -> str:
    """Format audit rows as a fixed-width table, truncating long cells."""
    if not results:
        return "No results found."

    headers = ["Timestamp", "Event", "Session", "Requester", "Status", "Actor"]
    widths = [27, 20, 32, 16, 12, 16]

    def truncate(value: str | None, width: int) -> str:
        s = str(value or "")
        if len(s) > width:
            return s[: width - 3] + "..."
        return s

    lines: list[str] = []
    header_line = "  ".join(h.ljust(w) for h, w in zip(headers, widths, strict=True))
    lines.append(header_line)
    lines.append("-" * len(header_line))

    for row in results:
        cells = [
            truncate(row.get("timestamp"), widths[0]),
            truncate(row.get("event_type"), widths[1]),
            truncate(row.get("session_id"), widths[2]),
            truncate(row.get("requester_id"), widths[3]),
            truncate(row.get("session_status"), widths[4]),
            truncate(row.get("actor"), widths[5]),
        ]
        lines.append("  ".join(c.ljust(w) for c, w in zip(cells, widths, strict=True)))

    return "\n".join(lines)


def format_json(results: list[dict[str, Any]]) -> str:
    return json.dumps(results, indent=2)


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, query the audit trail, and print results."""
    args = build_parser().parse_args(argv)

    from_date = args.from_date
    if args.last:
        from_date = parse_last_duration(args.last)

    db = Database(args.db)
    init_audit_db(db)
    with db.reader() as conn:
        results = query_audit_trail(
            conn,
            session_id=args.session,
            requester_id=args.requester,
            from_date=from_date,
            to_date=args.to_date,
            event_type=args.event_type,
            limit=args.limit,
        )

    output = format_json(results) if args.output_format == "json" else format_table(results)
    print(output)


if __name__ == "__main__":
    main()
