"""SQLite-backed agent registry.

Each agent type (``"driver_broker"``, ``"pharmacy_broker"``, ...) carries its
own negotiation policy: default SLA window, how many deadline extensions a
session may take, and how many distinct vendors may quote.  Agent types
that were never registered fall back to the defaults from settings.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog

from brokerage.domain.errors import ValidationError
from brokerage.domain.models import AgentConfig
from brokerage.state.db import Database
from brokerage.state.serializers import format_timestamp, utc_now

logger = structlog.get_logger()


class AgentRegistry:
    """Read and upsert :class:`AgentConfig` rows.

    Args:
        db: The engine database.
        defaults: Policy used for agent types with no registry row.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        db: Database,
        defaults: AgentConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._defaults = defaults or AgentConfig(agent_type="*")
        self._clock = clock

    def get(self, agent_type: str) -> AgentConfig:
        """Return the policy for *agent_type*, or the defaults if unregistered."""
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM agent_registry WHERE agent_type = ?",
                (agent_type,),
            ).fetchone()
        if row is None:
            return self._defaults.model_copy(update={"agent_type": agent_type})
        return AgentConfig(
            agent_type=row["agent_type"],
            name=row["name"],
            enabled=bool(row["enabled"]),
            sla_minutes=row["sla_minutes"],
            max_extensions=row["max_extensions"],
            fan_out_limit=row["fan_out_limit"],
        )

    def upsert(self, config: AgentConfig) -> AgentConfig:
        """Insert or replace the policy for ``config.agent_type``."""
        if not config.agent_type.strip():
            raise ValidationError("agent_type must not be empty")
        now = format_timestamp(self._clock())
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO agent_registry (
                    agent_type, name, enabled, sla_minutes, max_extensions,
                    fan_out_limit, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (agent_type) DO UPDATE SET
                    name = excluded.name,
                    enabled = excluded.enabled,
                    sla_minutes = excluded.sla_minutes,
                    max_extensions = excluded.max_extensions,
                    fan_out_limit = excluded.fan_out_limit,
                    updated_at = excluded.updated_at
                """,
                (
                    config.agent_type,
                    config.name,
                    int(config.enabled),
                    config.sla_minutes,
                    config.max_extensions,
                    config.fan_out_limit,
                    now,
                    now,
                ),
            )
        logger.info("agent_config_saved", agent_type=config.agent_type)
        return config

    def list_all(self) -> list[AgentConfig]:
        """Return every registered policy ordered by agent type."""
        with self._db.reader() as conn:
            rows = conn.execute("SELECT agent_type FROM agent_registry ORDER BY agent_type").fetchall()
        return [self.get(row["agent_type"]) for row in rows]
