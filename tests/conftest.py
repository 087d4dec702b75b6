"""Shared pytest fixtures for the session brokerage test suite.

Every test gets its own SQLite files under ``tmp_path`` and a controllable
clock, so deadlines can be crossed without sleeping.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from brokerage.audit.logger import AuditLogger
from brokerage.audit.store import init_audit_db
from brokerage.commands import CommandService
from brokerage.domain.models import AgentConfig, VendorMeta
from brokerage.domain.types import VendorType
from brokerage.idempotency.gateway import IdempotencyGateway
from brokerage.ledger.ledger import Ledger
from brokerage.ops.notifier import OpsNotifier
from brokerage.quotes.store import QuoteStore
from brokerage.registry.store import AgentRegistry
from brokerage.sessions.engine import SessionEngine
from brokerage.sessions.store import SessionStore
from brokerage.settlement.engine import SettlementEngine
from brokerage.state.db import Database
from brokerage.state.schema import init_database
from brokerage.sweeper.sweeper import DeadlineSweeper

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path) -> Database:
    """Engine database with the full schema."""
    database = Database(tmp_path / "brokerage.db", busy_timeout=10.0)
    init_database(database)
    return database


@pytest.fixture
def audit_db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "audit.db")
    init_audit_db(database)
    return database


@pytest.fixture
def audit_logger(audit_db: Database, clock: FakeClock) -> AuditLogger:
    return AuditLogger(audit_db, clock=clock)


@pytest.fixture
def notifier() -> MagicMock:
    """Ops notifier double; assertions inspect ``post_settlement_failure``."""
    mock = MagicMock(spec=OpsNotifier)
    mock.enabled = True
    return mock


@pytest.fixture
def ledger(db: Database, clock: FakeClock) -> Ledger:
    return Ledger(db, clock=clock)


@pytest.fixture
def registry(db: Database, clock: FakeClock) -> AgentRegistry:
    return AgentRegistry(db, defaults=AgentConfig(agent_type="*"), clock=clock)


@pytest.fixture
def quotes(db: Database, clock: FakeClock) -> QuoteStore:
    return QuoteStore(db, clock=clock)


@pytest.fixture
def sessions(db: Database, clock: FakeClock) -> SessionStore:
    return SessionStore(db, clock=clock)


@pytest.fixture
def settlement(
    db: Database,
    ledger: Ledger,
    notifier: MagicMock,
    audit_logger: AuditLogger,
    clock: FakeClock,
) -> SettlementEngine:
    return SettlementEngine(
        db, ledger, notifier=notifier, audit=audit_logger, default_commission_tokens=0, clock=clock
    )


@pytest.fixture
def engine(
    db: Database,
    sessions: SessionStore,
    quotes: QuoteStore,
    registry: AgentRegistry,
    settlement: SettlementEngine,
    audit_logger: AuditLogger,
    clock: FakeClock,
) -> SessionEngine:
    return SessionEngine(
        db,
        sessions,
        quotes,
        registry,
        settlement=settlement,
        audit=audit_logger,
        extension_minutes=2,
        clock=clock,
    )


@pytest.fixture
def gateway(db: Database, clock: FakeClock) -> IdempotencyGateway:
    return IdempotencyGateway(db, poll_interval=0.01, clock=clock)


@pytest.fixture
def sweeper(
    engine: SessionEngine,
    sessions: SessionStore,
    quotes: QuoteStore,
    gateway: IdempotencyGateway,
    settlement: SettlementEngine,
    clock: FakeClock,
) -> DeadlineSweeper:
    return DeadlineSweeper(
        engine, sessions, quotes, gateway=gateway, settlement=settlement, clock=clock
    )


@pytest.fixture
def commands(
    engine: SessionEngine,
    ledger: Ledger,
    gateway: IdempotencyGateway,
    sweeper: DeadlineSweeper,
    registry: AgentRegistry,
    audit_logger: AuditLogger,
    clock: FakeClock,
) -> CommandService:
    return CommandService(
        engine, ledger, gateway, sweeper, registry, audit=audit_logger, clock=clock
    )


@pytest.fixture
def driver() -> VendorMeta:
    """Representative driver vendor metadata."""
    return VendorMeta(vendor_id="vendor-driver-1", vendor_type=VendorType.DRIVER, vendor_name="Jean")
