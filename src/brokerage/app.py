"""Application entry point: the brokerage HTTP service plus its deadline sweeper.

Configures:
- **structlog** with JSON rendering (production) or colored console (development),
  forwarding errors to Sentry when a DSN is configured
- **SQLite** engine and audit databases
- **Engine services**: ledger, agent registry, quote/session stores, settlement,
  idempotency gateway, sweeper and the command surface
- **FastAPI** with request ids, Prometheus metrics, health routes and the
  sweeper loop running for the lifetime of the app
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from brokerage.api.routes import register_error_handlers, router
from brokerage.audit.logger import AuditLogger
from brokerage.audit.store import init_audit_db
from brokerage.commands import CommandService
from brokerage.config import Settings, get_settings, validate_credentials
from brokerage.domain.models import AgentConfig
from brokerage.health import register_health_routes
from brokerage.idempotency.gateway import IdempotencyGateway
from brokerage.ledger.ledger import Ledger
from brokerage.observability.metrics import setup_metrics
from brokerage.observability.middleware import SERVICE_NAME, RequestIdMiddleware
from brokerage.observability.sentry import get_sentry_processor, init_sentry
from brokerage.ops.notifier import OpsNotifier
from brokerage.quotes.store import QuoteStore
from brokerage.registry.store import AgentRegistry
from brokerage.sessions.engine import SessionEngine
from brokerage.sessions.store import SessionStore
from brokerage.settlement.engine import SettlementEngine
from brokerage.state.db import Database
from brokerage.state.schema import init_database
from brokerage.state.serializers import utc_now
from brokerage.sweeper.sweeper import DeadlineSweeper

logger = structlog.get_logger()


def configure_logging(production: bool = False, sentry_enabled: bool = False) -> None:
    """Configure structlog for production (JSON) or development (console).

    Args:
        production: JSON rendering at INFO level when ``True``, colored
            console rendering at DEBUG level otherwise.
        sentry_enabled: Forward ERROR events to Sentry.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
    ]
    if sentry_enabled:
        shared_processors.append(get_sentry_processor())
    shared_processors += [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        log_level = logging.INFO
    else:
        renderer = structlog.dev.ConsoleRenderer()
        log_level = logging.DEBUG

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=SERVICE_NAME)


def initialize_services(
    settings: Settings | None = None,
    clock: Callable[[], datetime] = utc_now,
    notifier: OpsNotifier | None = None,
) -> dict[str, Any]:
    """Build every shared service for the application.

    Args:
        settings: Application settings.  If ``None``, ``get_settings()`` is used.
        clock: Time source shared by all services; tests pass a fake clock.
        notifier: Ops notifier override; built from settings when ``None``.

    Returns:
        A dict of initialized service instances keyed by name.
    """
    if settings is None:
        settings = get_settings()

    services: dict[str, Any] = {"_settings": settings}

    # a. Databases
    db = Database(settings.db_path)
    init_database(db)
    services["db"] = db

    audit_db = Database(settings.audit_db_path)
    init_audit_db(audit_db)
    services["audit_db"] = audit_db

    audit_logger = AuditLogger(audit_db, clock=clock)
    services["audit_logger"] = audit_logger

    # b. Ops channel
    if notifier is None:
        notifier = OpsNotifier(
            channel=settings.slack_ops_channel,
            bot_token=settings.slack_bot_token.get_secret_value(),
        )
    services["ops_notifier"] = notifier
    if not notifier.enabled:
        logger.warning("ops_channel_disabled")

    # c. Ledger and settlement
    ledger = Ledger(db, clock=clock)
    services["ledger"] = ledger

    alert_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ops-alerts")
    services["alert_executor"] = alert_executor

    settlement = SettlementEngine(
        db,
        ledger,
        notifier=notifier,
        audit=audit_logger,
        default_commission_tokens=settings.default_commission_tokens,
        alert_executor=alert_executor,
        clock=clock,
    )
    services["settlement"] = settlement

    # d. Sessions
    registry = AgentRegistry(
        db,
        defaults=AgentConfig(
            agent_type="*",
            sla_minutes=settings.default_sla_minutes,
            max_extensions=settings.default_max_extensions,
            fan_out_limit=settings.default_fan_out_limit,
        ),
        clock=clock,
    )
    services["registry"] = registry

    quotes = QuoteStore(db, clock=clock)
    sessions = SessionStore(db, clock=clock)
    services["quotes"] = quotes
    services["sessions"] = sessions

    engine = SessionEngine(
        db,
        sessions,
        quotes,
        registry,
        settlement=settlement,
        audit=audit_logger,
        extension_minutes=settings.extension_minutes,
        clock=clock,
    )
    services["engine"] = engine

    # e. Gateway, sweeper and commands
    gateway = IdempotencyGateway(
        db,
        success_ttl_seconds=settings.idempotency_success_ttl_seconds,
        pending_ttl_seconds=settings.idempotency_pending_ttl_seconds,
        clock=clock,
    )
    services["gateway"] = gateway

    sweeper = DeadlineSweeper(
        engine,
        sessions,
        quotes,
        gateway=gateway,
        settlement=settlement,
        warning_minutes=settings.expiry_warning_minutes,
        clock=clock,
    )
    services["sweeper"] = sweeper

    services["commands"] = CommandService(
        engine, ledger, gateway, sweeper, registry, audit=audit_logger, clock=clock
    )

    logger.info("services_initialized", db_path=str(settings.db_path))
    return services


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Start the sweeper loop on startup and stop it on shutdown."""
    services = app.state.services
    settings: Settings = app.state.settings

    stop = asyncio.Event()
    sweeper: DeadlineSweeper = services["sweeper"]
    task = asyncio.create_task(sweeper.run_forever(settings.sweep_interval_seconds, stop))
    services["sweeper_stop"] = stop
    services["sweeper_task"] = task
    logger.info("application_starting")
    yield
    stop.set()
    try:
        await asyncio.wait_for(task, timeout=5)
    except TimeoutError:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    executor: ThreadPoolExecutor = services["alert_executor"]
    await asyncio.to_thread(executor.shutdown, wait=True)
    logger.info("application_stopped")


def create_app(services: dict[str, Any]) -> FastAPI:
    """Create the FastAPI app with lifespan, routes, middleware and metrics.

    Args:
        services: The initialized services dict from ``initialize_services``.
    """
    fastapi_app = FastAPI(title="Session Brokerage Engine", lifespan=lifespan)
    fastapi_app.state.services = services
    fastapi_app.state.settings = services.get("_settings") or get_settings()
    fastapi_app.add_middleware(RequestIdMiddleware)
    fastapi_app.include_router(router)
    register_error_handlers(fastapi_app)
    register_health_routes(fastapi_app)
    setup_metrics(fastapi_app)
    return fastapi_app


async def main() -> None:
    """Run the service.

    1. Load settings and configure logging/Sentry
    2. Validate ops credentials
    3. Initialize services and create the app
    4. Serve with uvicorn until interrupted
    """
    settings = get_settings()
    sentry_enabled = init_sentry(
        settings.sentry_dsn, "production" if settings.production else "development"
    )
    configure_logging(production=settings.production, sentry_enabled=sentry_enabled)
    logger.info("application_booting")

    validate_credentials(settings)

    services = initialize_services(settings)
    fastapi_app = create_app(services)

    config = uvicorn.Config(
        fastapi_app,
        host="0.0.0.0",
        port=settings.port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()


if __name__ == "__main__":
    asyncio.run(main())
