"""Centralized, typed configuration using pydantic-settings.

Provides a single ``Settings`` class backed by a ``.env`` file and environment
variables, a cached ``get_settings()`` accessor, and a ``validate_credentials()``
startup gate that enforces ops credentials in production mode.

This module imports nothing from the ``brokerage`` package so that any
module can depend on it without import cycles.
"""

from __future__ import annotations

import sys
from functools import lru_cache
from pathlib import Path

import structlog
from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings loaded from environment variables and ``.env``.

    ``SecretStr`` fields keep tokens out of logs and error output.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- General ---------------------------------------------------------------
    production: bool = False
    port: int = 8000

    # -- Storage ---------------------------------------------------------------
    db_path: Path = Path("data/brokerage.db")
    audit_db_path: Path = Path("data/audit.db")

    # -- Session policy --------------------------------------------------------
    default_sla_minutes: int = 5
    default_max_extensions: int = 2
    extension_minutes: int = 2
    default_fan_out_limit: int = 10

    # -- Sweeper ---------------------------------------------------------------
    sweep_interval_seconds: float = 30.0
    expiry_warning_minutes: int = 1

    # -- Idempotency -----------------------------------------------------------
    idempotency_success_ttl_seconds: int = 86_400
    idempotency_pending_ttl_seconds: int = 60

    # -- Settlement ------------------------------------------------------------
    default_commission_tokens: int = 0

    # -- Slack (ops channel) ---------------------------------------------------
    slack_bot_token: SecretStr = SecretStr("")
    slack_ops_channel: str = ""

    # -- Sentry ----------------------------------------------------------------
    sentry_dsn: str = ""


@lru_cache
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    try:
        return Settings()
    except ValidationError as exc:
        # Only the structured errors list; the exception text may carry secrets.
        logger.error("settings_validation_failed", errors=exc.errors())
        sys.exit(1)


def validate_credentials(settings: Settings) -> None:
    """Enforce ops credentials at startup.

    In production a missing credential aborts startup with an error block on
    stderr.  In development each one is logged as a warning and the service
    starts with the ops channel disabled.
    """
    errors: list[str] = []

    if not settings.slack_bot_token.get_secret_value():
        errors.append("SLACK_BOT_TOKEN is empty or not set")

    if not settings.slack_ops_channel:
        errors.append("SLACK_OPS_CHANNEL is empty or not set")

    if not errors:
        logger.info("credential_validation_passed")
        return

    if settings.production:
        for err in errors:
            logger.error("credential_missing", detail=err)
        print("\n=== STARTUP FAILED ===", file=sys.stderr)
        print("Missing required credentials for production mode:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        print("======================\n", file=sys.stderr)
        sys.exit(1)
    else:
        for err in errors:
            logger.warning("credential_missing_dev", detail=err)
