"""Retry decorator for calls to external services.

Three attempts with exponential backoff and jitter.  When all attempts
fail the error is logged and the wrapped call returns ``None`` instead of
raising, so a flaky ops channel can never fail the caller.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    retry,
    stop_after_attempt,
    wait_exponential_jitter,
)

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


def log_final_failure(retry_state: RetryCallState) -> None:
    """Log the exhausted call; its return value becomes the call's result."""
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    api_name = getattr(retry_state.fn, "_api_name", "unknown") if retry_state.fn else "unknown"

    logger.error(
        "api_call_failed_after_retries",
        api_name=api_name,
        attempts=retry_state.attempt_number,
        exception=str(exception),
    )


def _before_sleep_log(retry_state: RetryCallState) -> None:
    api_name = getattr(retry_state.fn, "_api_name", "unknown") if retry_state.fn else "unknown"
    logger.warning(
        "api_call_retrying",
        api_name=api_name,
        attempt=retry_state.attempt_number,
        wait=retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def resilient_api_call(
    api_name: str,
    attempts: int = 3,
    initial_wait: float = 1,
    max_wait: float = 30,
) -> Callable[[F], F]:
    """Create a tenacity retry decorator for an external call.

    Args:
        api_name: Human-readable name for the API (used in logs).
        attempts: Maximum number of attempts.
        initial_wait: First backoff in seconds.
        max_wait: Backoff ceiling in seconds.
    """

    def decorator(func: F) -> F:
        func._api_name = api_name  # type: ignore[attr-defined]

        wrapped = retry(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(initial=initial_wait, max=max_wait, jitter=initial_wait),
            before_sleep=_before_sleep_log,
            retry_error_callback=log_final_failure,
        )(func)

        return wrapped  # type: ignore[return-value]

    return decorator
