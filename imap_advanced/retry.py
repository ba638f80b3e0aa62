"""Tenacity retry policy driven by RetryConfig."""

from __future__ import annotations

import imaplib
from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()

# Transport-level failures worth another attempt; NO/BAD replies are not
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (imaplib.IMAP4.abort, OSError)


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    operation: str = "operation",
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry, operation="idle_connect")
        async def connect() -> None: ...
    """

    def _log_retry(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "retrying",
            operation=operation,
            attempt=state.attempt_number,
            error=str(error),
        )

    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_retry,
        reraise=True,
    )
