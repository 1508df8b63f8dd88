"""Retry utilities with exponential backoff."""

import logging
import sqlite3

import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.stdlib.get_logger(__name__)


def is_lock_contention(exc: BaseException) -> bool:
    """True for transient SQLite busy/locked errors, never for constraint violations."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


def db_retry(
    max_attempts: int = 4,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
):
    """Retry decorator for short SQLite writes that lost the write lock.

    Only lock contention is retried. Conflict errors (duplicate fingerprint,
    stale status) surface to the caller unchanged.

    Args:
        max_attempts: Max attempts including the first
        min_wait: Min wait between retries (seconds)
        max_wait: Max wait between retries (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.1, min=min_wait, max=max_wait),
        retry=retry_if_exception(is_lock_contention),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
