"""
Database retry utilities for handling transient SQLite errors.

Concurrent writers on one SQLite file surface as "database is locked" /
SQLITE_BUSY; these are retried with exponential backoff and jitter.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_RETRYABLE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check if an exception (or its cause) is a transient lock error."""
    error_str = str(exc).lower()
    if any(pattern in error_str for pattern in _RETRYABLE_PATTERNS):
        return True

    # databases wraps the underlying driver exception
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic for transient database errors.

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
                # Add jitter (±25%) to prevent thundering herd
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")
