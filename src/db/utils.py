"""
Database utility functions and decorators.

Provides:
- Retry decorator for transient database errors on reads
- Translation of connection-level failures into StoreUnavailableError
"""

import asyncio
import logging
from functools import wraps
from typing import TypeVar, Callable, Any

from sqlalchemy.exc import (
    OperationalError,
    InterfaceError,
    DisconnectionError,
)
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from src.core.credits.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Define which exceptions are retryable
RETRYABLE_EXCEPTIONS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    asyncio.TimeoutError,
    ConnectionRefusedError,
    ConnectionResetError,
)


def create_db_retry(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
):
    """
    Create a tenacity retry decorator for database operations.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)

    Returns:
        Configured retry decorator
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


# Default retry decorator for database operations
db_retry = create_db_retry()


def with_db_retry(func: Callable[..., T]) -> Callable[..., T]:
    """
    Decorator to add retry logic to idempotent async database reads.

    Usage:
        @with_db_retry
        async def load_balance():
            async with db.session() as session:
                ...

    Note: The retry re-executes the function from the beginning, so it
    must not wrap ledger mutations.
    """
    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        @db_retry
        async def inner():
            return await func(*args, **kwargs)
        return await inner()

    return wrapper


def raise_store_unavailable(func: Callable[..., T]) -> Callable[..., T]:
    """
    Decorator translating connection-level database errors into
    StoreUnavailableError so callers can fail closed.
    """
    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except RETRYABLE_EXCEPTIONS as e:
            logger.error(f"Ledger store unavailable in {func.__name__}: {type(e).__name__}: {e}")
            raise StoreUnavailableError(
                message="Ledger store unavailable",
                details={"operation": func.__name__, "error": type(e).__name__},
            ) from e

    return wrapper
