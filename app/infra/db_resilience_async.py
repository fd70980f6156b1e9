# app/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry logic for asyncpg: transient connection errors, deadlocks and
serialization failures of SERIALIZABLE transactions.
"""
from __future__ import annotations
import asyncio
from typing import TypeVar, Callable
from contextlib import asynccontextmanager, AsyncExitStack
from functools import wraps

import asyncpg
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

T = TypeVar('T')


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock
    - Serialization failure (concurrent SERIALIZABLE transactions)
    """
    if isinstance(exc, (asyncpg.SerializationError, asyncpg.DeadlockDetectedError)):
        return True

    if isinstance(exc, asyncpg.PostgresConnectionError):
        return True

    if isinstance(exc, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return True

    # Only driver/network level errors are inspected by message;
    # application errors are never retried.
    if not isinstance(exc, (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)):
        return False

    error_message = str(exc).lower()

    transient_patterns = [
        "connection",
        "timeout",
        "closed",
        "network",
        "deadlock",
        "too many connections",
        "server closed",
        "connection reset",
        "could not serialize",
    ]

    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry async function on transient database errors.

    The whole function is re-run, so it must own its transaction
    (open and close it inside the call).

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay between retries (seconds)
        backoff_factor: Multiplier for delay after each retry
        max_delay: Maximum delay between retries (seconds)

    Example:
        @retry_on_transient_error(max_retries=3)
        async def consume(owner_id: str, amount: int):
            async with safe_db_conn(autocommit=False, isolation="serializable") as conn:
                ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}",
                            exc_info=True
                        )
                        AppMetrics.database_error(func.__name__)
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): "
                        f"{exc.__class__.__name__}: {exc}. Retrying in {delay:.2f}s..."
                    )

                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


async def _enter_with_retry(
    stack: AsyncExitStack,
    autocommit: bool,
    isolation: str | None,
    max_retries: int = 3,
):
    delay = 0.1
    for attempt in range(max_retries + 1):
        try:
            return await stack.enter_async_context(
                db_conn(autocommit=autocommit, isolation=isolation)
            )
        except Exception as exc:
            if not is_transient_error(exc):
                raise

            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, isolation: str | None = None):
    """
    Database connection with automatic retry on transient errors
    while acquiring the connection / opening the transaction.

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM contacts WHERE owner_id = $1", owner_id)

    Errors raised inside the block propagate unchanged; retrying a whole
    unit of work is the job of ``retry_on_transient_error``.
    """
    async with AsyncExitStack() as stack:
        conn = await _enter_with_retry(stack, autocommit, isolation)
        yield conn
