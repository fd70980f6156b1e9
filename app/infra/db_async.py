# app/infra/db_async.py
"""
Async database connection using asyncpg.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        timeout=settings.pg_connect_timeout,
        server_settings={
            'application_name': 'dispatch_engine',
            'statement_timeout': str(settings.pg_statement_timeout_ms),
            'idle_in_transaction_session_timeout': str(settings.pg_idle_in_tx_timeout_ms),
        }
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(
    autocommit: bool = True,
    isolation: str | None = None,
) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool (async).

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM contacts WHERE id = $1", contact_id)

        async with db_conn(autocommit=False, isolation="serializable") as conn:
            ...  # committed on exit, rolled back on exception

    Args:
        autocommit: If True (default), each statement commits on its own.
            If False, the block runs in one transaction.
        isolation: Transaction isolation level when autocommit=False
            ("read_committed", "repeatable_read", "serializable").

    Yields:
        asyncpg.Connection
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if not autocommit:
            transaction = conn.transaction(isolation=isolation) if isolation else conn.transaction()
            await transaction.start()

            try:
                yield conn
                await transaction.commit()
            except BaseException:
                await transaction.rollback()
                raise
        else:
            yield conn
    finally:
        await _pool.release(conn)


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (for advanced usage)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
