# app/infra/db_async.py
"""
asyncpg connection pool shared by the repositories.

The pool is created once in the app lifespan (``init_pool``) and closed on
shutdown.  Each connection gets statement and idle-in-transaction timeouts
so a stuck query cannot hold a customer's advisory lock indefinitely.
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
        timeout=settings.pg_connect_timeout,
        command_timeout=60,
        server_settings={
            "application_name": f"cleanops_{settings.run_mode}",
            "statement_timeout": str(settings.pg_statement_timeout_ms),
            "idle_in_transaction_session_timeout": str(settings.pg_idle_in_tx_timeout_ms),
        },
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


async def get_pool() -> asyncpg.Pool:
    """Get connection pool (must be initialized first)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")
    return _pool


@asynccontextmanager
async def db_conn(transactional: bool = False) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a connection from the pool.

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

        async with db_conn(transactional=True) as conn:
            ...  # committed on exit, rolled back on exception
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    async with _pool.acquire() as conn:
        if transactional:
            async with conn.transaction():
                yield conn
        else:
            yield conn
