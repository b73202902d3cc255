# app/infra/db_resilience_async.py
"""
Transient-error handling for asyncpg.

``safe_db_conn`` retries only the acquisition of a connection.  A query
that fails half-way is never replayed here: job writes are conditional
updates and the caller decides whether a retry is meaningful.
"""
from __future__ import annotations
import asyncio
from typing import AsyncIterator, Callable, TypeVar
from contextlib import AsyncExitStack, asynccontextmanager
from functools import wraps

import asyncpg
from app.infra import db_async
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)

T = TypeVar('T')

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if database error is transient (should retry).

    Connection loss, pool exhaustion, deadlocks and serialization
    failures are transient; constraint violations and syntax errors are not.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    if isinstance(exc, asyncpg.PostgresError):
        # Server-reported errors other than the ones above are deterministic
        return False

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an idempotent async function on transient errors.

    Only for reads and for writes that are safe to replay.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get(self, user_id: str):
            async with safe_db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM profiles WHERE id = $1", user_id)
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
                            f"Max retries ({max_retries}) exceeded in {func.__name__}: {exc}",
                        )
                        inc_counter("db_retries_exhausted", operation=func.__name__)
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

            raise RuntimeError("unreachable")

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(transactional: bool = False) -> AsyncIterator[asyncpg.Connection]:
    """
    Connection from the pool, retrying transient failures while acquiring it.

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM jobs WHERE status = $1", "OPEN")
    """
    max_retries = 3
    delay = 0.1

    for attempt in range(max_retries + 1):
        stack = AsyncExitStack()
        try:
            conn = await stack.enter_async_context(db_async.db_conn(transactional=transactional))
            break
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                if attempt >= max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    async with stack:
        yield conn
