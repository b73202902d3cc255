# app/infra/escrow_resilience.py
"""
Retry wrapper for escrow providers.

Transient failures (``EscrowTransientError``) are retried with
exponential backoff.  Capture and transfer carry an idempotency key, and
every retry reuses the caller's key, so a retried call can never capture
or pay out twice.  ``authorize`` has no key and is not retried: a blind
retry could place two holds.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from app.core.jobs.ports import (
    CaptureResult,
    EscrowAuthorization,
    EscrowProvider,
    EscrowTransientError,
    TransferResult,
)
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ResilientEscrowProvider:
    """Wraps any ``EscrowProvider`` with retry on transient errors."""

    def __init__(
        self,
        inner: EscrowProvider,
        *,
        max_retries: int = 3,
        initial_delay: float = 0.2,
        backoff_factor: float = 2.0,
        max_delay: float = 5.0,
    ) -> None:
        self._inner = inner
        self._max_retries = max_retries
        self._initial_delay = initial_delay
        self._backoff_factor = backoff_factor
        self._max_delay = max_delay

    async def authorize(
        self, amount: int, currency: str, metadata: dict[str, Any],
    ) -> EscrowAuthorization:
        return await self._inner.authorize(amount, currency, metadata)

    async def capture(self, handle_id: str, *, idempotency_key: str) -> CaptureResult:
        return await self._with_retry(
            "capture",
            lambda: self._inner.capture(handle_id, idempotency_key=idempotency_key),
        )

    async def void(self, handle_id: str) -> None:
        await self._with_retry("void", lambda: self._inner.void(handle_id))

    async def transfer(
        self,
        amount: int,
        destination_id: str,
        source_capture_id: str,
        *,
        idempotency_key: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransferResult:
        return await self._with_retry(
            "transfer",
            lambda: self._inner.transfer(
                amount,
                destination_id,
                source_capture_id,
                idempotency_key=idempotency_key,
                metadata=metadata,
            ),
        )

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        delay = self._initial_delay

        for attempt in range(self._max_retries + 1):
            try:
                return await call()
            except EscrowTransientError as exc:
                if attempt >= self._max_retries:
                    logger.error(
                        f"Escrow {operation}: max retries ({self._max_retries}) exceeded"
                    )
                    raise

                logger.warning(
                    f"Transient escrow error in {operation} "
                    f"(attempt {attempt + 1}/{self._max_retries}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * self._backoff_factor, self._max_delay)

        raise RuntimeError("unreachable")
