# app/infra/escrow_mock.py
"""
In-memory escrow provider.

Stands in for the payment processor in dev and tests.  Behaves like a
manual-capture card processor:

- ``authorize`` places a hold (``requires_capture``)
- ``capture`` moves the hold to the platform; capturing an already
  captured hold returns the original capture
- ``void`` releases a hold; voiding a captured hold is an error
- ``transfer`` pays out from a capture; a repeated idempotency key returns
  the original transfer instead of paying twice

State lives in process memory and is lost on restart.
"""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from app.core.jobs.ports import (
    CaptureResult,
    EscrowAuthorization,
    EscrowError,
    TransferResult,
)
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _gen_id(prefix: str) -> str:
    return f"{prefix}_{time.time_ns():x}_{secrets.token_hex(4)}"


@dataclass
class _Hold:
    handle_id: str
    amount: int
    currency: str
    status: str  # requires_capture | succeeded | canceled
    metadata: dict[str, Any] = field(default_factory=dict)
    capture_id: Optional[str] = None
    transferred: int = 0


class MockEscrowProvider:
    """Dict-backed escrow provider with processor-like idempotency."""

    def __init__(self) -> None:
        self._holds: dict[str, _Hold] = {}
        self._captures: dict[str, str] = {}  # capture_id -> handle_id
        self._transfers: dict[str, TransferResult] = {}  # idempotency_key -> transfer

    async def authorize(
        self, amount: int, currency: str, metadata: dict[str, Any],
    ) -> EscrowAuthorization:
        if amount <= 0:
            raise EscrowError("amount must be positive")
        handle_id = _gen_id("pi")
        self._holds[handle_id] = _Hold(
            handle_id=handle_id,
            amount=amount,
            currency=currency,
            status="requires_capture",
            metadata=dict(metadata),
        )
        logger.debug(f"Mock escrow hold placed: {handle_id}, amount={amount} {currency}")
        return EscrowAuthorization(
            handle_id=handle_id,
            client_token=f"{handle_id}_secret_{secrets.token_hex(4)}",
        )

    async def capture(self, handle_id: str, *, idempotency_key: str) -> CaptureResult:
        hold = self._get_hold(handle_id)
        if hold.status == "canceled":
            raise EscrowError(f"hold {handle_id} was voided")
        if hold.capture_id is None:
            hold.capture_id = _gen_id("ch")
            hold.status = "succeeded"
            self._captures[hold.capture_id] = handle_id
        return CaptureResult(capture_id=hold.capture_id, status=hold.status)

    async def void(self, handle_id: str) -> None:
        hold = self._get_hold(handle_id)
        if hold.status == "succeeded":
            raise EscrowError(f"hold {handle_id} is already captured")
        hold.status = "canceled"

    async def transfer(
        self,
        amount: int,
        destination_id: str,
        source_capture_id: str,
        *,
        idempotency_key: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransferResult:
        existing = self._transfers.get(idempotency_key)
        if existing is not None:
            return existing

        handle_id = self._captures.get(source_capture_id)
        if handle_id is None:
            raise EscrowError(f"unknown capture {source_capture_id}")
        hold = self._holds[handle_id]
        if amount <= 0 or hold.transferred + amount > hold.amount:
            raise EscrowError("transfer exceeds captured amount")

        hold.transferred += amount
        result = TransferResult(
            transfer_id=_gen_id("tr"),
            amount=amount,
            destination_id=destination_id,
        )
        self._transfers[idempotency_key] = result
        return result

    # Inspection helpers for dev tooling and tests

    def hold_status(self, handle_id: str) -> str:
        return self._get_hold(handle_id).status

    def transfers(self) -> list[TransferResult]:
        return list(self._transfers.values())

    def _get_hold(self, handle_id: str) -> _Hold:
        hold = self._holds.get(handle_id)
        if hold is None:
            raise EscrowError(f"unknown hold {handle_id}")
        return hold
