# app/core/jobs/fees.py
"""
Platform fee arithmetic.

Amounts are integer minor units. The fee is rounded half-up
(``333 * 15% = 49.95 -> 50``, ``130 * 5% = 6.5 -> 7``); Decimal keeps the
half-way cases exact where float rounding would not.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP


@dataclass(frozen=True)
class PayoutSplit:
    price_amount: int
    fee_percent: float
    fee_amount: int
    transfer_amount: int


def platform_fee(price_amount: int, fee_percent: float) -> int:
    exact = Decimal(price_amount) * Decimal(str(fee_percent)) / Decimal(100)
    return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def split_payout(price_amount: int, fee_percent: float) -> PayoutSplit:
    """Split a job price into the platform fee and the worker transfer."""
    fee = platform_fee(price_amount, fee_percent)
    return PayoutSplit(
        price_amount=price_amount,
        fee_percent=fee_percent,
        fee_amount=fee,
        transfer_amount=price_amount - fee,
    )
