"""Billing utilities such as the platform fee split."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal


@dataclass(frozen=True)
class PayoutSplit:
    final_bid: Decimal
    platform_fee: Decimal
    seller_proceeds: Decimal


def payout_split(final_bid: Decimal, fee_ratio: Decimal, precision: int = 8) -> PayoutSplit:
    """Split ``final_bid`` into platform fee and seller proceeds.

    The fee is rounded half-even to ``precision`` decimals and the proceeds
    take the remainder, so both legs always sum to the final bid.
    """
    if final_bid <= 0:
        raise ValueError("final bid must be positive")
    if not Decimal(0) <= fee_ratio < Decimal(1):
        raise ValueError("fee ratio must be within [0, 1)")
    quantum = Decimal(1).scaleb(-precision)
    fee = (final_bid * fee_ratio).quantize(quantum, rounding=ROUND_HALF_EVEN)
    return PayoutSplit(final_bid=final_bid, platform_fee=fee, seller_proceeds=final_bid - fee)
