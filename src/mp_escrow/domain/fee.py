"""Platform fee / seller payout split, computed once at creation."""

from dataclasses import dataclass

from src.mp_common.cents import split_amount


@dataclass(frozen=True)
class FeeSplit:
    amount: int
    platform_fee: int
    seller_payout: int


def compute_fee_split(amount: int, fee_rate_bps: int) -> FeeSplit:
    """2.5% (250 bps) of 12000 → FeeSplit(12000, 300, 11700)."""
    if amount <= 0:
        raise ValueError(f"amount must be positive, got {amount}")
    if not (0 <= fee_rate_bps <= 10000):
        raise ValueError(f"fee_rate_bps must be 0-10000, got {fee_rate_bps}")
    platform_fee, seller_payout = split_amount(amount, fee_rate_bps)
    return FeeSplit(amount=amount, platform_fee=platform_fee, seller_payout=seller_payout)
