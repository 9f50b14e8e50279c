"""Integer arithmetic utilities for money.

All amounts, fees and payouts are int minor units (cents). No float, no Decimal.
"""

BPS_DENOMINATOR = 10000


def cents_to_display(cents: int) -> str:
    """Convert cents to display string: 12000 -> '$120.00', -1200 -> '-$12.00'."""
    if cents < 0:
        abs_cents = -cents
        return f"-${abs_cents // 100:,}.{abs_cents % 100:02d}"
    return f"${cents // 100:,}.{cents % 100:02d}"


def calculate_platform_fee(amount: int, fee_rate_bps: int) -> int:
    """Platform fee rounded half-up to the nearest cent.

    fee = round(amount * fee_rate_bps / 10000)
    Using integer half-up: (a * r + 5000) // 10000
    """
    if amount == 0 or fee_rate_bps == 0:
        return 0
    return (amount * fee_rate_bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR


def split_amount(amount: int, fee_rate_bps: int) -> tuple[int, int]:
    """Return (platform_fee, seller_payout); the two always sum to amount."""
    platform_fee = calculate_platform_fee(amount, fee_rate_bps)
    return platform_fee, amount - platform_fee
