"""
Money helpers. Amounts are stored as integer cents and rates as basis points.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[int, float, str, Decimal]

CENT = Decimal("0.01")
BPS_PER_PERCENT = 100

def to_cents(amount: Number) -> int:
    """Convert a USD amount to integer cents, rounding half up."""
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)

def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)

def percent_to_bps(percent: Number) -> int:
    value = Decimal(str(percent)) * BPS_PER_PERCENT
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))

def bps_to_percent(bps: int) -> Decimal:
    return (Decimal(int(bps)) / BPS_PER_PERCENT).quantize(CENT)

def apply_bps(cents: int, bps: int) -> int:
    """Share of `cents` at a basis-point rate, rounded half up to the cent."""
    share = Decimal(int(cents)) * Decimal(int(bps)) / Decimal(100 * BPS_PER_PERCENT)
    return int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP))

def apply_percent(cents: int, percent: Number) -> int:
    share = Decimal(int(cents)) * Decimal(str(percent)) / 100
    return int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP))

def format_percent(percent: Number) -> str:
    """Percentage without trailing zeros: 30.00 -> '30', 33.50 -> '33.5'."""
    return format(Decimal(str(percent)).normalize(), "f")

def format_usd(cents: int) -> str:
    return f"${from_cents(cents):,.2f}"
