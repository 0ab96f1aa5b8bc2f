"""Prediction market price and money calculations.

Everything canonical is priced in integer basis points (10000 = 100%)
and money is carried as decimal strings:
- Provider price conventions (probability, cents, bid/ask midpoint) to bps
- Complementary yes/no pricing that always sums to 10000
- Decimal money parsing and USD notional for trades
- Two-leg complementary cost for cross-provider arbitrage
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Tuple

BPS_SCALE = 10000
DEFAULT_YES_BPS = 5000
_CENT = Decimal("0.01")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def clamp_bps(bps: int) -> int:
    return max(0, min(BPS_SCALE, int(bps)))


def probability_to_bps(value: Any) -> Optional[int]:
    """0.0-1.0 probability (number or string) to basis points.

    "0.65" -> 6500, 0.123456 -> 1235. Returns None when unparseable.
    """
    number = _to_decimal(value)
    if number is None:
        return None
    bps = (number * BPS_SCALE).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return clamp_bps(int(bps))


def cents_to_bps(value: Any) -> Optional[int]:
    """0-100 cent price to basis points: 42 -> 4200."""
    number = _to_decimal(value)
    if number is None:
        return None
    return clamp_bps(int((number * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def complement(yes_bps: Optional[int]) -> Tuple[int, int]:
    """Return (yes, no) bps summing to 10000, 50/50 when yes is unknown."""
    if yes_bps is None:
        yes_bps = DEFAULT_YES_BPS
    yes_bps = clamp_bps(yes_bps)
    return yes_bps, BPS_SCALE - yes_bps


def decimal_str(value: Any, default: str = "0") -> str:
    """Normalize a money amount to a plain decimal string.

    Float inputs go through ``str()`` first so 0.1 stays "0.1" instead of
    picking up binary noise.
    """
    number = _to_decimal(value)
    if number is None:
        return default
    normalized = number.normalize()
    # normalize() turns 100 into 1E+2
    if normalized == normalized.to_integral():
        return str(normalized.quantize(Decimal("1")))
    return format(normalized, "f")


def usd_notional(shares: Any, price: Any) -> Decimal:
    """shares x price in USD, rounded to cents. Missing inputs give 0."""
    share_count = _to_decimal(shares) or Decimal("0")
    unit_price = _to_decimal(price) or Decimal("0")
    return (share_count * unit_price).quantize(_CENT, rounding=ROUND_HALF_UP)


def spread_bps(yes_a: int, yes_b: int) -> int:
    return abs(int(yes_a) - int(yes_b))


def complementary_costs(yes_a: int, no_a: int,
                        yes_b: int, no_b: int) -> Tuple[int, int]:
    """Combined cost in bps of the two hedged leg pairings.

    First: buy YES on A and NO on B. Second: buy YES on B and NO on A.
    A combined cost under 10000 pays out 10000 whichever way the event
    resolves.
    """
    return yes_a + no_b, yes_b + no_a


def profit_percent(cost_bps: int) -> float:
    """Guaranteed profit in percentage points for a combined leg cost.

    7500 bps -> 25.0
    """
    return (BPS_SCALE - cost_bps) / 100.0


def cents_to_usd(value: Any) -> str:
    """Cent amount to a USD decimal string: 12345 -> "123.45"."""
    number = _to_decimal(value)
    if number is None:
        return "0"
    return decimal_str(number / 100)
