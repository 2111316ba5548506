"""Token amount helpers. All on-chain amounts are integer base units."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR


DEFAULT_DECIMALS = 18
BPS_DENOMINATOR = 10_000


def parse_units(value: Decimal | float | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a human amount ("10.5") to base units, rounding down."""
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    dec = Decimal(str(value))
    if dec < 0:
        raise ValueError(f"Negative token amount: {value}")
    scaled = (dec * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR)
    return int(scaled)


def format_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Format base units as a plain decimal string without trailing zeros."""
    dec = Decimal(int(value)) / (Decimal(10) ** decimals)
    text = format(dec.normalize(), "f")
    return text


def bps_of(amount: int, bps: int) -> int:
    """Apply a basis-point rate to an amount, rounding down."""
    return amount * bps // BPS_DENOMINATOR


def rate_bps(part: int, whole: int) -> int:
    """Ratio of ``part`` to ``whole`` in basis points (0 when whole is 0)."""
    if whole <= 0:
        return 0
    return part * BPS_DENOMINATOR // whole
