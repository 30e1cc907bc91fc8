"""Fixed-point conversions for fiat quotes and settlement assets."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP


BPS_DENOMINATOR = 10_000
FIAT_MINOR_EXPONENT = 2
_FIAT_QUANT = Decimal(1).scaleb(-FIAT_MINOR_EXPONENT)


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Parse through ``str`` so floats keep their printed value."""
    return value if isinstance(value, Decimal) else Decimal(str(value))


def quantize_fiat(value: Decimal | float | int | str) -> Decimal:
    """Round a fiat amount to its minor unit (cents)."""
    return to_decimal(value).quantize(_FIAT_QUANT, rounding=ROUND_HALF_UP)


def fiat_to_minor_units(value: Decimal | float | int | str) -> int:
    """Convert a fiat amount to integer minor units, e.g. 100.25 USD -> 10025."""
    return int(quantize_fiat(value).scaleb(FIAT_MINOR_EXPONENT))


def is_exact_fiat(value: Decimal | float | int | str) -> bool:
    """True when the amount has no precision beyond the minor unit."""
    dec = to_decimal(value)
    return dec == dec.quantize(_FIAT_QUANT, rounding=ROUND_HALF_UP)


def to_base_units(value: Decimal | float | int | str, decimals: int) -> int:
    """Scale a whole-unit amount to integer base units, rounding down."""
    scaled = to_decimal(value).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_base_units(value: int, decimals: int) -> Decimal:
    """Convert integer base units back to a whole-unit Decimal."""
    return Decimal(value).scaleb(-decimals)


def apply_slippage_floor(amount: int, slippage_bps: int) -> int:
    """Lowest amount still within ``slippage_bps`` below ``amount``."""
    return amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def format_base_units(value: int, decimals: int, symbol: str = "") -> str:
    """Format base units for display, trimming trailing zeros."""
    text = f"{from_base_units(value, decimals).normalize():f}"
    return f"{text} {symbol}".strip()
