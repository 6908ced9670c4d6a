"""Amount conversion helpers using fixed smallest-unit precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation


DECIMALS = 6
UNITS_PER_TOKEN = 10**DECIMALS
_QUANT = Decimal(1).scaleb(-DECIMALS)


def parse_amount(value: Decimal | int | str) -> Decimal:
    """Parse a decimal amount string without ever going through float."""
    if isinstance(value, float):
        raise TypeError("Amounts must be decimal strings, not floats")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite() or dec < 0:
        raise ValueError(f"Invalid amount: {value!r}")
    return dec


def to_units(value: Decimal | int | str) -> int:
    """Convert a decimal token amount to integer smallest units (exact)."""
    dec = parse_amount(value)
    scaled = dec * UNITS_PER_TOKEN
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {value} has more than {DECIMALS} decimal places")
    return int(scaled)


def from_units(units: int) -> Decimal:
    """Convert integer smallest units to a Decimal token amount."""
    return (Decimal(units) / UNITS_PER_TOKEN).quantize(_QUANT)


def format_amount(value: Decimal | int | str) -> str:
    """Render a token amount as a decimal string with at least two places."""
    dec = parse_amount(value).quantize(_QUANT)
    text = format(dec, "f").rstrip("0")
    whole, _, frac = text.partition(".")
    return f"{whole}.{frac.ljust(2, '0')}"


def format_units(units: int) -> str:
    """Human-readable amount for integer smallest units."""
    sign = "-" if units < 0 else ""
    return sign + format_amount(from_units(abs(units)))
