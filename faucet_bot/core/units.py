# faucet_bot/core/units.py
"""Conversion between human token amounts ("0.05") and integer base units."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation

from faucet_bot.core.errors import InvalidAmountError


def parse_units(value: str, decimals: int) -> int:
    """
    Parse a decimal string into base units.

    Raises:
        InvalidAmountError: not a number, negative/zero, or too many decimals
    """
    try:
        amount = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        raise InvalidAmountError(f"Not a number: {value!r}")

    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError(f"Amount must be positive: {value!r}")

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidAmountError(f"Too many decimal places (max {decimals}): {value!r}")
    return int(scaled)


def format_units(amount: int, decimals: int) -> str:
    """Render base units as a trimmed decimal string: 50000000000000000 → "0.05"."""
    if decimals == 0:
        return str(amount)
    text = format(Decimal(amount).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
