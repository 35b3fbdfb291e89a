"""
Currency rounding.

All monetary values are rounded to cents, half-up, so that incremental
updates and full replays land on exactly the same figures.
"""
from decimal import Decimal, ROUND_HALF_UP

_CENTS = Decimal("0.01")


def round_currency(value) -> float:
    """
    Round a monetary amount to two decimals (half-up).

    Args:
        value: int, float, Decimal or None (None counts as 0)

    Returns:
        Rounded float
    """
    if value is None:
        return 0.0
    # str() avoids binary float artifacts (e.g. 1.005 -> 1.00499999...)
    return float(Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def to_number(value, default: float = 0.0) -> float:
    """Coerce a stored value to float, falling back to *default* on junk."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
