"""
Centralized validation rules for caller-supplied values.

The ``validate_*`` helpers return ``(is_valid, error_message)`` tuples;
``require`` turns a failed check into a ``ValidationError``.
"""
import math
from typing import Optional, Tuple


class ValidationError(ValueError):
    """Caller-correctable input error. Raised before any write happens."""
    pass


def validate_quantity(
    qty,
    allow_zero: bool = False,
    max_val: Optional[float] = None,
) -> Tuple[bool, str]:
    """
    Validate a (possibly fractional) quantity.

    Args:
        qty: Quantity to validate
        allow_zero: Whether 0 is accepted
        max_val: Maximum allowed value (inclusive), e.g. current stock

    Returns:
        (is_valid, error_message)
    """
    if isinstance(qty, bool) or not isinstance(qty, (int, float)):
        return False, f"Quantity must be a number, got {qty!r}"

    if math.isnan(qty) or math.isinf(qty):
        return False, "Quantity must be a finite number"

    if qty < 0 or (qty == 0 and not allow_zero):
        return False, f"Quantity must be greater than 0, got {qty}"

    if max_val is not None and qty > max_val:
        return False, f"Quantity {qty} exceeds available stock {max_val}"

    return True, ""


def validate_price(price, allow_zero: bool = False) -> Tuple[bool, str]:
    """
    Validate a unit price or cost.

    Returns:
        (is_valid, error_message)
    """
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return False, f"Price must be a number, got {price!r}"

    if math.isnan(price) or math.isinf(price):
        return False, "Price must be a finite number"

    if price < 0 or (price == 0 and not allow_zero):
        return False, f"Price must be greater than 0, got {price}"

    return True, ""


def require(check: Tuple[bool, str], context: str = "") -> None:
    """
    Raise ValidationError when *check* failed.

    Args:
        check: Result of a validate_* helper
        context: Optional prefix (e.g. product id) for the message
    """
    is_valid, message = check
    if not is_valid:
        raise ValidationError(f"{context}: {message}" if context else message)
