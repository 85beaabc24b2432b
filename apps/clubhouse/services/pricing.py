"""
Charge allocation across line items.

Processors are always called with integer minor units (cents). Payment rows
store major units with two fractional digits.
"""

from decimal import Decimal, ROUND_DOWN
from typing import List, Mapping, Optional

from clubhouse.services.errors import ValidationError

DEFAULT_CURRENCY = "USD"
SUPPORTED_CURRENCIES = ("USD", "CAD", "EUR", "GBP")

_CENTS = Decimal("0.01")


def allocate(total_minor: int, count: int) -> List[int]:
    """
    Split a minor-unit total evenly across ``count`` line items.

    The first ``count - 1`` items get ``floor(total / count)``; the last item
    absorbs the remainder so the parts always sum to the total.

    Args:
        total_minor: Total charge in minor units
        count: Number of line items

    Returns:
        List of per-item minor-unit amounts

    Raises:
        ValidationError: If count is not positive or total is negative
    """
    if count <= 0:
        raise ValidationError("At least one line item is required")
    if total_minor < 0:
        raise ValidationError("Amount cannot be negative")
    share = total_minor // count
    return [share] * (count - 1) + [total_minor - share * (count - 1)]


def to_major(minor: int) -> Decimal:
    """Convert minor units to a two-place Decimal, truncating toward zero."""
    return (Decimal(minor) / 100).quantize(_CENTS, rounding=ROUND_DOWN)


def to_minor(major) -> int:
    """Convert a stored major-unit amount back to integer minor units."""
    return int((Decimal(str(major)) * 100).to_integral_value(rounding=ROUND_DOWN))


def allocate_major(total_minor: int, count: int) -> List[Decimal]:
    """Per-item amounts in major units, using the same split as :func:`allocate`."""
    return [to_major(part) for part in allocate(total_minor, count)]


def format_major(minor: int) -> str:
    """Major-unit string with two decimals ("10.01"), as PayPal expects."""
    return format(to_major(minor), "f")


def resolve_currency(settings: Optional[Mapping] = None) -> str:
    """Currency from a configuration's settings, defaulting to USD."""
    currency = (settings or {}).get("currency") or DEFAULT_CURRENCY
    return str(currency).upper()
