"""Fixed-point money helpers shared by ledger, allocation and schedule code.

All amounts are ``Decimal`` values quantized to two places. Binary floats are
never used for money: inputs are converted through ``str`` first so that
``0.1`` becomes ``Decimal("0.1")`` rather than its float expansion.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any, Iterable


logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
RATE_PLACES = Decimal("0.0000000001")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
DEFAULT_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Convert int/str/float/Decimal into an exact ``Decimal``.

    Raises:
        ValueError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        logger.warning("Invalid monetary value '%s'", value)
        raise ValueError("Invalid amount: {0}".format(value))


def round_money(value: Any, rounding: str = ROUND_HALF_UP) -> Decimal:
    """Quantize a value to two decimal places."""
    if value is None:
        return ZERO
    return to_decimal(value).quantize(TWO_PLACES, rounding=rounding)


def floor_money(value: Any) -> Decimal:
    """Quantize toward zero so derived ceilings never over-credit by a fraction."""
    return round_money(value, rounding=ROUND_DOWN)


def sum_money(amounts: Iterable[Any]) -> Decimal:
    """Sum amounts exactly and quantize the result."""
    total = ZERO
    for amount in amounts:
        total += to_decimal(amount)
    return round_money(total)


def percentage_of(total: Any, percentage: Any) -> Decimal:
    """Return ``total * percentage / 100`` rounded to cents."""
    return round_money(to_decimal(total) * to_decimal(percentage) / HUNDRED)


def ratio_percent(part: Any, whole: Any) -> Decimal:
    """Return ``part / whole * 100`` clamped to [0, 100]; zero when whole is zero."""
    whole_value = to_decimal(whole)
    if whole_value <= 0:
        return ZERO
    value = round_money(to_decimal(part) / whole_value * HUNDRED)
    return max(ZERO, min(HUNDRED.quantize(TWO_PLACES), value))


def within_tolerance(left: Any, right: Any, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    """Return whether two amounts differ by at most ``tolerance``."""
    return abs(to_decimal(left) - to_decimal(right)) <= tolerance
