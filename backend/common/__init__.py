"""Common reusable utility exports."""

from .money import (
    DEFAULT_TOLERANCE,
    ZERO,
    floor_money,
    percentage_of,
    ratio_percent,
    round_money,
    sum_money,
    to_decimal,
    within_tolerance,
)

__all__ = [
    "DEFAULT_TOLERANCE",
    "ZERO",
    "floor_money",
    "percentage_of",
    "ratio_percent",
    "round_money",
    "sum_money",
    "to_decimal",
    "within_tolerance",
]
