"""Unit tests for fixed-point money helpers."""

from decimal import Decimal
from pathlib import Path
import sys
import unittest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from common.money import (
    floor_money,
    percentage_of,
    ratio_percent,
    round_money,
    sum_money,
    to_decimal,
    within_tolerance,
)


class MoneyHelperTests(unittest.TestCase):
    """Cent-precision arithmetic used by every ledger calculation."""

    def test_float_input_goes_through_text(self) -> None:
        self.assertEqual(to_decimal(0.1), Decimal("0.1"))
        self.assertEqual(sum_money([0.1, 0.2]), Decimal("0.30"))

    def test_invalid_amount_raises_value_error(self) -> None:
        with self.assertRaises(ValueError):
            to_decimal("ten naira")

    def test_round_half_up_and_floor(self) -> None:
        self.assertEqual(round_money("2.345"), Decimal("2.35"))
        self.assertEqual(floor_money("2.349"), Decimal("2.34"))
        self.assertEqual(round_money(None), Decimal("0.00"))

    def test_percentage_of_total(self) -> None:
        self.assertEqual(percentage_of("10000000", "40"), Decimal("4000000.00"))
        self.assertEqual(percentage_of("100.01", "33.33"), Decimal("33.33"))

    def test_ratio_percent_is_clamped(self) -> None:
        self.assertEqual(ratio_percent("2500", "10000"), Decimal("25.00"))
        self.assertEqual(ratio_percent("20000", "10000"), Decimal("100.00"))
        self.assertEqual(ratio_percent("1", "0"), Decimal("0.00"))

    def test_within_tolerance(self) -> None:
        self.assertTrue(within_tolerance("100.00", "100.01"))
        self.assertFalse(within_tolerance("100.00", "100.02"))


if __name__ == "__main__":
    unittest.main()
