"""Unit tests for payment plan, ledger and schedule models."""

from datetime import date
from decimal import Decimal
from pathlib import Path
import sys
import unittest

from pydantic import ValidationError


PROJECT_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.enums import FundingMethod, FundingOption, LedgerEntryStatus, ScheduleEntryStatus
from models.exceptions import ExceedsAllocation, ModelValidationError
from models.ledger import LedgerEntryModel
from models.plans import PaymentPlanModel
from models.schedules import RepaymentScheduleModel, ScheduleEntryModel


def _plan(**overrides) -> PaymentPlanModel:
    payload = {
        "plan_id": "plan_1",
        "tenant_id": "tenant_1",
        "member_id": "member_1",
        "property_id": "prop_1",
        "funding_option": FundingOption.MIX,
        "selected_methods": [FundingMethod.EQUITY_WALLET, FundingMethod.COOPERATIVE],
        "allocations": [
            {"method": "equity_wallet", "percentage": "40"},
            {"method": "cooperative", "percentage": "60"},
        ],
        "total_amount": "10000000",
    }
    payload.update(overrides)
    return PaymentPlanModel(**payload)


class PaymentPlanModelTests(unittest.TestCase):
    """Plan method-set and allocation invariants."""

    def test_mix_plan_resolves_targets(self) -> None:
        plan = _plan()
        self.assertEqual(plan.target_for(FundingMethod.EQUITY_WALLET), Decimal("4000000.00"))
        self.assertEqual(plan.target_for(FundingMethod.COOPERATIVE), Decimal("6000000.00"))
        self.assertIsNone(plan.target_for(FundingMethod.CASH))
        self.assertEqual(plan.total_amount, Decimal("10000000.00"))

    def test_percentages_must_sum_to_hundred(self) -> None:
        with self.assertRaises(ValidationError):
            _plan(
                allocations=[
                    {"method": "equity_wallet", "percentage": "40"},
                    {"method": "cooperative", "percentage": "50"},
                ]
            )

    def test_single_plan_needs_one_method_at_full_share(self) -> None:
        with self.assertRaises(ValidationError):
            _plan(funding_option=FundingOption.SINGLE)
        with self.assertRaises(ValidationError):
            _plan(
                funding_option=FundingOption.SINGLE,
                selected_methods=[FundingMethod.CASH],
                allocations=[{"method": "cash", "percentage": "90"}],
            )

    def test_mix_plan_rejects_more_than_three_methods(self) -> None:
        with self.assertRaises(ValidationError):
            _plan(
                selected_methods=[
                    FundingMethod.EQUITY_WALLET,
                    FundingMethod.CASH,
                    FundingMethod.MORTGAGE,
                    FundingMethod.LOAN,
                ],
                allocations=[
                    {"method": "equity_wallet", "percentage": "25"},
                    {"method": "cash", "percentage": "25"},
                    {"method": "mortgage", "percentage": "25"},
                    {"method": "loan", "percentage": "25"},
                ],
            )

    def test_duplicate_methods_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            _plan(selected_methods=[FundingMethod.CASH, FundingMethod.CASH])

    def test_allocations_must_cover_selected_methods(self) -> None:
        with self.assertRaises(ValidationError):
            _plan(
                allocations=[
                    {"method": "equity_wallet", "percentage": "40"},
                    {"method": "cash", "percentage": "60"},
                ]
            )

    def test_explicit_target_amount_wins_over_percentage(self) -> None:
        plan = _plan(
            allocations=[
                {"method": "equity_wallet", "percentage": "40", "target_amount": "3500000"},
                {"method": "cooperative", "target_amount": "6500000"},
            ]
        )
        self.assertEqual(plan.target_for(FundingMethod.EQUITY_WALLET), Decimal("3500000.00"))
        self.assertEqual(plan.target_for(FundingMethod.COOPERATIVE), Decimal("6500000.00"))

    def test_rounding_residue_goes_to_last_percentage_method(self) -> None:
        plan = _plan(
            funding_option=FundingOption.MIX,
            selected_methods=[FundingMethod.EQUITY_WALLET, FundingMethod.CASH, FundingMethod.COOPERATIVE],
            allocations=[
                {"method": "equity_wallet", "percentage": "33.33"},
                {"method": "cash", "percentage": "33.33"},
                {"method": "cooperative", "percentage": "33.34"},
            ],
            total_amount="100.01",
        )
        targets = plan.target_amounts()
        self.assertEqual(sum(targets.values()), Decimal("100.01"))
        self.assertEqual(targets[FundingMethod.EQUITY_WALLET], Decimal("33.33"))


class LedgerEntryModelTests(unittest.TestCase):
    """Ledger entries are frozen cent-precision records."""

    def test_entry_is_immutable(self) -> None:
        entry = LedgerEntryModel(entry_id="led_1", plan_id="plan_1", method=FundingMethod.CASH, amount="10.005")
        self.assertEqual(entry.amount, Decimal("10.01"))
        self.assertEqual(entry.status, LedgerEntryStatus.PENDING)
        with self.assertRaises(ValidationError):
            entry.amount = Decimal("1.00")

    def test_amount_must_be_positive(self) -> None:
        with self.assertRaises(ValidationError):
            LedgerEntryModel(entry_id="led_1", plan_id="plan_1", method=FundingMethod.CASH, amount="0")

    def test_store_round_trip_keeps_decimal_text(self) -> None:
        entry = LedgerEntryModel(entry_id="led_1", plan_id="plan_1", method=FundingMethod.CASH, amount="250.50")
        payload = entry.to_firestore()
        self.assertEqual(payload["amount"], "250.50")
        restored = LedgerEntryModel.from_firestore(payload, doc_id="led_1")
        self.assertEqual(restored.amount, Decimal("250.50"))


class ScheduleModelTests(unittest.TestCase):
    """Schedule entry arithmetic and status machine."""

    def _entry(self, period: int, principal: str, interest: str, closing: str) -> ScheduleEntryModel:
        return ScheduleEntryModel(
            schedule_entry_id="sch_{0}".format(period),
            period_index=period,
            due_date=date(2026, period, 1),
            principal_component=principal,
            interest_component=interest,
            total=Decimal(principal) + Decimal(interest),
            closing_balance=closing,
        )

    def test_total_must_equal_components(self) -> None:
        with self.assertRaises(ValidationError):
            ScheduleEntryModel(
                schedule_entry_id="sch_1",
                period_index=1,
                due_date=date(2026, 2, 1),
                principal_component="100.00",
                interest_component="5.00",
                total="100.00",
                closing_balance="0.00",
            )

    def test_paid_is_terminal(self) -> None:
        entry = self._entry(1, "100.00", "0.00", "0.00")
        self.assertTrue(entry.can_transition_to(ScheduleEntryStatus.OVERDUE))
        paid = entry.model_copy(update={"status": ScheduleEntryStatus.PAID})
        self.assertFalse(paid.can_transition_to(ScheduleEntryStatus.OVERDUE))
        self.assertFalse(paid.can_transition_to(ScheduleEntryStatus.PENDING))

    def test_validate_schedule_reconciles_principal(self) -> None:
        entries = [self._entry(1, "60.00", "1.00", "40.00"), self._entry(2, "40.00", "0.50", "0.00")]
        RepaymentScheduleModel.validate_schedule(entries, Decimal("100.00"))
        with self.assertRaises(ModelValidationError):
            RepaymentScheduleModel.validate_schedule(entries, Decimal("120.00"))
        with self.assertRaises(ModelValidationError):
            RepaymentScheduleModel.validate_schedule(list(reversed(entries)), Decimal("100.00"))

    def test_schedule_requires_interest_bearing_method(self) -> None:
        with self.assertRaises(ValidationError):
            RepaymentScheduleModel(
                schedule_id="rsc_1",
                plan_id="plan_1",
                method=FundingMethod.CASH,
                principal="100",
                interest_rate="0",
                tenure_periods=1,
                start_date=date(2026, 1, 1),
                level_payment="100",
            )


class PaymentErrorPayloadTests(unittest.TestCase):
    """Payment errors serialize into the API failure shape."""

    def test_payload_stringifies_money(self) -> None:
        error = ExceedsAllocation("too much", context={"method": "cash", "remaining": Decimal("12.50")})
        self.assertEqual(
            error.to_payload(),
            {
                "success": False,
                "message": "too much",
                "error_kind": "ExceedsAllocation",
                "context": {"method": "cash", "remaining": "12.50"},
            },
        )


if __name__ == "__main__":
    unittest.main()
