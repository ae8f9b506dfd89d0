"""Unit tests for the in-memory payment store's conditional writes."""

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
import sys
import unittest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.enums import FundingMethod, FundingOption, LedgerEntryStatus, PlanStatus, ScheduleEntryStatus
from models.exceptions import AllocationConflict, ModelNotFoundError, VersionConflictError
from models.ledger import LedgerEntryModel
from models.plans import PaymentPlanModel
from models.schedules import RepaymentScheduleModel, ScheduleEntryModel
from repositories.memory_payment_store import InMemoryPaymentStore


def _entry(entry_id: str, amount: str, status=LedgerEntryStatus.COMPLETED, **fields) -> LedgerEntryModel:
    return LedgerEntryModel(
        entry_id=entry_id,
        plan_id="plan_store",
        method=FundingMethod.CASH,
        amount=amount,
        status=status,
        **fields
    )


class InMemoryPaymentStoreTests(unittest.TestCase):
    """Append-only ledger and schedule writes under one lock."""

    def setUp(self) -> None:
        self.store = InMemoryPaymentStore()

    def test_sequences_increase_per_plan(self) -> None:
        first = self.store.append_entry(_entry("led_a", "10"))
        second = self.store.append_entry(_entry("led_b", "20"))
        self.assertEqual((first.sequence, second.sequence), (1, 2))
        self.assertLess(first.created_at, second.created_at)
        self.assertEqual([item.entry_id for item in self.store.list_entries("plan_store")], ["led_a", "led_b"])

    def test_duplicate_submission_token_returns_existing_entry(self) -> None:
        first = self.store.append_entry(_entry("led_a", "10", submission_token="tok-1"))
        again = self.store.append_entry(_entry("led_b", "10", submission_token="tok-1"))
        self.assertEqual(again.entry_id, first.entry_id)
        self.assertEqual(len(self.store.list_entries("plan_store")), 1)

    def test_ceiling_counts_pending_and_completed_credits(self) -> None:
        self.store.append_entry(_entry("led_a", "60", status=LedgerEntryStatus.PENDING), ceiling=Decimal("100"))
        with self.assertRaises(AllocationConflict) as ctx:
            self.store.append_entry(_entry("led_b", "50"), ceiling=Decimal("100"))
        self.assertEqual(ctx.exception.context["available"], Decimal("40.00"))
        self.assertEqual(len(self.store.list_entries("plan_store")), 1)

    def test_rejected_entries_release_allocation(self) -> None:
        self.store.append_entry(_entry("led_a", "60", status=LedgerEntryStatus.PENDING), ceiling=Decimal("100"))
        self.store.transition_entry("led_a", LedgerEntryStatus.PENDING, LedgerEntryStatus.REJECTED)
        stored = self.store.append_entry(_entry("led_b", "100"), ceiling=Decimal("100"))
        self.assertEqual(stored.amount, Decimal("100.00"))

    def test_transition_requires_expected_status(self) -> None:
        self.store.append_entry(_entry("led_a", "10", status=LedgerEntryStatus.PENDING))
        settled = self.store.transition_entry(
            "led_a",
            LedgerEntryStatus.PENDING,
            LedgerEntryStatus.COMPLETED,
            {"resolved_by": "admin_1"},
        )
        self.assertEqual(settled.status, LedgerEntryStatus.COMPLETED)
        self.assertEqual(settled.resolved_by, "admin_1")
        with self.assertRaises(VersionConflictError):
            self.store.transition_entry("led_a", LedgerEntryStatus.PENDING, LedgerEntryStatus.REJECTED)

    def test_missing_records_raise_not_found(self) -> None:
        with self.assertRaises(ModelNotFoundError):
            self.store.get_plan("plan_missing")
        with self.assertRaises(ModelNotFoundError):
            self.store.get_entry("led_missing")
        with self.assertRaises(ModelNotFoundError):
            self.store.find_schedule(FundingMethod.MORTGAGE, "mtg_missing")

    def test_plan_update_is_version_checked(self) -> None:
        plan = self.store.create_plan(
            PaymentPlanModel(
                plan_id="plan_store",
                tenant_id="t",
                member_id="m",
                property_id="p",
                funding_option=FundingOption.SINGLE,
                selected_methods=[FundingMethod.CASH],
                allocations=[{"method": "cash", "percentage": "100"}],
                total_amount="500",
            )
        )
        updated = self.store.update_plan(plan.model_copy(update={"notes": "first"}), expected_version=1)
        self.assertEqual(updated.version, 2)
        with self.assertRaises(VersionConflictError):
            self.store.update_plan(plan.model_copy(update={"notes": "stale"}), expected_version=1)

    def test_replace_plan_commits_all_or_nothing(self) -> None:
        plan = self.store.create_plan(
            PaymentPlanModel(
                plan_id="plan_old",
                tenant_id="t",
                member_id="m",
                property_id="p",
                funding_option=FundingOption.SINGLE,
                selected_methods=[FundingMethod.CASH],
                allocations=[{"method": "cash", "percentage": "100"}],
                total_amount="500",
            )
        )
        replacement = plan.model_copy(update={"plan_id": "plan_new", "id": None})
        superseded = plan.model_copy(update={"status": PlanStatus.SUPERSEDED, "superseded_by": "plan_new"})
        carry = _entry("led_carry", "200").model_copy(update={"plan_id": "plan_new"})

        with self.assertRaises(VersionConflictError):
            self.store.replace_plan(superseded, 7, replacement, [carry])
        self.assertEqual(self.store.get_plan("plan_old").status, plan.status)
        with self.assertRaises(ModelNotFoundError):
            self.store.get_plan("plan_new")
        self.assertEqual(self.store.list_entries("plan_new"), [])

        stored = self.store.replace_plan(superseded, plan.version, replacement, [carry])
        self.assertEqual(stored.plan_id, "plan_new")
        self.assertEqual(self.store.get_plan("plan_old").status, PlanStatus.SUPERSEDED)
        self.assertEqual([item.sequence for item in self.store.list_entries("plan_new")], [1])

    def test_schedule_entry_and_ledger_commit_together(self) -> None:
        self.store.create_schedule(
            RepaymentScheduleModel(
                schedule_id="rsc_store",
                plan_id="plan_store",
                method=FundingMethod.LOAN,
                external_ref="loan_1",
                principal="100",
                interest_rate="0",
                tenure_periods=1,
                start_date=date(2026, 1, 1),
                level_payment="100",
                schedule=[
                    ScheduleEntryModel(
                        schedule_entry_id="sch_1",
                        period_index=1,
                        due_date=date(2026, 2, 1),
                        principal_component="100",
                        interest_component="0",
                        total="100",
                        closing_balance="0",
                    )
                ],
            )
        )
        credit = LedgerEntryModel(entry_id="led_loan", plan_id="plan_store", method=FundingMethod.LOAN, amount="100")

        with self.assertRaises(AllocationConflict):
            self.store.update_schedule_entry(
                "rsc_store",
                1,
                [ScheduleEntryStatus.PENDING],
                {"status": ScheduleEntryStatus.PAID},
                ledger_entry=credit,
                ceiling=Decimal("50"),
            )
        self.assertEqual(self.store.get_schedule("rsc_store").schedule[0].status, ScheduleEntryStatus.PENDING)
        self.assertEqual(self.store.list_entries("plan_store"), [])

        _, entry, stored = self.store.update_schedule_entry(
            "rsc_store",
            1,
            [ScheduleEntryStatus.PENDING],
            {"status": ScheduleEntryStatus.PAID},
            ledger_entry=credit,
            ceiling=Decimal("100"),
        )
        self.assertEqual(entry.status, ScheduleEntryStatus.PAID)
        self.assertEqual(entry.ledger_entry_id, "led_loan")
        self.assertEqual(stored.sequence, 1)

        with self.assertRaises(VersionConflictError):
            self.store.update_schedule_entry(
                "rsc_store", 1, [ScheduleEntryStatus.PENDING], {"status": ScheduleEntryStatus.OVERDUE}
            )
        due = self.store.list_due_schedule_entries(datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(due, [])


if __name__ == "__main__":
    unittest.main()
