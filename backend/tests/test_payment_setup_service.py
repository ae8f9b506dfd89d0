"""Unit tests for plan setup, admin review and the payment-setup view."""

from datetime import date
from decimal import Decimal
from pathlib import Path
import sys
import unittest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = PROJECT_ROOT / "backend"
TESTS_ROOT = BACKEND_ROOT / "tests"
for _path in (BACKEND_ROOT, TESTS_ROOT):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from models.enums import FundingMethod, LedgerEntryStatus, PlanStatus
from models.exceptions import (
    InvalidAllocation,
    InvalidAmount,
    InvalidStateTransition,
    PersistenceUnavailable,
    PlanLocked,
    RecordNotFound,
)
from repositories.memory_payment_store import InMemoryPaymentStore
from services.collaborators import PayerInfo
from payment_fixtures import (
    MEMBER_ID,
    PROPERTY_ID,
    TENANT_ID,
    build_service,
    create_active_plan,
    receipt,
)


def _cash(service, amount, **kwargs):
    return service.submit_payment(
        TENANT_ID,
        MEMBER_ID,
        PROPERTY_ID,
        "cash",
        amount,
        payer=PayerInfo(name="Chidi Eze"),
        evidence=receipt(),
        **kwargs
    )


class _UnavailableReplaceStore(InMemoryPaymentStore):
    def replace_plan(self, superseded, expected_version, replacement, entries=()):
        raise RuntimeError("datastore transaction aborted")


class PlanSetupTests(unittest.TestCase):
    """Plans are validated on creation and locked once active."""

    def setUp(self) -> None:
        self.service = build_service()

    def test_invalid_allocation_is_reported(self) -> None:
        with self.assertRaises(InvalidAllocation) as ctx:
            self.service.create_plan(
                TENANT_ID,
                MEMBER_ID,
                PROPERTY_ID,
                "mix",
                [{"method": "cash", "percentage": "30"}, {"method": "loan", "percentage": "30"}],
                "1000000",
            )
        self.assertIn("100", ctx.exception.message)

    def test_second_live_plan_for_property_is_locked(self) -> None:
        create_active_plan(self.service, {"cash": "100"})
        with self.assertRaises(PlanLocked):
            self.service.create_plan(
                TENANT_ID, MEMBER_ID, PROPERTY_ID, "single", [{"method": "cash", "percentage": "100"}], "100"
            )

    def test_draft_can_be_edited_then_activated(self) -> None:
        plan = self.service.create_plan(
            TENANT_ID, MEMBER_ID, PROPERTY_ID, "single", [{"method": "cash", "percentage": "100"}], "1000"
        )
        edited = self.service.update_plan_allocations(
            plan.plan_id,
            "mix",
            [{"method": "cash", "percentage": "25"}, {"method": "mortgage", "percentage": "75"}],
            "2000",
        )
        self.assertEqual(edited.target_for(FundingMethod.MORTGAGE), Decimal("1500.00"))
        active = self.service.activate_plan(plan.plan_id)
        self.assertEqual(active.status, PlanStatus.ACTIVE)
        self.assertIsNotNone(active.activated_at)

        with self.assertRaises(PlanLocked):
            self.service.update_plan_allocations(plan.plan_id, "single", [{"method": "cash", "percentage": "100"}], "2000")
        with self.assertRaises(InvalidStateTransition):
            self.service.activate_plan(plan.plan_id)

    def test_missing_plan_is_not_found(self) -> None:
        with self.assertRaises(RecordNotFound):
            self.service.get_plan("plan_missing")
        with self.assertRaises(RecordNotFound):
            self.service.payment_setup_for_property(TENANT_ID, MEMBER_ID, "prop_unknown")

    def test_schedule_principal_must_fit_remaining_allocation(self) -> None:
        plan = create_active_plan(self.service, {"cash": "50", "cooperative": "50"}, total_amount="1000")
        with self.assertRaises(InvalidAmount):
            self.service.create_schedule(plan.plan_id, "cooperative", "5", 6, date(2025, 1, 1), principal="600")
        with self.assertRaises(InvalidAllocation):
            self.service.create_schedule(plan.plan_id, "cash", "5", 6, date(2025, 1, 1))
        self.service.create_schedule(plan.plan_id, "cooperative", "5", 6, date(2025, 1, 1), principal="300")
        with self.assertRaises(PlanLocked):
            self.service.create_schedule(plan.plan_id, "cooperative", "5", 6, date(2025, 1, 1), principal="200")


class PlanReissueTests(unittest.TestCase):
    """Reissuing supersedes the plan and carries settled money forward."""

    def setUp(self) -> None:
        self.service = build_service()
        self.plan = create_active_plan(self.service, {"equity_wallet": "40", "cash": "60"})
        self.service.submit_payment(TENANT_ID, MEMBER_ID, PROPERTY_ID, "equity_wallet", "1000000")

    def test_reissue_carries_settled_amounts(self) -> None:
        new_plan = self.service.reissue_plan(
            self.plan.plan_id,
            "mix",
            [{"method": "equity_wallet", "percentage": "20"}, {"method": "mortgage", "percentage": "80"}],
        )
        old = self.service.get_plan(self.plan.plan_id)
        self.assertEqual(old.status, PlanStatus.SUPERSEDED)
        self.assertEqual(old.superseded_by, new_plan.plan_id)
        self.assertEqual(new_plan.status, PlanStatus.ACTIVE)

        entries = self.service.ledger.entries_for(new_plan.plan_id)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].amount, Decimal("1000000.00"))
        self.assertEqual(entries[0].metadata["carried_over_from"], self.plan.plan_id)
        self.assertEqual(self.service.find_current_plan(TENANT_ID, MEMBER_ID, PROPERTY_ID).plan_id, new_plan.plan_id)
        self.assertEqual(len(self.service.ledger.entries_for(self.plan.plan_id)), 1)

    def test_reissue_must_cover_settled_money(self) -> None:
        with self.assertRaises(InvalidAllocation):
            self.service.reissue_plan(
                self.plan.plan_id,
                "mix",
                [{"method": "cash", "percentage": "50"}, {"method": "mortgage", "percentage": "50"}],
            )
        self.assertEqual(self.service.get_plan(self.plan.plan_id).status, PlanStatus.ACTIVE)

    def test_reissue_waits_for_pending_entries(self) -> None:
        _cash(self.service, "1000")
        with self.assertRaises(PlanLocked):
            self.service.reissue_plan(self.plan.plan_id, "single", [{"method": "equity_wallet", "percentage": "100"}])

    def test_failed_reissue_keeps_current_plan(self) -> None:
        store = _UnavailableReplaceStore()
        service = build_service(store=store)
        plan = create_active_plan(service, {"equity_wallet": "40", "cash": "60"}, total_amount="1000")
        service.submit_payment(TENANT_ID, MEMBER_ID, PROPERTY_ID, "equity_wallet", "400")
        with self.assertRaises(PersistenceUnavailable):
            service.reissue_plan(plan.plan_id, "single", [{"method": "equity_wallet", "percentage": "100"}])

        self.assertEqual(service.get_plan(plan.plan_id).status, PlanStatus.ACTIVE)
        self.assertIsNone(service.get_plan(plan.plan_id).superseded_by)
        self.assertEqual(service.find_current_plan(TENANT_ID, MEMBER_ID, PROPERTY_ID).plan_id, plan.plan_id)
        self.assertEqual(len(store.list_plans(TENANT_ID, MEMBER_ID, PROPERTY_ID)), 1)


class AdminReviewTests(unittest.TestCase):
    """Pending cash payments are confirmed or rejected exactly once."""

    def setUp(self) -> None:
        self.service = build_service()
        self.plan = create_active_plan(self.service, {"cash": "100"}, total_amount="1000")

    def test_confirm_completes_plan(self) -> None:
        entry = _cash(self.service, "1000").entry
        confirmed = self.service.confirm_entry(entry.entry_id, actor="admin_1")
        self.assertEqual(confirmed.status, LedgerEntryStatus.COMPLETED)
        self.assertEqual(confirmed.resolved_by, "admin_1")
        self.assertEqual(self.service.get_plan(self.plan.plan_id).status, PlanStatus.COMPLETED)
        with self.assertRaises(InvalidStateTransition):
            self.service.reject_entry(entry.entry_id, actor="admin_2", reason="late")

    def test_reject_releases_allocation(self) -> None:
        entry = _cash(self.service, "1000").entry
        rejected = self.service.reject_entry(entry.entry_id, actor="admin_1", reason="receipt unreadable")
        self.assertEqual(rejected.rejection_reason, "receipt unreadable")
        self.assertEqual(_cash(self.service, "1000").entry.amount, Decimal("1000.00"))

    def test_reject_needs_reason(self) -> None:
        entry = _cash(self.service, "500").entry
        with self.assertRaises(InvalidStateTransition):
            self.service.reject_entry(entry.entry_id, actor="admin_1", reason="  ")

    def test_reverse_only_completed_credit_once(self) -> None:
        entry = _cash(self.service, "400").entry
        with self.assertRaises(InvalidStateTransition):
            self.service.reverse_entry(entry.entry_id, actor="admin_1", reason="duplicate")
        self.service.confirm_entry(entry.entry_id, actor="admin_1")
        debit = self.service.reverse_entry(entry.entry_id, actor="admin_1", reason="duplicate")
        self.assertEqual(debit.reverses_entry_id, entry.entry_id)
        self.assertEqual(debit.amount, Decimal("400.00"))
        with self.assertRaises(InvalidStateTransition):
            self.service.reverse_entry(entry.entry_id, actor="admin_1", reason="duplicate")
        with self.assertRaises(InvalidStateTransition):
            self.service.reverse_entry(debit.entry_id, actor="admin_1", reason="undo")

    def test_unknown_entry_is_not_found(self) -> None:
        with self.assertRaises(RecordNotFound):
            self.service.confirm_entry("led_missing", actor="admin_1")


class PaymentSetupViewTests(unittest.TestCase):
    """The view is assembled from fresh reads after every write."""

    def test_view_lists_history_newest_first(self) -> None:
        service = build_service(wallet_balance="750000")
        plan = create_active_plan(service, {"equity_wallet": "40", "cash": "30", "mortgage": "30"}, total_amount="1000000")
        service.submit_payment(TENANT_ID, MEMBER_ID, PROPERTY_ID, "equity_wallet", "100000")
        _cash(service, "50000")
        service.create_schedule(plan.plan_id, "mortgage", "12", 12, date(2025, 1, 1), external_ref="mtg_view")

        view = service.payment_setup_for_property(TENANT_ID, MEMBER_ID, PROPERTY_ID)
        self.assertEqual(view["currency"], "NGN")
        self.assertEqual(view["equity_wallet"]["balance"], Decimal("750000.00"))
        self.assertEqual([entry.sequence for entry in view["payment_history"]], [2, 1])
        self.assertEqual([entry.sequence for entry in view["ledger_entries"]], [1, 2])
        self.assertEqual(view["summary"]["total_paid"], Decimal("100000.00"))
        self.assertEqual(view["summary"]["total_pending"], Decimal("50000.00"))
        self.assertEqual(view["repayment_schedules"]["mortgage"].external_ref, "mtg_view")
        self.assertIsNone(view["repayment_schedules"]["loan"])
        self.assertTrue(view["manual_payment"].require_payment_evidence)
        self.assertEqual(
            [row["method"] for row in view["allocations"]], ["equity_wallet", "cash", "mortgage"]
        )


if __name__ == "__main__":
    unittest.main()
