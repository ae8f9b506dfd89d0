"""Unit tests for the one-way schedule approval gate."""

from datetime import date
from pathlib import Path
import sys
import unittest


PROJECT_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = PROJECT_ROOT / "backend"
TESTS_ROOT = BACKEND_ROOT / "tests"
for _path in (BACKEND_ROOT, TESTS_ROOT):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from models.enums import FundingMethod
from models.exceptions import AlreadyApproved, ApprovalNotApplicable, RecordNotFound, ScheduleNotApproved
from services.approval_gate import ApprovalGate
from payment_fixtures import build_service, create_active_plan


class ApprovalGateTests(unittest.TestCase):
    """Approval flips once and is looked up by mortgage or cooperative id."""

    def setUp(self) -> None:
        self.service = build_service()
        self.plan = create_active_plan(self.service, {"cooperative": "50", "loan": "50"}, total_amount="2400")
        self.gate = self.service.approval_gate
        self.cooperative = self.service.create_schedule(
            self.plan.plan_id, "cooperative", "6", 12, date(2025, 1, 1), external_ref="coop_lagos_7"
        )

    def test_approve_by_reference_sets_approver(self) -> None:
        approved = self.gate.approve_by_reference(FundingMethod.COOPERATIVE, "coop_lagos_7", "approver_9")
        self.assertTrue(approved.schedule_approved)
        self.assertEqual(approved.approved_by, "approver_9")
        self.assertIsNotNone(approved.schedule_approved_at)
        ApprovalGate.require_approved(approved)

    def test_second_approval_is_rejected(self) -> None:
        self.gate.approve(self.cooperative.schedule_id, "approver_9")
        with self.assertRaises(AlreadyApproved) as ctx:
            self.gate.approve(self.cooperative.schedule_id, "approver_10")
        self.assertEqual(ctx.exception.context["approved_by"], "approver_9")
        self.assertEqual(self.gate.resolve(FundingMethod.COOPERATIVE, "coop_lagos_7").approved_by, "approver_9")

    def test_unapproved_schedule_blocks_payments(self) -> None:
        with self.assertRaises(ScheduleNotApproved):
            ApprovalGate.require_approved(self.cooperative)

    def test_loan_schedule_takes_no_approval(self) -> None:
        loan = self.service.create_schedule(self.plan.plan_id, "loan", "0", 6, date(2025, 1, 1), external_ref="loan_3")
        with self.assertRaises(ApprovalNotApplicable):
            self.gate.approve(loan.schedule_id, "approver_9")

    def test_unknown_reference_is_not_found(self) -> None:
        with self.assertRaises(RecordNotFound):
            self.gate.approve_by_reference(FundingMethod.MORTGAGE, "mtg_missing", "approver_9")


if __name__ == "__main__":
    unittest.main()
