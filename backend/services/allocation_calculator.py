"""Pure allocation arithmetic derived from a plan and its ledger."""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from common.money import DEFAULT_TOLERANCE, ZERO, floor_money, ratio_percent, round_money, sum_money
from models.enums import FundingMethod, LedgerEntryStatus
from models.exceptions import UnknownMethodAllocation
from models.ledger import LedgerEntryModel
from models.plans import PaymentPlanModel
from models.repositories import reserved_total
from models.schedules import RepaymentScheduleModel
from .ledger_engine import net_completed, pending_credits


logger = logging.getLogger(__name__)

MILESTONE_PERCENTAGES = (25, 50, 75, 100)


class AllocationCalculator:
    """Stateless helpers answering "how much is left" per method and per plan.

    Nothing here is cached: every figure is recomputed from the entries it is
    handed, so callers always pass a fresh ledger read.
    """

    def __init__(self, tolerance: Decimal = DEFAULT_TOLERANCE) -> None:
        self._tolerance = tolerance

    @property
    def tolerance(self) -> Decimal:
        return self._tolerance

    def target_for(self, plan: PaymentPlanModel, method: FundingMethod) -> Decimal:
        """Return the method's allocated amount.

        Raises:
            UnknownMethodAllocation: If the plan has no allocation for ``method``.
        """
        target = plan.target_for(method)
        if target is None:
            raise UnknownMethodAllocation(
                "Plan has no allocation for {0}".format(method.value),
                context={"plan_id": plan.plan_id, "method": method.value},
            )
        return target

    def settled_for(self, entries: Iterable[LedgerEntryModel], method: FundingMethod) -> Decimal:
        """Net completed amount credited to a method."""
        return net_completed(list(entries), method)

    def pending_for(self, entries: Iterable[LedgerEntryModel], method: FundingMethod) -> Decimal:
        """Credits to a method still awaiting confirmation."""
        return pending_credits(list(entries), method)

    def remaining_for(
        self,
        plan: PaymentPlanModel,
        entries: Iterable[LedgerEntryModel],
        method: FundingMethod,
    ) -> Decimal:
        """Return ``max(0, target - settled)`` rounded down to the cent."""
        target = self.target_for(plan, method)
        remaining = target - self.settled_for(entries, method)
        return floor_money(max(remaining, ZERO))

    def available_for(
        self,
        plan: PaymentPlanModel,
        entries: Iterable[LedgerEntryModel],
        method: FundingMethod,
    ) -> Decimal:
        """Return what a new submission may still claim.

        Pending credits hold their share of the allocation until they are
        confirmed or rejected, so this never exceeds ``remaining_for``.
        """
        target = self.target_for(plan, method)
        available = target - reserved_total(entries, method)
        return floor_money(max(available, ZERO))

    def fits(self, amount: Decimal, available: Decimal) -> bool:
        """Return whether an amount fits within ``available`` plus tolerance."""
        return amount <= available + self._tolerance

    def is_plan_settled(
        self,
        plan: PaymentPlanModel,
        entries: Sequence[LedgerEntryModel],
        schedules: Sequence[RepaymentScheduleModel] = (),
    ) -> bool:
        """Return whether nothing is owed and every installment is paid.

        The submission tolerance does not apply here: a plan with one cent
        outstanding, or one pending installment, stays open.
        """
        balance = plan.total_amount - net_completed(list(entries))
        if balance > ZERO:
            return False
        return all(schedule.is_fully_paid for schedule in schedules)

    def breakdown(self, plan: PaymentPlanModel, entries: Sequence[LedgerEntryModel]) -> List[Dict[str, Any]]:
        """Per-method allocation view in plan selection order."""
        by_method = {item.method: item for item in plan.allocations}
        rows: List[Dict[str, Any]] = []
        for method in plan.selected_methods:
            target = self.target_for(plan, method)
            settled = self.settled_for(entries, method)
            allocation = by_method[method]
            rows.append(
                {
                    "method": method.value,
                    "percentage": allocation.percentage,
                    "target_amount": target,
                    "settled_amount": settled,
                    "pending_amount": self.pending_for(entries, method),
                    "remaining_amount": self.remaining_for(plan, entries, method),
                    "available_amount": self.available_for(plan, entries, method),
                    "progress_percentage": ratio_percent(settled, target),
                    "entry_count": sum(
                        1 for entry in entries if entry.method == method and entry.status != LedgerEntryStatus.REJECTED
                    ),
                }
            )
        return rows

    def funding_summary(
        self,
        plan: PaymentPlanModel,
        entries: Sequence[LedgerEntryModel],
        schedules: Sequence[RepaymentScheduleModel] = (),
    ) -> Dict[str, Any]:
        """Plan-level totals.

        ``total_paid`` counts principal only; interest settled through
        schedules is reported separately as ``interest_paid``.
        """
        total_paid = net_completed(list(entries))
        balance = max(plan.total_amount - total_paid, ZERO)
        return {
            "total_amount": plan.total_amount,
            "total_paid": total_paid,
            "total_pending": pending_credits(list(entries)),
            "balance": round_money(balance),
            "progress_percentage": ratio_percent(total_paid, plan.total_amount),
            "interest_paid": sum_money(schedule.interest_paid for schedule in schedules),
            "milestones": self.milestones(plan, entries),
        }

    def milestones(self, plan: PaymentPlanModel, entries: Sequence[LedgerEntryModel]) -> List[Dict[str, Any]]:
        """Report when paid progress first crossed each milestone.

        Walks completed entries in sequence order. A later reversal can drop
        progress below a milestone; the first crossing time is kept.
        """
        reached: Dict[int, Optional[datetime]] = {percent: None for percent in MILESTONE_PERCENTAGES}
        running = ZERO
        for entry in sorted(entries, key=lambda item: item.sequence):
            if entry.status != LedgerEntryStatus.COMPLETED:
                continue
            running += entry.signed_amount
            progress = ratio_percent(running, plan.total_amount)
            for percent in MILESTONE_PERCENTAGES:
                if reached[percent] is None and progress >= percent:
                    reached[percent] = entry.resolved_at or entry.created_at
        return [
            {"percentage": percent, "reached": reached[percent] is not None, "reached_at": reached[percent]}
            for percent in MILESTONE_PERCENTAGES
        ]
