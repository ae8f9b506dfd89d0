"""Amortized repayment schedules: generation, installment payment and overdue marking."""

from datetime import date, datetime
from decimal import Decimal, localcontext
import logging
from typing import Any, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from common.money import RATE_PLACES, ZERO, HUNDRED, round_money, to_decimal
from models.base import utc_now
from models.enums import FundingMethod, LedgerEntryStatus, RepaymentFrequency, ScheduleEntryStatus
from models.exceptions import (
    AllocationConflict,
    AlreadyPaid,
    InvalidAmount,
    ModelNotFoundError,
    RecordNotFound,
    ScheduleNotApproved,
    VersionConflictError,
)
from models.ledger import LedgerEntryModel
from models.repositories import PaymentStore
from models.schedules import RepaymentScheduleModel, ScheduleEntryModel
from .allocation_calculator import AllocationCalculator
from .ledger_engine import LedgerEngine, new_id, store_guard


logger = logging.getLogger(__name__)

_MAX_PAYMENT_ATTEMPTS = 3


def periodic_rate(annual_rate_percent: Any, frequency: RepaymentFrequency) -> Decimal:
    """Convert an annual nominal percentage into a per-period fraction."""
    rate = to_decimal(annual_rate_percent)
    return (rate / HUNDRED / Decimal(frequency.periods_per_year)).quantize(RATE_PLACES)


def level_payment(principal: Decimal, rate: Decimal, periods: int) -> Decimal:
    """Annuity installment ``P*r*(1+r)^n / ((1+r)^n - 1)``; ``P/n`` when rate is zero."""
    if rate == 0:
        return round_money(principal / Decimal(periods))
    with localcontext() as ctx:
        ctx.prec = 34
        growth = (Decimal(1) + rate) ** periods
        payment = principal * rate * growth / (growth - Decimal(1))
    return round_money(payment)


def amortize(
    principal: Any,
    annual_rate_percent: Any,
    tenure_periods: int,
    frequency: RepaymentFrequency,
    start_date: date,
) -> Tuple[Decimal, List[ScheduleEntryModel]]:
    """Build the installment table.

    Each period's interest is the opening balance times the periodic rate,
    rounded half-up to the cent; principal is the level payment minus that
    interest. The last period takes whatever principal is left so the
    principal column sums to ``principal`` exactly.
    """
    amount = round_money(principal)
    if amount <= ZERO:
        raise InvalidAmount("Principal must be greater than zero", context={"principal": str(amount)})
    if int(tenure_periods) <= 0:
        raise InvalidAmount("Tenure must be at least one period", context={"tenure_periods": tenure_periods})
    if to_decimal(annual_rate_percent) < 0:
        raise InvalidAmount("Interest rate cannot be negative", context={"interest_rate": str(annual_rate_percent)})

    rate = periodic_rate(annual_rate_percent, frequency)
    payment = level_payment(amount, rate, tenure_periods)
    balance = amount
    entries: List[ScheduleEntryModel] = []
    for period in range(1, tenure_periods + 1):
        interest = round_money(balance * rate)
        if period == tenure_periods:
            principal_part = balance
        else:
            principal_part = min(max(payment - interest, ZERO), balance)
        balance = round_money(balance - principal_part)
        entries.append(
            ScheduleEntryModel(
                schedule_entry_id=new_id("sch"),
                period_index=period,
                due_date=start_date + relativedelta(months=frequency.months_per_period * period),
                principal_component=principal_part,
                interest_component=interest,
                total=principal_part + interest,
                closing_balance=balance,
            )
        )
    RepaymentScheduleModel.validate_schedule(entries, amount)
    return payment, entries


class RepaymentScheduleEngine:
    """Generates schedules and moves their installments through pending, overdue and paid."""

    def __init__(self, store: PaymentStore, ledger: LedgerEngine, calculator: AllocationCalculator) -> None:
        self._store = store
        self._ledger = ledger
        self._calculator = calculator

    def generate(
        self,
        plan_id: str,
        method: FundingMethod,
        principal: Any,
        interest_rate: Any,
        tenure_periods: int,
        frequency: RepaymentFrequency,
        start_date: date,
        external_ref: Optional[str] = None,
    ) -> RepaymentScheduleModel:
        """Build an unsaved schedule.

        Loan schedules are approved at creation because the loan approval
        already covers them; mortgage and cooperative schedules start unapproved.
        """
        payment, entries = amortize(principal, interest_rate, tenure_periods, frequency, start_date)
        approved = not method.requires_schedule_approval
        return RepaymentScheduleModel(
            schedule_id=new_id("rsc"),
            plan_id=plan_id,
            method=method,
            external_ref=external_ref,
            principal=round_money(principal),
            interest_rate=to_decimal(interest_rate),
            tenure_periods=tenure_periods,
            frequency=frequency,
            start_date=start_date,
            level_payment=payment,
            schedule=entries,
            schedule_approved=approved,
            schedule_approved_at=utc_now() if approved else None,
            approved_by="loan_approval" if approved else None,
        )

    def get(self, schedule_id: str) -> RepaymentScheduleModel:
        """Fetch a schedule or raise ``RecordNotFound``."""
        try:
            with store_guard("get_schedule", schedule_id=schedule_id):
                return self._store.get_schedule(schedule_id)
        except ModelNotFoundError:
            raise RecordNotFound("Repayment schedule not found", context={"schedule_id": schedule_id})

    def _entry(self, schedule: RepaymentScheduleModel, period_index: int) -> ScheduleEntryModel:
        entry = schedule.entry_for(period_index)
        if entry is None:
            raise RecordNotFound(
                "Schedule has no such period",
                context={"schedule_id": schedule.schedule_id, "period_index": period_index},
            )
        return entry

    def mark_paid(
        self,
        schedule_id: str,
        period_index: int,
        paid_at: Optional[datetime] = None,
        **ledger_fields: Any,
    ) -> Tuple[ScheduleEntryModel, Optional[LedgerEntryModel]]:
        """Pay one installment and credit its principal to the ledger in one write.

        Extra keyword arguments (reference, submission_token, payer details)
        are recorded on the ledger credit.

        Raises:
            AlreadyPaid: If the installment is already paid.
            ScheduleNotApproved: If the schedule still awaits approval.
        """
        paid_at = paid_at or utc_now()
        for _ in range(_MAX_PAYMENT_ATTEMPTS):
            schedule = self.get(schedule_id)
            entry = self._entry(schedule, period_index)
            if entry.status == ScheduleEntryStatus.PAID:
                raise AlreadyPaid(
                    "Installment {0} is already paid".format(period_index),
                    context={"schedule_id": schedule_id, "period_index": period_index},
                )
            if not schedule.schedule_approved:
                raise ScheduleNotApproved(
                    "{0} schedule must be approved before installments are paid".format(schedule.method.value),
                    context={"schedule_id": schedule_id, "method": schedule.method.value},
                )

            credit = None
            ceiling = None
            if entry.principal_component > ZERO:
                with store_guard("get_plan", plan_id=schedule.plan_id):
                    plan = self._store.get_plan(schedule.plan_id)
                ceiling = self._calculator.target_for(plan, schedule.method)
                credit = self._ledger.build_entry(
                    plan_id=schedule.plan_id,
                    method=schedule.method,
                    amount=entry.principal_component,
                    status=LedgerEntryStatus.COMPLETED,
                    schedule_id=schedule_id,
                    schedule_entry_id=entry.schedule_entry_id,
                    resolved_at=paid_at,
                    metadata={
                        "period_index": period_index,
                        "interest_component": str(entry.interest_component),
                        "installment_total": str(entry.total),
                    },
                    **ledger_fields,
                )
            try:
                with store_guard("update_schedule_entry", schedule_id=schedule_id, period_index=period_index):
                    _, updated, stored = self._store.update_schedule_entry(
                        schedule_id,
                        period_index,
                        expected_statuses=(ScheduleEntryStatus.PENDING, ScheduleEntryStatus.OVERDUE),
                        updates={"status": ScheduleEntryStatus.PAID, "paid_at": paid_at},
                        ledger_entry=credit,
                        ceiling=ceiling,
                    )
            except VersionConflictError:
                logger.info(
                    "Installment changed during payment, re-reading schedule_id=%s period=%s",
                    schedule_id,
                    period_index,
                )
                continue
            logger.info(
                "Installment paid schedule_id=%s period=%s principal=%s interest=%s",
                schedule_id,
                period_index,
                updated.principal_component,
                updated.interest_component,
            )
            return updated, stored

        raise AllocationConflict(
            "Installment {0} changed concurrently, retry the payment".format(period_index),
            context={"schedule_id": schedule_id, "period_index": period_index},
        )

    def mark_overdue(self, schedule_id: str, period_index: int, as_of: Optional[datetime] = None) -> ScheduleEntryModel:
        """Flag a past-due pending installment as overdue.

        Idempotent. Paid installments stay paid and entries not yet past their
        due date are returned unchanged.
        """
        as_of = as_of or utc_now()
        schedule = self.get(schedule_id)
        entry = self._entry(schedule, period_index)
        if entry.status != ScheduleEntryStatus.PENDING or entry.due_date >= as_of.date():
            return entry
        try:
            with store_guard("update_schedule_entry", schedule_id=schedule_id, period_index=period_index):
                _, updated, _ = self._store.update_schedule_entry(
                    schedule_id,
                    period_index,
                    expected_statuses=(ScheduleEntryStatus.PENDING,),
                    updates={"status": ScheduleEntryStatus.OVERDUE, "overdue_since": as_of},
                )
        except VersionConflictError:
            # Lost to a payment or another sweep; the stored state wins.
            return self._entry(self.get(schedule_id), period_index)
        logger.warning(
            "Installment overdue schedule_id=%s period=%s due_date=%s", schedule_id, period_index, entry.due_date
        )
        return updated

    def sweep_overdue(self, as_of: Optional[datetime] = None) -> int:
        """Mark every past-due pending installment overdue and return how many changed."""
        as_of = as_of or utc_now()
        with store_guard("list_due_schedule_entries"):
            due = self._store.list_due_schedule_entries(as_of)
        changed = 0
        for schedule_id, period_index in due:
            if self.mark_overdue(schedule_id, period_index, as_of).status == ScheduleEntryStatus.OVERDUE:
                changed += 1
        if changed:
            logger.info("Overdue sweep marked %d installment(s) as_of=%s", changed, as_of.isoformat())
        return changed
