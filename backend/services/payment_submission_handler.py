"""Validates and records payment submissions against a plan's allocation."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Union

from common.money import ZERO, round_money, to_decimal
from models.base import utc_now
from models.enums import FundingMethod, LedgerEntryStatus, PlanStatus, ScheduleEntryStatus
from models.exceptions import (
    AlreadyPaid,
    EvidenceRequired,
    ExceedsAllocation,
    InsufficientWalletBalance,
    InvalidAmount,
    InvalidStateTransition,
    MethodNotInPlan,
    ModelNotFoundError,
    PayerNameRequired,
    PayerPhoneRequired,
    PaymentError,
    PersistenceUnavailable,
    RecordNotFound,
    ScheduleNotApproved,
    TransactionReferenceRequired,
    VersionConflictError,
)
from models.ledger import LedgerEntryModel
from models.plans import PaymentPlanModel
from models.repositories import PaymentStore
from models.schedules import RepaymentScheduleModel, ScheduleEntryModel
from .allocation_calculator import AllocationCalculator
from .approval_gate import ApprovalGate
from .collaborators import EvidenceStore, EvidenceUpload, ManualPaymentConfig, PayerInfo, WalletService
from .ledger_engine import LedgerEngine, store_guard
from .repayment_schedule_engine import RepaymentScheduleEngine


logger = logging.getLogger(__name__)

_ACCEPTING_STATUSES = {PlanStatus.ACTIVE, PlanStatus.COMPLETED}


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of one accepted submission."""

    entry: Optional[LedgerEntryModel]
    schedule_entry: Optional[ScheduleEntryModel] = None
    replayed: bool = False


@dataclass(frozen=True)
class _Installment:
    schedule: RepaymentScheduleModel
    entry: ScheduleEntryModel


class PaymentSubmissionHandler:
    """Runs the fail-fast validation chain and commits accepted payments.

    Validation order: method in plan, positive amount, allocation headroom,
    wallet balance, manual payment fields, schedule approval. The first
    failing rule is reported and nothing is written.
    """

    def __init__(
        self,
        store: PaymentStore,
        ledger: LedgerEngine,
        calculator: AllocationCalculator,
        schedule_engine: RepaymentScheduleEngine,
        wallet_service: WalletService,
        evidence_store: EvidenceStore,
        manual_config: Optional[ManualPaymentConfig] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._calculator = calculator
        self._schedule_engine = schedule_engine
        self._wallet_service = wallet_service
        self._evidence_store = evidence_store
        self._manual_config = manual_config or ManualPaymentConfig()

    def load_plan(self, plan_id: str) -> PaymentPlanModel:
        """Fetch a plan or raise ``RecordNotFound``."""
        try:
            with store_guard("get_plan", plan_id=plan_id):
                return self._store.get_plan(plan_id)
        except ModelNotFoundError:
            raise RecordNotFound("Payment plan not found", context={"plan_id": plan_id})

    def submit(
        self,
        plan_id: str,
        method: Union[FundingMethod, str],
        amount: Any,
        payer: Optional[PayerInfo] = None,
        evidence: Optional[EvidenceUpload] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        submission_token: Optional[str] = None,
        period_index: Optional[int] = None,
        recorded_by: Optional[str] = None,
    ) -> SubmissionResult:
        """Validate and record one payment.

        Replaying a ``submission_token`` that was already accepted returns the
        original entry without writing anything.

        Raises:
            PaymentError: The first failed rule, with ``remaining`` for the
                method in its context when the method belongs to the plan.
        """
        plan = self.load_plan(plan_id)
        resolved_method = self._coerce_method(plan, method)

        replay = self._ledger.find_by_token(plan_id, submission_token)
        if replay is not None:
            logger.info(
                "Submission replayed plan_id=%s token=%s entry_id=%s", plan_id, submission_token, replay.entry_id
            )
            return SubmissionResult(entry=replay, replayed=True)

        try:
            result = self._submit(
                plan,
                resolved_method,
                amount,
                payer or PayerInfo(),
                evidence,
                reference,
                notes,
                metadata or {},
                submission_token,
                period_index,
                recorded_by,
            )
        except PaymentError as exc:
            self._attach_remaining(plan, resolved_method, exc)
            logger.warning(
                "Payment rejected plan_id=%s method=%s kind=%s context=%s",
                plan_id,
                resolved_method.value,
                exc.error_kind,
                exc.context,
            )
            raise

        self.refresh_plan_status(plan_id)
        return result

    def _coerce_method(self, plan: PaymentPlanModel, method: Union[FundingMethod, str]) -> FundingMethod:
        try:
            return FundingMethod(method)
        except ValueError:
            raise MethodNotInPlan(
                "Unknown funding method {0}".format(method),
                context={"method": str(method), "selected_methods": ",".join(m.value for m in plan.selected_methods)},
            )

    def _attach_remaining(self, plan: PaymentPlanModel, method: FundingMethod, exc: PaymentError) -> None:
        """Report fresh ``remaining`` and ``available`` figures so callers can correct and resubmit."""
        missing = [key for key in ("remaining", "available") if key not in exc.context]
        if not missing or not plan.includes(method) or isinstance(exc, PersistenceUnavailable):
            return
        try:
            entries = self._ledger.entries_for(plan.plan_id)
            figures = {
                "remaining": self._calculator.remaining_for(plan, entries, method),
                "available": self._calculator.available_for(plan, entries, method),
            }
        except PaymentError:
            logger.warning("Could not attach remaining allocation plan_id=%s method=%s", plan.plan_id, method.value)
            return
        for key in missing:
            exc.context[key] = figures[key]

    def _submit(
        self,
        plan: PaymentPlanModel,
        method: FundingMethod,
        raw_amount: Any,
        payer: PayerInfo,
        evidence: Optional[EvidenceUpload],
        reference: Optional[str],
        notes: Optional[str],
        metadata: Dict[str, Any],
        submission_token: Optional[str],
        period_index: Optional[int],
        recorded_by: Optional[str],
    ) -> SubmissionResult:
        if plan.status not in _ACCEPTING_STATUSES:
            raise InvalidStateTransition(
                "Plan is {0} and does not accept payments".format(plan.status.value),
                context={"plan_id": plan.plan_id, "status": plan.status.value},
            )

        # 1. method
        if not plan.includes(method):
            raise MethodNotInPlan(
                "{0} is not part of this payment plan".format(method.value),
                context={"method": method.value, "selected_methods": ",".join(m.value for m in plan.selected_methods)},
            )

        # 2. amount
        amount = self._parse_amount(method, raw_amount)
        installment = None
        if method.is_schedule_backed:
            installment = self._resolve_installment(plan, method, period_index)
            if installment is not None and abs(amount - installment.entry.total) > self._calculator.tolerance:
                raise InvalidAmount(
                    "Installment {0} is due as {1}".format(installment.entry.period_index, installment.entry.total),
                    context={
                        "method": method.value,
                        "period_index": installment.entry.period_index,
                        "expected_amount": installment.entry.total,
                    },
                )
        elif period_index is not None:
            raise InvalidAmount(
                "{0} payments are not installments".format(method.value),
                context={"method": method.value, "period_index": period_index},
            )

        # 3. allocation headroom
        entries = self._ledger.entries_for(plan.plan_id)
        target = self._calculator.target_for(plan, method)
        available = self._calculator.available_for(plan, entries, method)
        credited = amount
        if installment is not None:
            credited = installment.entry.principal_component
        already_paid = installment is not None and installment.entry.status == ScheduleEntryStatus.PAID
        if not already_paid and not self._calculator.fits(credited, available):
            raise ExceedsAllocation(
                "{0} exceeds the available {1} allocation of {2}".format(credited, method.value, available),
                context={"method": method.value, "available": available, "target": target, "attempted": credited},
            )
        if installment is None and amount > available:
            if available <= ZERO:
                raise ExceedsAllocation(
                    "{0} allocation is fully used".format(method.value),
                    context={"method": method.value, "available": available, "target": target, "attempted": amount},
                )
            metadata = dict(metadata, submitted_amount=str(amount))
            amount = available

        # 4. wallet balance
        if method == FundingMethod.EQUITY_WALLET:
            balance = self._wallet_service.get_balance(plan.tenant_id, plan.member_id)
            if amount > balance:
                raise InsufficientWalletBalance(
                    "Wallet balance {0} is below {1}".format(balance, amount),
                    context={"method": method.value, "balance": balance, "attempted": amount},
                )

        # 5. manual payment fields
        if method == FundingMethod.CASH:
            self._check_manual_fields(method, payer, evidence, reference)

        # 6. schedule approval
        if method.is_schedule_backed:
            if installment is None:
                raise ScheduleNotApproved(
                    "No repayment schedule is set up for {0}".format(method.value),
                    context={"method": method.value},
                )
            ApprovalGate.require_approved(installment.schedule)
            if already_paid:
                raise AlreadyPaid(
                    "Installment {0} is already paid".format(installment.entry.period_index),
                    context={
                        "method": method.value,
                        "schedule_id": installment.schedule.schedule_id,
                        "period_index": installment.entry.period_index,
                    },
                )

        evidence_url = None
        if evidence is not None:
            evidence_url = self._evidence_store.store(evidence, plan.tenant_id, plan.plan_id)

        ledger_fields: Dict[str, Any] = {
            "reference": reference,
            "submission_token": submission_token,
            "payer_name": payer.name,
            "payer_phone": payer.phone,
            "evidence_url": evidence_url,
            "notes": notes,
            "recorded_by": recorded_by,
        }

        if installment is not None:
            schedule_entry, stored = self._schedule_engine.mark_paid(
                installment.schedule.schedule_id,
                installment.entry.period_index,
                paid_at=utc_now(),
                **ledger_fields,
            )
            return SubmissionResult(entry=stored, schedule_entry=schedule_entry)

        status = LedgerEntryStatus.COMPLETED if method.settles_instantly else LedgerEntryStatus.PENDING
        if status == LedgerEntryStatus.COMPLETED:
            ledger_fields["resolved_at"] = utc_now()
            ledger_fields["resolved_by"] = recorded_by
        entry = self._ledger.build_entry(
            plan_id=plan.plan_id,
            method=method,
            amount=amount,
            status=status,
            metadata=metadata,
            **ledger_fields,
        )
        return SubmissionResult(entry=self._ledger.append(entry, ceiling=target))

    def _parse_amount(self, method: FundingMethod, raw_amount: Any) -> Decimal:
        try:
            amount = round_money(to_decimal(raw_amount))
        except ValueError:
            raise InvalidAmount("Amount must be numeric", context={"method": method.value, "amount": str(raw_amount)})
        if amount <= ZERO:
            raise InvalidAmount(
                "Amount must be greater than zero", context={"method": method.value, "amount": str(amount)}
            )
        return amount

    def _resolve_installment(
        self,
        plan: PaymentPlanModel,
        method: FundingMethod,
        period_index: Optional[int],
    ) -> Optional[_Installment]:
        """Pick the requested installment, or the earliest unpaid one."""
        with store_guard("list_schedules", plan_id=plan.plan_id):
            schedules: List[RepaymentScheduleModel] = [
                item for item in self._store.list_schedules(plan.plan_id) if item.method == method
            ]
        if not schedules:
            return None
        schedule = schedules[-1]
        if period_index is not None:
            entry = schedule.entry_for(int(period_index))
            if entry is None:
                raise RecordNotFound(
                    "Schedule has no such period",
                    context={"method": method.value, "schedule_id": schedule.schedule_id, "period_index": period_index},
                )
            return _Installment(schedule=schedule, entry=entry)
        for entry in schedule.schedule:
            if entry.status != ScheduleEntryStatus.PAID:
                return _Installment(schedule=schedule, entry=entry)
        return _Installment(schedule=schedule, entry=schedule.schedule[-1])

    def _check_manual_fields(
        self,
        method: FundingMethod,
        payer: PayerInfo,
        evidence: Optional[EvidenceUpload],
        reference: Optional[str],
    ) -> None:
        config = self._manual_config
        if not payer.has_name:
            raise PayerNameRequired(
                "Payer name is required for cash payments", context={"method": method.value, "field": "payer_name"}
            )
        if config.require_payer_phone and not payer.has_phone:
            raise PayerPhoneRequired(
                "Payer phone is required", context={"method": method.value, "field": "payer_phone"}
            )
        if config.require_transaction_reference and not (reference or "").strip():
            raise TransactionReferenceRequired(
                "Transaction reference is required", context={"method": method.value, "field": "reference"}
            )
        if config.require_payment_evidence and evidence is None:
            raise EvidenceRequired(
                "Payment evidence is required for cash payments", context={"method": method.value, "field": "evidence"}
            )

    def refresh_plan_status(self, plan_id: str) -> PaymentPlanModel:
        """Move a plan between active and completed to match its ledger."""
        plan = self.load_plan(plan_id)
        if plan.status not in _ACCEPTING_STATUSES:
            return plan
        with store_guard("list_schedules", plan_id=plan_id):
            schedules = self._store.list_schedules(plan_id)
        settled = self._calculator.is_plan_settled(plan, self._ledger.entries_for(plan_id), schedules)
        if settled == (plan.status == PlanStatus.COMPLETED):
            return plan
        updates: Dict[str, Optional[Union[PlanStatus, datetime]]] = {
            "status": PlanStatus.COMPLETED if settled else PlanStatus.ACTIVE,
            "completed_at": utc_now() if settled else None,
        }
        try:
            with store_guard("update_plan", plan_id=plan_id):
                stored = self._store.update_plan(plan.model_copy(update=updates), expected_version=plan.version)
        except VersionConflictError:
            logger.info("Plan changed during status refresh plan_id=%s", plan_id)
            return self.load_plan(plan_id)
        logger.info("Plan status changed plan_id=%s status=%s", plan_id, stored.status.value)
        return stored
