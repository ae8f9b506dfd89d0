"""Plan setup, admin review and the member-facing payment-setup view."""

from datetime import date
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from common.money import ZERO, round_money
from core.config import AppSettings
from models.base import utc_now
from models.enums import FundingMethod, FundingOption, LedgerEntryStatus, PlanStatus, RepaymentFrequency
from models.exceptions import (
    InvalidAllocation,
    InvalidAmount,
    InvalidStateTransition,
    PaymentError,
    PlanLocked,
    RecordNotFound,
    VersionConflictError,
)
from models.ledger import LedgerEntryModel
from models.plans import FundingAllocationModel, PaymentPlanModel
from models.repositories import PaymentStore
from models.schedules import RepaymentScheduleModel
from .allocation_calculator import AllocationCalculator
from .approval_gate import ApprovalGate
from .collaborators import EvidenceStore, EvidenceUpload, ManualPaymentConfig, PayerInfo, WalletService
from .ledger_engine import LedgerEngine, new_id, store_guard
from .payment_submission_handler import PaymentSubmissionHandler, SubmissionResult
from .repayment_schedule_engine import RepaymentScheduleEngine


logger = logging.getLogger(__name__)


def _validation_message(exc: ValidationError) -> str:
    """Flatten pydantic errors into one readable sentence."""
    messages = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "__root__")
        text = str(item.get("msg", "invalid value")).replace("Value error, ", "")
        messages.append("{0}: {1}".format(location, text) if location else text)
    return "; ".join(messages) or "invalid payment plan"


class PaymentSetupService:
    """Facade the HTTP layer talks to.

    Wires the ledger, calculator, schedule engine, approval gate and
    submission handler around one store, and assembles read views from fresh
    store reads after every write.
    """

    def __init__(
        self,
        settings: AppSettings,
        store: PaymentStore,
        wallet_service: WalletService,
        evidence_store: EvidenceStore,
    ) -> None:
        self._settings = settings
        self._store = store
        self._wallet_service = wallet_service
        self._calculator = AllocationCalculator(tolerance=settings.allocation_tolerance)
        self._ledger = LedgerEngine(store)
        self._schedules = RepaymentScheduleEngine(store, self._ledger, self._calculator)
        self._approvals = ApprovalGate(store)
        self._submissions = PaymentSubmissionHandler(
            store=store,
            ledger=self._ledger,
            calculator=self._calculator,
            schedule_engine=self._schedules,
            wallet_service=wallet_service,
            evidence_store=evidence_store,
            manual_config=ManualPaymentConfig.from_settings(settings),
        )

    @property
    def ledger(self) -> LedgerEngine:
        return self._ledger

    @property
    def calculator(self) -> AllocationCalculator:
        return self._calculator

    @property
    def schedule_engine(self) -> RepaymentScheduleEngine:
        return self._schedules

    @property
    def approval_gate(self) -> ApprovalGate:
        return self._approvals

    @property
    def submission_handler(self) -> PaymentSubmissionHandler:
        return self._submissions

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def get_plan(self, plan_id: str) -> PaymentPlanModel:
        return self._submissions.load_plan(plan_id)

    def find_current_plan(self, tenant_id: str, member_id: str, property_id: str) -> PaymentPlanModel:
        """Return the newest plan for a property that has not been superseded."""
        with store_guard("list_plans", tenant_id=tenant_id, member_id=member_id, property_id=property_id):
            plans = self._store.list_plans(tenant_id, member_id, property_id)
        current = [plan for plan in plans if plan.status != PlanStatus.SUPERSEDED]
        if not current:
            raise RecordNotFound(
                "No payment plan configured for this property",
                context={"tenant_id": tenant_id, "member_id": member_id, "property_id": property_id},
            )
        return current[-1]

    def _build_plan(
        self,
        plan_id: str,
        tenant_id: str,
        member_id: str,
        property_id: str,
        funding_option: Union[FundingOption, str],
        allocations: Sequence[Dict[str, Any]],
        total_amount: Any,
        status: PlanStatus,
        notes: Optional[str],
    ) -> PaymentPlanModel:
        try:
            allocation_models = [FundingAllocationModel.model_validate(item) for item in allocations]
            return PaymentPlanModel(
                plan_id=plan_id,
                tenant_id=tenant_id,
                member_id=member_id,
                property_id=property_id,
                funding_option=funding_option,
                selected_methods=[item.method for item in allocation_models],
                allocations=allocation_models,
                total_amount=total_amount,
                status=status,
                notes=notes,
                activated_at=utc_now() if status == PlanStatus.ACTIVE else None,
            )
        except ValidationError as exc:
            logger.warning("Plan rejected property_id=%s errors=%s", property_id, exc.errors())
            raise InvalidAllocation(_validation_message(exc), context={"property_id": property_id})

    def create_plan(
        self,
        tenant_id: str,
        member_id: str,
        property_id: str,
        funding_option: Union[FundingOption, str],
        allocations: Sequence[Dict[str, Any]],
        total_amount: Any,
        status: Union[PlanStatus, str] = PlanStatus.DRAFT,
        notes: Optional[str] = None,
    ) -> PaymentPlanModel:
        """Configure the funding plan for a property interest.

        ``allocations`` items carry ``method`` plus ``percentage`` and/or
        ``target_amount``; they are never inferred.

        Raises:
            InvalidAllocation: If the method set or allocation sums are invalid.
            PlanLocked: If the property already has a live plan.
        """
        initial_status = PlanStatus(status)
        if initial_status not in {PlanStatus.DRAFT, PlanStatus.ACTIVE}:
            raise InvalidStateTransition(
                "New plans start as draft or active", context={"status": initial_status.value}
            )
        try:
            existing = self.find_current_plan(tenant_id, member_id, property_id)
        except RecordNotFound:
            existing = None
        if existing is not None:
            raise PlanLocked(
                "Property already has a payment plan, reissue it instead",
                context={"plan_id": existing.plan_id, "status": existing.status.value},
            )
        plan = self._build_plan(
            new_id("plan"),
            tenant_id,
            member_id,
            property_id,
            funding_option,
            allocations,
            total_amount,
            initial_status,
            notes,
        )
        with store_guard("create_plan", plan_id=plan.plan_id):
            stored = self._store.create_plan(plan)
        logger.info(
            "Payment plan created plan_id=%s property_id=%s option=%s methods=%s total=%s status=%s",
            stored.plan_id,
            property_id,
            stored.funding_option.value,
            ",".join(method.value for method in stored.selected_methods),
            stored.total_amount,
            stored.status.value,
        )
        return stored

    def activate_plan(self, plan_id: str) -> PaymentPlanModel:
        """Move a draft plan to active; its method set is locked from then on."""
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.DRAFT:
            raise InvalidStateTransition(
                "Only draft plans can be activated", context={"plan_id": plan_id, "status": plan.status.value}
            )
        activated = plan.model_copy(update={"status": PlanStatus.ACTIVE, "activated_at": utc_now()})
        try:
            with store_guard("update_plan", plan_id=plan_id):
                stored = self._store.update_plan(activated, expected_version=plan.version)
        except VersionConflictError:
            raise InvalidStateTransition("Plan changed while activating", context={"plan_id": plan_id})
        logger.info("Payment plan activated plan_id=%s", plan_id)
        return stored

    def update_plan_allocations(
        self,
        plan_id: str,
        funding_option: Union[FundingOption, str],
        allocations: Sequence[Dict[str, Any]],
        total_amount: Any,
        notes: Optional[str] = None,
    ) -> PaymentPlanModel:
        """Edit a draft plan in place.

        Raises:
            PlanLocked: If the plan is no longer a draft.
        """
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.DRAFT:
            raise PlanLocked(
                "Allocations of a {0} plan cannot change, reissue the plan".format(plan.status.value),
                context={"plan_id": plan_id, "status": plan.status.value},
            )
        edited = self._build_plan(
            plan.plan_id,
            plan.tenant_id,
            plan.member_id,
            plan.property_id,
            funding_option,
            allocations,
            total_amount,
            PlanStatus.DRAFT,
            notes if notes is not None else plan.notes,
        )
        edited = edited.model_copy(update={"created_at": plan.created_at, "id": plan.id})
        try:
            with store_guard("update_plan", plan_id=plan_id):
                return self._store.update_plan(edited, expected_version=plan.version)
        except VersionConflictError:
            raise PlanLocked("Plan changed while editing", context={"plan_id": plan_id})

    def reissue_plan(
        self,
        plan_id: str,
        funding_option: Union[FundingOption, str],
        allocations: Sequence[Dict[str, Any]],
        total_amount: Optional[Any] = None,
        notes: Optional[str] = None,
        actor: str = "admin",
    ) -> PaymentPlanModel:
        """Supersede a live plan with a new method set.

        The old plan keeps its ledger as history. Each method's settled amount
        is carried into the new plan as one completed credit.

        Raises:
            PlanLocked: If the old plan still has pending entries.
            InvalidAllocation: If settled money does not fit the new allocation.
        """
        old = self.get_plan(plan_id)
        if old.status not in {PlanStatus.ACTIVE, PlanStatus.COMPLETED}:
            raise InvalidStateTransition(
                "Only active or completed plans are reissued", context={"plan_id": plan_id, "status": old.status.value}
            )
        entries = self._ledger.entries_for(plan_id)
        if any(entry.status == LedgerEntryStatus.PENDING for entry in entries):
            raise PlanLocked(
                "Resolve pending payments before reissuing the plan", context={"plan_id": plan_id}
            )

        new_plan = self._build_plan(
            new_id("plan"),
            old.tenant_id,
            old.member_id,
            old.property_id,
            funding_option,
            allocations,
            total_amount if total_amount is not None else old.total_amount,
            PlanStatus.ACTIVE,
            notes,
        )
        carried: Dict[FundingMethod, Decimal] = {}
        for method in old.selected_methods:
            settled = self._calculator.settled_for(entries, method)
            if settled <= ZERO:
                continue
            target = new_plan.target_for(method)
            if target is None or settled > target:
                raise InvalidAllocation(
                    "{0} already settled {1}, the new plan must allocate at least that".format(method.value, settled),
                    context={"method": method.value, "settled": settled, "target": target},
                )
            carried[method] = settled

        carry_entries = [
            self._ledger.build_entry(
                plan_id=new_plan.plan_id,
                method=method,
                amount=amount,
                status=LedgerEntryStatus.COMPLETED,
                reference=old.plan_id,
                submission_token="carry:{0}:{1}".format(old.plan_id, method.value),
                metadata={"carried_over_from": old.plan_id},
                recorded_by=actor,
                resolved_at=utc_now(),
                resolved_by=actor,
            )
            for method, amount in carried.items()
        ]
        superseded = old.model_copy(update={"status": PlanStatus.SUPERSEDED, "superseded_by": new_plan.plan_id})
        try:
            with store_guard("replace_plan", plan_id=plan_id):
                stored = self._store.replace_plan(superseded, old.version, new_plan, carry_entries)
        except VersionConflictError:
            raise PlanLocked("Plan changed while reissuing", context={"plan_id": plan_id})
        logger.info("Payment plan reissued old_plan_id=%s new_plan_id=%s", plan_id, stored.plan_id)
        return self._submissions.refresh_plan_status(stored.plan_id)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def create_schedule(
        self,
        plan_id: str,
        method: Union[FundingMethod, str],
        interest_rate: Any,
        tenure_periods: int,
        start_date: date,
        frequency: Union[RepaymentFrequency, str] = RepaymentFrequency.MONTHLY,
        principal: Optional[Any] = None,
        external_ref: Optional[str] = None,
    ) -> RepaymentScheduleModel:
        """Attach an amortized schedule to a plan's interest-bearing method.

        ``principal`` defaults to the method's available allocation.
        """
        plan = self.get_plan(plan_id)
        funding_method = FundingMethod(method)
        if not funding_method.is_schedule_backed:
            raise InvalidAllocation(
                "{0} does not use a repayment schedule".format(funding_method.value),
                context={"method": funding_method.value},
            )
        entries = self._ledger.entries_for(plan_id)
        available = self._calculator.available_for(plan, entries, funding_method)
        amount = round_money(principal) if principal is not None else available
        if amount <= ZERO or amount > available:
            raise InvalidAmount(
                "Schedule principal must be positive and within the available allocation",
                context={"method": funding_method.value, "principal": amount, "available": available},
            )
        with store_guard("list_schedules", plan_id=plan_id):
            existing = [item for item in self._store.list_schedules(plan_id) if item.method == funding_method]
        if any(not item.is_fully_paid for item in existing):
            raise PlanLocked(
                "{0} already has an open schedule".format(funding_method.value),
                context={"method": funding_method.value, "schedule_id": existing[-1].schedule_id},
            )

        schedule = self._schedules.generate(
            plan_id=plan_id,
            method=funding_method,
            principal=amount,
            interest_rate=interest_rate,
            tenure_periods=int(tenure_periods),
            frequency=RepaymentFrequency(frequency),
            start_date=start_date,
            external_ref=external_ref or new_id(funding_method.value),
        )
        with store_guard("create_schedule", schedule_id=schedule.schedule_id):
            stored = self._store.create_schedule(schedule)
        logger.info(
            "Repayment schedule created schedule_id=%s plan_id=%s method=%s principal=%s periods=%s approved=%s",
            stored.schedule_id,
            plan_id,
            funding_method.value,
            stored.principal,
            stored.tenure_periods,
            stored.schedule_approved,
        )
        return stored

    def approve_schedule(
        self,
        method: Union[FundingMethod, str],
        external_ref: str,
        approver: str,
    ) -> RepaymentScheduleModel:
        """Approve the schedule behind a mortgage id or cooperative plan id."""
        return self._approvals.approve_by_reference(FundingMethod(method), external_ref, approver)

    def mark_schedule_paid(self, schedule_id: str, period_index: int, actor: Optional[str] = None) -> Dict[str, Any]:
        """Record an installment paid outside the submission flow."""
        schedule_entry, ledger_entry = self._schedules.mark_paid(schedule_id, period_index, recorded_by=actor)
        schedule = self._schedules.get(schedule_id)
        self._submissions.refresh_plan_status(schedule.plan_id)
        return {"schedule_entry": schedule_entry, "ledger_entry": ledger_entry}

    def sweep_overdue(self) -> int:
        return self._schedules.sweep_overdue()

    # ------------------------------------------------------------------
    # Submissions and admin review
    # ------------------------------------------------------------------

    def submit_payment(
        self,
        tenant_id: str,
        member_id: str,
        property_id: str,
        method: Union[FundingMethod, str],
        amount: Any,
        payer: Optional[PayerInfo] = None,
        evidence: Optional[EvidenceUpload] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        submission_token: Optional[str] = None,
        period_index: Optional[int] = None,
    ) -> SubmissionResult:
        """Resolve the property's current plan and submit a payment against it."""
        plan = self.find_current_plan(tenant_id, member_id, property_id)
        return self._submissions.submit(
            plan.plan_id,
            method,
            amount,
            payer=payer,
            evidence=evidence,
            reference=reference,
            notes=notes,
            metadata=metadata,
            submission_token=submission_token,
            period_index=period_index,
            recorded_by=member_id,
        )

    def confirm_entry(self, entry_id: str, actor: str) -> LedgerEntryModel:
        """Confirm a pending payment after review."""
        entry = self._ledger.settle(entry_id, LedgerEntryStatus.COMPLETED, actor)
        self._submissions.refresh_plan_status(entry.plan_id)
        return entry

    def reject_entry(self, entry_id: str, actor: str, reason: str) -> LedgerEntryModel:
        """Reject a pending payment; the reason is mandatory."""
        if not (reason or "").strip():
            raise InvalidStateTransition("A rejection reason is required", context={"entry_id": entry_id})
        return self._ledger.settle(entry_id, LedgerEntryStatus.REJECTED, actor, reason=reason.strip())

    def reverse_entry(self, entry_id: str, actor: str, reason: str) -> LedgerEntryModel:
        """Offset a completed credit with a debit of the same amount."""
        if not (reason or "").strip():
            raise InvalidStateTransition("A reversal reason is required", context={"entry_id": entry_id})
        debit = self._ledger.reverse(entry_id, actor, reason.strip())
        self._submissions.refresh_plan_status(debit.plan_id)
        return debit

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _wallet_balance(self, plan: PaymentPlanModel) -> Optional[Decimal]:
        try:
            return self._wallet_service.get_balance(plan.tenant_id, plan.member_id)
        except PaymentError:
            logger.warning("Wallet balance unavailable for payment-setup view plan_id=%s", plan.plan_id)
            return None

    def funding_summary(self, plan_id: str) -> Dict[str, Any]:
        """Totals, per-method breakdown and milestones recomputed from the ledger."""
        plan = self.get_plan(plan_id)
        entries = self._ledger.entries_for(plan_id)
        with store_guard("list_schedules", plan_id=plan_id):
            schedules = self._store.list_schedules(plan_id)
        summary = self._calculator.funding_summary(plan, entries, schedules)
        summary["allocations"] = self._calculator.breakdown(plan, entries)
        return summary

    def payment_setup_view(self, plan_id: str) -> Dict[str, Any]:
        """Everything the payment page needs for one plan."""
        plan = self.get_plan(plan_id)
        entries = self._ledger.entries_for(plan_id)
        with store_guard("list_schedules", plan_id=plan_id):
            schedules = self._store.list_schedules(plan_id)
        summary = self._calculator.funding_summary(plan, entries, schedules)

        schedules_by_method: Dict[str, Optional[RepaymentScheduleModel]] = {
            method.value: None for method in (FundingMethod.MORTGAGE, FundingMethod.COOPERATIVE, FundingMethod.LOAN)
        }
        for schedule in schedules:
            schedules_by_method[schedule.method.value] = schedule

        history: List[LedgerEntryModel] = sorted(entries, key=lambda item: item.sequence, reverse=True)
        return {
            "property": {"property_id": plan.property_id, "total_amount": plan.total_amount},
            "currency": self._settings.currency,
            "equity_wallet": {"balance": self._wallet_balance(plan)},
            "payment_plan": plan,
            "allocations": self._calculator.breakdown(plan, entries),
            "summary": summary,
            "ledger_entries": entries,
            "payment_history": history,
            "repayment_schedules": schedules_by_method,
            "manual_payment": ManualPaymentConfig.from_settings(self._settings),
        }

    def payment_setup_for_property(self, tenant_id: str, member_id: str, property_id: str) -> Dict[str, Any]:
        plan = self.find_current_plan(tenant_id, member_id, property_id)
        return self.payment_setup_view(plan.plan_id)

    def get_schedule(self, schedule_id: str) -> RepaymentScheduleModel:
        return self._schedules.get(schedule_id)

    def get_entry(self, entry_id: str) -> LedgerEntryModel:
        return self._ledger.get(entry_id)

    def schedule_for_reference(self, method: Union[FundingMethod, str], external_ref: str) -> RepaymentScheduleModel:
        return self._approvals.resolve(FundingMethod(method), external_ref)
