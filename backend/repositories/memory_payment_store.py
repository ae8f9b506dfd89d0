"""In-memory payment store used in tests and when Firestore is disabled."""

from datetime import datetime
from decimal import Decimal
import logging
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from models.enums import FundingMethod, LedgerEntryStatus, ScheduleEntryStatus
from models.exceptions import AllocationConflict, ModelNotFoundError, VersionConflictError
from models.ledger import LedgerEntryModel
from models.plans import PaymentPlanModel
from models.repositories import PaymentStore, monotonic_timestamp, reserved_total
from models.schedules import RepaymentScheduleModel, ScheduleEntryModel
from models.base import utc_now


logger = logging.getLogger(__name__)


class InMemoryPaymentStore(PaymentStore):
    """Process-local store guarded by one re-entrant lock.

    Every check-then-write runs under the lock, which gives the same
    conditional-update semantics the Firestore store gets from transactions.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._plans: Dict[str, PaymentPlanModel] = {}
        self._entries: Dict[str, LedgerEntryModel] = {}
        self._plan_entries: Dict[str, List[str]] = {}
        self._sequences: Dict[str, int] = {}
        self._schedules: Dict[str, RepaymentScheduleModel] = {}

    def create_plan(self, plan: PaymentPlanModel) -> PaymentPlanModel:
        with self._lock:
            if plan.plan_id in self._plans:
                raise VersionConflictError("Plan already exists: {0}".format(plan.plan_id))
            stored = plan.model_copy(update={"id": plan.plan_id})
            self._plans[plan.plan_id] = stored
            return stored

    def get_plan(self, plan_id: str) -> PaymentPlanModel:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None:
                raise ModelNotFoundError("Plan not found: {0}".format(plan_id))
            return plan

    def update_plan(self, plan: PaymentPlanModel, expected_version: int) -> PaymentPlanModel:
        with self._lock:
            current = self.get_plan(plan.plan_id)
            if current.version != expected_version:
                raise VersionConflictError("Version conflict for plan_id={0}".format(plan.plan_id))
            stored = plan.model_copy(update={"version": expected_version + 1, "updated_at": utc_now()})
            self._plans[plan.plan_id] = stored
            return stored

    def list_plans(self, tenant_id: str, member_id: str, property_id: str) -> List[PaymentPlanModel]:
        with self._lock:
            plans = [
                plan
                for plan in self._plans.values()
                if plan.tenant_id == tenant_id and plan.member_id == member_id and plan.property_id == property_id
            ]
        plans.sort(key=lambda item: item.created_at)
        return plans

    def replace_plan(
        self,
        superseded: PaymentPlanModel,
        expected_version: int,
        replacement: PaymentPlanModel,
        entries: Sequence[LedgerEntryModel] = (),
    ) -> PaymentPlanModel:
        with self._lock:
            current = self.get_plan(superseded.plan_id)
            if current.version != expected_version:
                raise VersionConflictError("Version conflict for plan_id={0}".format(superseded.plan_id))
            if replacement.plan_id in self._plans:
                raise VersionConflictError("Plan already exists: {0}".format(replacement.plan_id))
            old = superseded.model_copy(update={"version": expected_version + 1, "updated_at": utc_now()})
            new = replacement.model_copy(update={"id": replacement.plan_id})
            self._plans[old.plan_id] = old
            self._plans[new.plan_id] = new
            for entry in entries:
                self._write_entry(entry)
            return new

    def _entries_for(self, plan_id: str) -> List[LedgerEntryModel]:
        return [self._entries[entry_id] for entry_id in self._plan_entries.get(plan_id, [])]

    def _find_token(self, plan_id: str, token: Optional[str]) -> Optional[LedgerEntryModel]:
        if not token:
            return None
        for entry in self._entries_for(plan_id):
            if entry.submission_token == token:
                return entry
        return None

    def _check_ceiling(self, entry: LedgerEntryModel, ceiling: Optional[Decimal]) -> None:
        if ceiling is None or not entry.is_credit:
            return
        reserved = reserved_total(self._entries_for(entry.plan_id), entry.method)
        if reserved + entry.amount > ceiling:
            available = max(ceiling - reserved, Decimal("0.00"))
            raise AllocationConflict(
                "Allocation for {0} changed while the payment was in flight".format(entry.method.value),
                context={"method": entry.method.value, "available": available},
            )

    def _write_entry(self, entry: LedgerEntryModel) -> LedgerEntryModel:
        sequence = self._sequences.get(entry.plan_id, 0) + 1
        entries = self._entries_for(entry.plan_id)
        created_at = monotonic_timestamp(entries[-1].created_at if entries else None)
        stored = entry.model_copy(
            update={"id": entry.entry_id, "sequence": sequence, "created_at": created_at, "updated_at": created_at}
        )
        self._sequences[entry.plan_id] = sequence
        self._entries[entry.entry_id] = stored
        self._plan_entries.setdefault(entry.plan_id, []).append(entry.entry_id)
        return stored

    def append_entry(self, entry: LedgerEntryModel, ceiling: Optional[Decimal] = None) -> LedgerEntryModel:
        with self._lock:
            existing = self._find_token(entry.plan_id, entry.submission_token)
            if existing is not None:
                logger.info(
                    "Duplicate submission token ignored plan_id=%s token=%s entry_id=%s",
                    entry.plan_id,
                    entry.submission_token,
                    existing.entry_id,
                )
                return existing
            self._check_ceiling(entry, ceiling)
            return self._write_entry(entry)

    def get_entry(self, entry_id: str) -> LedgerEntryModel:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise ModelNotFoundError("Ledger entry not found: {0}".format(entry_id))
            return entry

    def list_entries(self, plan_id: str) -> List[LedgerEntryModel]:
        with self._lock:
            entries = self._entries_for(plan_id)
        return sorted(entries, key=lambda item: item.sequence)

    def transition_entry(
        self,
        entry_id: str,
        expected_status: LedgerEntryStatus,
        new_status: LedgerEntryStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntryModel:
        with self._lock:
            current = self.get_entry(entry_id)
            if current.status != expected_status:
                raise VersionConflictError(
                    "Entry {0} is {1}, expected {2}".format(entry_id, current.status.value, expected_status.value)
                )
            changes = dict(updates or {})
            changes.update({"status": new_status, "version": current.version + 1, "updated_at": utc_now()})
            stored = current.model_copy(update=changes)
            self._entries[entry_id] = stored
            return stored

    def create_schedule(self, schedule: RepaymentScheduleModel) -> RepaymentScheduleModel:
        with self._lock:
            if schedule.schedule_id in self._schedules:
                raise VersionConflictError("Schedule already exists: {0}".format(schedule.schedule_id))
            stored = schedule.model_copy(update={"id": schedule.schedule_id})
            self._schedules[schedule.schedule_id] = stored
            return stored

    def get_schedule(self, schedule_id: str) -> RepaymentScheduleModel:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if schedule is None:
                raise ModelNotFoundError("Schedule not found: {0}".format(schedule_id))
            return schedule

    def list_schedules(self, plan_id: str) -> List[RepaymentScheduleModel]:
        with self._lock:
            schedules = [item for item in self._schedules.values() if item.plan_id == plan_id]
        schedules.sort(key=lambda item: item.created_at)
        return schedules

    def find_schedule(self, method: FundingMethod, external_ref: str) -> RepaymentScheduleModel:
        with self._lock:
            for schedule in self._schedules.values():
                if schedule.method == method and schedule.external_ref == external_ref:
                    return schedule
        raise ModelNotFoundError("No {0} schedule for reference {1}".format(method.value, external_ref))

    def update_schedule(self, schedule: RepaymentScheduleModel, expected_version: int) -> RepaymentScheduleModel:
        with self._lock:
            current = self.get_schedule(schedule.schedule_id)
            if current.version != expected_version:
                raise VersionConflictError("Version conflict for schedule_id={0}".format(schedule.schedule_id))
            stored = schedule.model_copy(
                update={"version": expected_version + 1, "updated_at": utc_now(), "schedule": current.schedule}
            )
            self._schedules[schedule.schedule_id] = stored
            return stored

    def update_schedule_entry(
        self,
        schedule_id: str,
        period_index: int,
        expected_statuses: Iterable[ScheduleEntryStatus],
        updates: Dict[str, Any],
        ledger_entry: Optional[LedgerEntryModel] = None,
        ceiling: Optional[Decimal] = None,
    ) -> Tuple[RepaymentScheduleModel, ScheduleEntryModel, Optional[LedgerEntryModel]]:
        allowed = set(expected_statuses)
        with self._lock:
            schedule = self.get_schedule(schedule_id)
            current = schedule.entry_for(period_index)
            if current is None:
                raise ModelNotFoundError("Schedule {0} has no period {1}".format(schedule_id, period_index))
            if current.status not in allowed:
                raise VersionConflictError(
                    "Schedule entry {0} is {1}".format(current.schedule_entry_id, current.status.value)
                )

            stored_ledger_entry = None
            if ledger_entry is not None:
                self._check_ceiling(ledger_entry, ceiling)

            changes = dict(updates)
            if ledger_entry is not None:
                changes["ledger_entry_id"] = ledger_entry.entry_id
            updated_entry = current.model_copy(update=changes)
            entries = [updated_entry if item.period_index == period_index else item for item in schedule.schedule]
            updated_schedule = schedule.model_copy(
                update={"schedule": entries, "version": schedule.version + 1, "updated_at": utc_now()}
            )

            if ledger_entry is not None:
                stored_ledger_entry = self._write_entry(ledger_entry)
            self._schedules[schedule_id] = updated_schedule
            return updated_schedule, updated_entry, stored_ledger_entry

    def list_due_schedule_entries(self, before: datetime) -> List[Tuple[str, int]]:
        cutoff = before.date() if isinstance(before, datetime) else before
        due: List[Tuple[str, int]] = []
        with self._lock:
            for schedule in self._schedules.values():
                for entry in schedule.schedule:
                    if entry.status == ScheduleEntryStatus.PENDING and entry.due_date < cutoff:
                        due.append((schedule.schedule_id, entry.period_index))
        return due
