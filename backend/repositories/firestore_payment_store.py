"""Firestore implementation of the payment store.

Conditional writes run inside Firestore transactions: the transaction re-reads
every document it depends on and Firestore retries or aborts it when a
concurrent writer touched them, so a check and its write are never split.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from google.cloud import firestore

from core.firebase_client_manager import FirebaseClientManager
from models.base import utc_now
from models.enums import FundingMethod, LedgerEntryStatus, ScheduleEntryStatus
from models.exceptions import AllocationConflict, ModelNotFoundError, VersionConflictError
from models.ledger import LedgerEntryModel
from models.plans import PaymentPlanModel
from models.repositories import PaymentStore, monotonic_timestamp, reserved_total
from models.schedules import RepaymentScheduleModel, ScheduleEntryModel


logger = logging.getLogger(__name__)


class FirestorePaymentStore(PaymentStore):
    """Persist plans, ledger entries and schedules in Cloud Firestore."""

    def __init__(self, firebase_manager: FirebaseClientManager, collection_prefix: str = "property_payment") -> None:
        """Initialize store collections.

        Args:
            firebase_manager: Shared Firebase client manager instance.
            collection_prefix: Prefix for every collection this store owns.
        """
        self._firebase_manager = firebase_manager
        self._collections = {
            "plans": "{0}_plans".format(collection_prefix),
            "entries": "{0}_ledger_entries".format(collection_prefix),
            "counters": "{0}_ledger_counters".format(collection_prefix),
            "schedules": "{0}_schedules".format(collection_prefix),
        }
        logger.info("Initialized FirestorePaymentStore prefix=%s", collection_prefix)

    def _ref(self, alias: str, document_id: str) -> Any:
        return self._firebase_manager.document(self._collections[alias], document_id)

    def _plan_entries_query(self, plan_id: str) -> Any:
        return self._firebase_manager.build_query(self._collections["entries"], [("plan_id", "==", plan_id)])

    @staticmethod
    def _entries_from(snapshots: Iterable[Any]) -> List[LedgerEntryModel]:
        entries = [LedgerEntryModel.from_firestore(item.to_dict() or {}, doc_id=item.id) for item in snapshots]
        entries.sort(key=lambda item: item.sequence)
        return entries

    def create_plan(self, plan: PaymentPlanModel) -> PaymentPlanModel:
        ref = self._ref("plans", plan.plan_id)

        @firestore.transactional
        def _create(transaction: firestore.Transaction) -> PaymentPlanModel:
            if ref.get(transaction=transaction).exists:
                raise VersionConflictError("Plan already exists: {0}".format(plan.plan_id))
            stored = plan.model_copy(update={"id": plan.plan_id})
            transaction.set(ref, stored.to_firestore())
            return stored

        return _create(self._firebase_manager.transaction())

    def get_plan(self, plan_id: str) -> PaymentPlanModel:
        payload = self._firebase_manager.get_document(self._collections["plans"], plan_id)
        if payload is None:
            raise ModelNotFoundError("Plan not found: {0}".format(plan_id))
        return PaymentPlanModel.from_firestore(payload, doc_id=plan_id)

    def update_plan(self, plan: PaymentPlanModel, expected_version: int) -> PaymentPlanModel:
        ref = self._ref("plans", plan.plan_id)

        @firestore.transactional
        def _update(transaction: firestore.Transaction) -> PaymentPlanModel:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise ModelNotFoundError("Plan not found: {0}".format(plan.plan_id))
            if int((snapshot.to_dict() or {}).get("version", 1)) != expected_version:
                raise VersionConflictError("Version conflict for plan_id={0}".format(plan.plan_id))
            stored = plan.model_copy(update={"version": expected_version + 1, "updated_at": utc_now()})
            transaction.set(ref, stored.to_firestore())
            return stored

        return _update(self._firebase_manager.transaction())

    def list_plans(self, tenant_id: str, member_id: str, property_id: str) -> List[PaymentPlanModel]:
        payloads = self._firebase_manager.query_documents(
            self._collections["plans"],
            filters=[
                ("tenant_id", "==", tenant_id),
                ("member_id", "==", member_id),
                ("property_id", "==", property_id),
            ],
        )
        plans = [PaymentPlanModel.from_firestore(item, doc_id=item.get("id")) for item in payloads]
        plans.sort(key=lambda item: item.created_at)
        return plans

    def replace_plan(
        self,
        superseded: PaymentPlanModel,
        expected_version: int,
        replacement: PaymentPlanModel,
        entries: Sequence[LedgerEntryModel] = (),
    ) -> PaymentPlanModel:
        old_ref = self._ref("plans", superseded.plan_id)
        new_ref = self._ref("plans", replacement.plan_id)
        counter_ref = self._ref("counters", replacement.plan_id)

        @firestore.transactional
        def _replace(transaction: firestore.Transaction) -> PaymentPlanModel:
            snapshot = old_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise ModelNotFoundError("Plan not found: {0}".format(superseded.plan_id))
            if int((snapshot.to_dict() or {}).get("version", 1)) != expected_version:
                raise VersionConflictError("Version conflict for plan_id={0}".format(superseded.plan_id))
            if new_ref.get(transaction=transaction).exists:
                raise VersionConflictError("Plan already exists: {0}".format(replacement.plan_id))

            staged: List[LedgerEntryModel] = []
            counter: Optional[Dict[str, Any]] = None
            for entry in entries:
                stored_entry, entry_ref, counter = self._stage_entry(staged, entry, None)
                staged.append(stored_entry)
                transaction.set(entry_ref, stored_entry.to_firestore())
            if counter is not None:
                transaction.set(counter_ref, counter)

            old = superseded.model_copy(update={"version": expected_version + 1, "updated_at": utc_now()})
            new = replacement.model_copy(update={"id": replacement.plan_id})
            transaction.set(old_ref, old.to_firestore())
            transaction.set(new_ref, new.to_firestore())
            return new

        return _replace(self._firebase_manager.transaction())

    def _stage_entry(
        self,
        existing: List[LedgerEntryModel],
        entry: LedgerEntryModel,
        ceiling: Optional[Decimal],
    ) -> Tuple[LedgerEntryModel, Any, Dict[str, Any]]:
        """Validate an append against already-read state and return the writes to stage."""
        if ceiling is not None and entry.is_credit:
            reserved = reserved_total(existing, entry.method)
            if reserved + entry.amount > ceiling:
                raise AllocationConflict(
                    "Allocation for {0} changed while the payment was in flight".format(entry.method.value),
                    context={"method": entry.method.value, "available": max(ceiling - reserved, Decimal("0.00"))},
                )
        sequence = (existing[-1].sequence if existing else 0) + 1
        created_at = monotonic_timestamp(existing[-1].created_at if existing else None)
        stored = entry.model_copy(
            update={"id": entry.entry_id, "sequence": sequence, "created_at": created_at, "updated_at": created_at}
        )
        counter = {"plan_id": entry.plan_id, "sequence": sequence}
        return stored, self._ref("entries", entry.entry_id), counter

    def append_entry(self, entry: LedgerEntryModel, ceiling: Optional[Decimal] = None) -> LedgerEntryModel:
        counter_ref = self._ref("counters", entry.plan_id)
        query = self._plan_entries_query(entry.plan_id)

        @firestore.transactional
        def _append(transaction: firestore.Transaction) -> LedgerEntryModel:
            counter_ref.get(transaction=transaction)
            existing = self._entries_from(transaction.get(query))
            if entry.submission_token:
                for item in existing:
                    if item.submission_token == entry.submission_token:
                        return item
            stored, entry_ref, counter = self._stage_entry(existing, entry, ceiling)
            transaction.set(entry_ref, stored.to_firestore())
            transaction.set(counter_ref, counter)
            return stored

        return _append(self._firebase_manager.transaction())

    def get_entry(self, entry_id: str) -> LedgerEntryModel:
        payload = self._firebase_manager.get_document(self._collections["entries"], entry_id)
        if payload is None:
            raise ModelNotFoundError("Ledger entry not found: {0}".format(entry_id))
        return LedgerEntryModel.from_firestore(payload, doc_id=entry_id)

    def list_entries(self, plan_id: str) -> List[LedgerEntryModel]:
        payloads = self._firebase_manager.query_documents(
            self._collections["entries"],
            filters=[("plan_id", "==", plan_id)],
        )
        entries = [LedgerEntryModel.from_firestore(item, doc_id=item.get("id")) for item in payloads]
        entries.sort(key=lambda item: item.sequence)
        return entries

    def transition_entry(
        self,
        entry_id: str,
        expected_status: LedgerEntryStatus,
        new_status: LedgerEntryStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntryModel:
        ref = self._ref("entries", entry_id)

        @firestore.transactional
        def _transition(transaction: firestore.Transaction) -> LedgerEntryModel:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise ModelNotFoundError("Ledger entry not found: {0}".format(entry_id))
            current = LedgerEntryModel.from_firestore(snapshot.to_dict() or {}, doc_id=entry_id)
            if current.status != expected_status:
                raise VersionConflictError(
                    "Entry {0} is {1}, expected {2}".format(entry_id, current.status.value, expected_status.value)
                )
            changes = dict(updates or {})
            changes.update({"status": new_status, "version": current.version + 1, "updated_at": utc_now()})
            stored = current.model_copy(update=changes)
            transaction.set(ref, stored.to_firestore())
            return stored

        return _transition(self._firebase_manager.transaction())

    def create_schedule(self, schedule: RepaymentScheduleModel) -> RepaymentScheduleModel:
        ref = self._ref("schedules", schedule.schedule_id)

        @firestore.transactional
        def _create(transaction: firestore.Transaction) -> RepaymentScheduleModel:
            if ref.get(transaction=transaction).exists:
                raise VersionConflictError("Schedule already exists: {0}".format(schedule.schedule_id))
            stored = schedule.model_copy(update={"id": schedule.schedule_id})
            transaction.set(ref, stored.to_firestore())
            return stored

        return _create(self._firebase_manager.transaction())

    def get_schedule(self, schedule_id: str) -> RepaymentScheduleModel:
        payload = self._firebase_manager.get_document(self._collections["schedules"], schedule_id)
        if payload is None:
            raise ModelNotFoundError("Schedule not found: {0}".format(schedule_id))
        return RepaymentScheduleModel.from_firestore(payload, doc_id=schedule_id)

    def list_schedules(self, plan_id: str) -> List[RepaymentScheduleModel]:
        payloads = self._firebase_manager.query_documents(
            self._collections["schedules"],
            filters=[("plan_id", "==", plan_id)],
        )
        schedules = [RepaymentScheduleModel.from_firestore(item, doc_id=item.get("id")) for item in payloads]
        schedules.sort(key=lambda item: item.created_at)
        return schedules

    def find_schedule(self, method: FundingMethod, external_ref: str) -> RepaymentScheduleModel:
        payloads = self._firebase_manager.query_documents(
            self._collections["schedules"],
            filters=[("method", "==", method.value), ("external_ref", "==", external_ref)],
            limit=1,
        )
        if not payloads:
            raise ModelNotFoundError("No {0} schedule for reference {1}".format(method.value, external_ref))
        return RepaymentScheduleModel.from_firestore(payloads[0], doc_id=payloads[0].get("id"))

    def update_schedule(self, schedule: RepaymentScheduleModel, expected_version: int) -> RepaymentScheduleModel:
        ref = self._ref("schedules", schedule.schedule_id)

        @firestore.transactional
        def _update(transaction: firestore.Transaction) -> RepaymentScheduleModel:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise ModelNotFoundError("Schedule not found: {0}".format(schedule.schedule_id))
            current = RepaymentScheduleModel.from_firestore(snapshot.to_dict() or {}, doc_id=schedule.schedule_id)
            if current.version != expected_version:
                raise VersionConflictError("Version conflict for schedule_id={0}".format(schedule.schedule_id))
            stored = schedule.model_copy(
                update={"version": expected_version + 1, "updated_at": utc_now(), "schedule": current.schedule}
            )
            transaction.set(ref, stored.to_firestore())
            return stored

        return _update(self._firebase_manager.transaction())

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
        schedule_ref = self._ref("schedules", schedule_id)

        @firestore.transactional
        def _update(
            transaction: firestore.Transaction,
        ) -> Tuple[RepaymentScheduleModel, ScheduleEntryModel, Optional[LedgerEntryModel]]:
            snapshot = schedule_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise ModelNotFoundError("Schedule not found: {0}".format(schedule_id))
            schedule = RepaymentScheduleModel.from_firestore(snapshot.to_dict() or {}, doc_id=schedule_id)

            existing: List[LedgerEntryModel] = []
            counter_ref = None
            if ledger_entry is not None:
                counter_ref = self._ref("counters", ledger_entry.plan_id)
                counter_ref.get(transaction=transaction)
                existing = self._entries_from(transaction.get(self._plan_entries_query(ledger_entry.plan_id)))

            current = schedule.entry_for(period_index)
            if current is None:
                raise ModelNotFoundError("Schedule {0} has no period {1}".format(schedule_id, period_index))
            if current.status not in allowed:
                raise VersionConflictError(
                    "Schedule entry {0} is {1}".format(current.schedule_entry_id, current.status.value)
                )

            changes = dict(updates)
            stored_ledger_entry = None
            if ledger_entry is not None:
                stored_ledger_entry, entry_ref, counter = self._stage_entry(existing, ledger_entry, ceiling)
                changes["ledger_entry_id"] = ledger_entry.entry_id
                transaction.set(entry_ref, stored_ledger_entry.to_firestore())
                transaction.set(counter_ref, counter)

            updated_entry = current.model_copy(update=changes)
            entries = [updated_entry if item.period_index == period_index else item for item in schedule.schedule]
            updated_schedule = schedule.model_copy(
                update={"schedule": entries, "version": schedule.version + 1, "updated_at": utc_now()}
            )
            transaction.set(schedule_ref, updated_schedule.to_firestore())
            return updated_schedule, updated_entry, stored_ledger_entry

        return _update(self._firebase_manager.transaction())

    def list_due_schedule_entries(self, before: datetime) -> List[Tuple[str, int]]:
        cutoff = before.date()
        due: List[Tuple[str, int]] = []
        for payload in self._firebase_manager.query_documents(self._collections["schedules"]):
            schedule = RepaymentScheduleModel.from_firestore(payload, doc_id=payload.get("id"))
            for entry in schedule.schedule:
                if entry.status == ScheduleEntryStatus.PENDING and entry.due_date < cutoff:
                    due.append((schedule.schedule_id, entry.period_index))
        return due
