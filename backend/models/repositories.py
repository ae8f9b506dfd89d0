"""Repository interface for datastore-agnostic payment ledger access."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from common.money import ZERO, round_money
from .base import utc_now
from .enums import EntryDirection, FundingMethod, LedgerEntryStatus, ScheduleEntryStatus
from .exceptions import ModelNotFoundError, VersionConflictError
from .ledger import LedgerEntryModel
from .plans import PaymentPlanModel
from .schedules import RepaymentScheduleModel, ScheduleEntryModel


logger = logging.getLogger(__name__)


def reserved_total(entries: Iterable[LedgerEntryModel], method: FundingMethod) -> Decimal:
    """Return allocation already claimed by a method.

    Pending and completed credits both hold allocation; completed debits release it.
    Rejected entries hold nothing.
    """
    total = ZERO
    for entry in entries:
        if entry.method != method:
            continue
        if entry.direction == EntryDirection.CREDIT and entry.status in {
            LedgerEntryStatus.PENDING,
            LedgerEntryStatus.COMPLETED,
        }:
            total += entry.amount
        elif entry.direction == EntryDirection.DEBIT and entry.status == LedgerEntryStatus.COMPLETED:
            total -= entry.amount
    return round_money(total)


def monotonic_timestamp(previous: Optional[datetime]) -> datetime:
    """Return now, nudged past ``previous`` so per-plan ``created_at`` strictly increases."""
    now = utc_now()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class PaymentStore(ABC):
    """Contract for the only mutable shared resources: plans, ledger and schedules.

    Every write is all-or-nothing. Service code wraps unexpected backend
    failures in ``PersistenceUnavailable``.
    """

    @abstractmethod
    def create_plan(self, plan: PaymentPlanModel) -> PaymentPlanModel:
        """Persist a new plan."""

    @abstractmethod
    def get_plan(self, plan_id: str) -> PaymentPlanModel:
        """Fetch a plan by identifier.

        Raises:
            ModelNotFoundError: If plan does not exist.
        """

    @abstractmethod
    def update_plan(self, plan: PaymentPlanModel, expected_version: int) -> PaymentPlanModel:
        """Replace a plan when the stored version still equals ``expected_version``.

        Raises:
            ModelNotFoundError: If plan does not exist.
            VersionConflictError: If another writer updated the plan first.
        """

    @abstractmethod
    def list_plans(self, tenant_id: str, member_id: str, property_id: str) -> List[PaymentPlanModel]:
        """Return all plans issued for one (tenant, member, property) triple, oldest first."""

    @abstractmethod
    def replace_plan(
        self,
        superseded: PaymentPlanModel,
        expected_version: int,
        replacement: PaymentPlanModel,
        entries: Sequence[LedgerEntryModel] = (),
    ) -> PaymentPlanModel:
        """Supersede a plan, create its replacement and seed the replacement's ledger.

        All writes commit together or not at all. ``entries`` belong to the
        replacement and receive sequences starting at 1.

        Raises:
            ModelNotFoundError: If the superseded plan does not exist.
            VersionConflictError: If the superseded plan changed or the replacement already exists.
        """

    @abstractmethod
    def append_entry(self, entry: LedgerEntryModel, ceiling: Optional[Decimal] = None) -> LedgerEntryModel:
        """Atomically append a ledger entry and assign its per-plan sequence.

        When ``entry.submission_token`` was already used on the plan, the stored
        entry is returned and nothing is written. When ``ceiling`` is given and
        the entry is a credit, the write fails if the method's reserved total
        would exceed it.

        Raises:
            AllocationConflict: If the conditional allocation check fails.
        """

    @abstractmethod
    def get_entry(self, entry_id: str) -> LedgerEntryModel:
        """Fetch one ledger entry."""

    @abstractmethod
    def list_entries(self, plan_id: str) -> List[LedgerEntryModel]:
        """Return a plan's entries ordered by sequence ascending."""

    @abstractmethod
    def transition_entry(
        self,
        entry_id: str,
        expected_status: LedgerEntryStatus,
        new_status: LedgerEntryStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntryModel:
        """Move an entry's settlement status if it is still ``expected_status``.

        Raises:
            VersionConflictError: If the entry is no longer in ``expected_status``.
        """

    @abstractmethod
    def create_schedule(self, schedule: RepaymentScheduleModel) -> RepaymentScheduleModel:
        """Persist a new repayment schedule."""

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> RepaymentScheduleModel:
        """Fetch a schedule by identifier."""

    @abstractmethod
    def list_schedules(self, plan_id: str) -> List[RepaymentScheduleModel]:
        """Return schedules attached to a plan."""

    @abstractmethod
    def find_schedule(self, method: FundingMethod, external_ref: str) -> RepaymentScheduleModel:
        """Resolve a schedule by its mortgage, cooperative plan or loan id."""

    @abstractmethod
    def update_schedule(self, schedule: RepaymentScheduleModel, expected_version: int) -> RepaymentScheduleModel:
        """Replace schedule header fields under an optimistic version check."""

    @abstractmethod
    def update_schedule_entry(
        self,
        schedule_id: str,
        period_index: int,
        expected_statuses: Iterable[ScheduleEntryStatus],
        updates: Dict[str, Any],
        ledger_entry: Optional[LedgerEntryModel] = None,
        ceiling: Optional[Decimal] = None,
    ) -> Tuple[RepaymentScheduleModel, ScheduleEntryModel, Optional[LedgerEntryModel]]:
        """Conditionally update one schedule entry, optionally appending a ledger entry.

        Both writes commit together or not at all.

        Raises:
            VersionConflictError: If the entry's status is not in ``expected_statuses``.
            AllocationConflict: If the ledger entry would exceed ``ceiling``.
        """

    @abstractmethod
    def list_due_schedule_entries(self, before: datetime) -> List[Tuple[str, int]]:
        """Return ``(schedule_id, period_index)`` for pending entries due before ``before``."""


__all__ = [
    "ModelNotFoundError",
    "VersionConflictError",
    "PaymentStore",
    "monotonic_timestamp",
    "reserved_total",
]
