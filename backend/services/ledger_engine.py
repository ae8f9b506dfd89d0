"""Append-only ledger access with settlement transitions and reversals."""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from common.money import ZERO, round_money, to_decimal
from models.base import utc_now
from models.enums import EntryDirection, FundingMethod, LedgerEntryStatus
from models.exceptions import (
    InvalidAmount,
    InvalidStateTransition,
    ModelNotFoundError,
    PaymentError,
    PersistenceUnavailable,
    RecordNotFound,
    VersionConflictError,
)
from models.ledger import LedgerEntryModel
from models.repositories import PaymentStore


logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier."""
    return "{0}_{1}".format(prefix, uuid4().hex[:16])


@contextmanager
def store_guard(operation: str, **fields: Any) -> Iterator[None]:
    """Translate store failures into payment errors.

    Payment errors and the store's own not-found/version signals pass through
    untouched; anything else means the backend failed and nothing was written.
    """
    try:
        yield
    except (PaymentError, ModelNotFoundError, VersionConflictError):
        raise
    except Exception as exc:
        logger.exception("Store operation failed operation=%s fields=%s", operation, fields)
        raise PersistenceUnavailable(
            "Payment storage is unavailable, nothing was recorded",
            context=dict(fields, operation=operation, cause=exc.__class__.__name__),
        )


def net_completed(entries: List[LedgerEntryModel], method: Optional[FundingMethod] = None) -> Decimal:
    """Return completed credits minus completed debits, optionally for one method."""
    total = ZERO
    for entry in entries:
        if entry.status != LedgerEntryStatus.COMPLETED:
            continue
        if method is not None and entry.method != method:
            continue
        total += entry.signed_amount
    return round_money(total)


def pending_credits(entries: List[LedgerEntryModel], method: Optional[FundingMethod] = None) -> Decimal:
    """Return the sum of credits still awaiting confirmation."""
    total = ZERO
    for entry in entries:
        if entry.status != LedgerEntryStatus.PENDING or not entry.is_credit:
            continue
        if method is not None and entry.method != method:
            continue
        total += entry.amount
    return round_money(total)


class LedgerEngine:
    """Owns the ledger: the only path through which money movements are recorded."""

    def __init__(self, store: PaymentStore) -> None:
        self._store = store

    def build_entry(
        self,
        plan_id: str,
        method: FundingMethod,
        amount: Any,
        direction: EntryDirection = EntryDirection.CREDIT,
        status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED,
        **fields: Any,
    ) -> LedgerEntryModel:
        """Validate the amount and build an unsaved entry.

        Raises:
            InvalidAmount: If the amount is not a positive number.
        """
        try:
            value = round_money(to_decimal(amount))
        except ValueError:
            raise InvalidAmount("Amount must be numeric", context={"method": method.value, "amount": str(amount)})
        if value <= ZERO:
            raise InvalidAmount(
                "Amount must be greater than zero", context={"method": method.value, "amount": str(value)}
            )
        return LedgerEntryModel(
            entry_id=new_id("led"),
            plan_id=plan_id,
            method=method,
            direction=direction,
            amount=value,
            status=status,
            **fields,
        )

    def append(self, entry: LedgerEntryModel, ceiling: Optional[Decimal] = None) -> LedgerEntryModel:
        """Record an entry atomically and return it with its assigned sequence."""
        with store_guard("append_entry", plan_id=entry.plan_id, method=entry.method.value):
            stored = self._store.append_entry(entry, ceiling=ceiling)
        logger.info(
            "Ledger entry recorded plan_id=%s entry_id=%s method=%s direction=%s amount=%s status=%s seq=%s",
            stored.plan_id,
            stored.entry_id,
            stored.method.value,
            stored.direction.value,
            stored.amount,
            stored.status.value,
            stored.sequence,
        )
        return stored

    def get(self, entry_id: str) -> LedgerEntryModel:
        """Fetch one entry or raise ``RecordNotFound``."""
        try:
            with store_guard("get_entry", entry_id=entry_id):
                return self._store.get_entry(entry_id)
        except ModelNotFoundError:
            raise RecordNotFound("Ledger entry not found", context={"entry_id": entry_id})

    def entries_for(self, plan_id: str) -> List[LedgerEntryModel]:
        """Return every entry of a plan in sequence order."""
        with store_guard("list_entries", plan_id=plan_id):
            return self._store.list_entries(plan_id)

    def find_by_token(self, plan_id: str, submission_token: Optional[str]) -> Optional[LedgerEntryModel]:
        """Return the entry already recorded for a submission token, if any."""
        if not submission_token:
            return None
        for entry in self.entries_for(plan_id):
            if entry.submission_token == submission_token:
                return entry
        return None

    def total_paid(self, plan_id: str) -> Decimal:
        """Return completed credits minus completed debits across all methods."""
        return net_completed(self.entries_for(plan_id))

    def settle(
        self,
        entry_id: str,
        new_status: LedgerEntryStatus,
        actor: str,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> LedgerEntryModel:
        """Move a pending entry to completed or rejected exactly once.

        Raises:
            InvalidStateTransition: If the entry is no longer pending.
        """
        if new_status not in {LedgerEntryStatus.COMPLETED, LedgerEntryStatus.REJECTED}:
            raise InvalidStateTransition(
                "Entries can only be confirmed or rejected", context={"entry_id": entry_id, "to": new_status.value}
            )
        current = self.get(entry_id)
        if current.status != LedgerEntryStatus.PENDING:
            raise InvalidStateTransition(
                "Entry is already {0}".format(current.status.value),
                context={"entry_id": entry_id, "status": current.status.value},
            )
        updates: Dict[str, Any] = {"resolved_at": at or utc_now(), "resolved_by": actor}
        if reason:
            updates["rejection_reason"] = reason
        try:
            with store_guard("transition_entry", entry_id=entry_id):
                stored = self._store.transition_entry(entry_id, LedgerEntryStatus.PENDING, new_status, updates)
        except VersionConflictError:
            latest = self.get(entry_id)
            raise InvalidStateTransition(
                "Entry was settled concurrently as {0}".format(latest.status.value),
                context={"entry_id": entry_id, "status": latest.status.value},
            )
        logger.info("Ledger entry settled entry_id=%s status=%s actor=%s", entry_id, new_status.value, actor)
        return stored

    def reverse(self, entry_id: str, actor: str, reason: str) -> LedgerEntryModel:
        """Record an offsetting debit for a completed credit.

        Raises:
            InvalidStateTransition: If the entry is not a completed credit or was already reversed.
        """
        original = self.get(entry_id)
        if original.status != LedgerEntryStatus.COMPLETED or not original.is_credit:
            raise InvalidStateTransition(
                "Only completed credits can be reversed",
                context={"entry_id": entry_id, "status": original.status.value, "direction": original.direction.value},
            )
        if original.schedule_entry_id:
            raise InvalidStateTransition(
                "Installment credits cannot be reversed", context={"entry_id": entry_id}
            )
        if any(entry.reverses_entry_id == entry_id for entry in self.entries_for(original.plan_id)):
            raise InvalidStateTransition("Entry was already reversed", context={"entry_id": entry_id})
        debit = self.build_entry(
            plan_id=original.plan_id,
            method=original.method,
            amount=original.amount,
            direction=EntryDirection.DEBIT,
            status=LedgerEntryStatus.COMPLETED,
            reverses_entry_id=original.entry_id,
            submission_token="reversal:{0}".format(original.entry_id),
            notes=reason,
            recorded_by=actor,
            resolved_at=utc_now(),
            resolved_by=actor,
        )
        return self.append(debit)
