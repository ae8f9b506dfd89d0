"""Repayment schedule models for interest-bearing funding methods."""

from datetime import date, datetime
from decimal import Decimal
import logging
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from common.money import ZERO, sum_money
from .base import BaseDocumentModel, Money
from .enums import FundingMethod, RepaymentFrequency, ScheduleEntryStatus
from .exceptions import ModelValidationError


logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    ScheduleEntryStatus.PENDING: {ScheduleEntryStatus.PAID, ScheduleEntryStatus.OVERDUE},
    ScheduleEntryStatus.OVERDUE: {ScheduleEntryStatus.PAID},
    ScheduleEntryStatus.PAID: set(),
}


class ScheduleEntryModel(BaseModel):
    """One amortized installment."""

    schedule_entry_id: str = Field(..., min_length=3)
    period_index: int = Field(..., gt=0)
    due_date: date
    principal_component: Money = Field(..., ge=0)
    interest_component: Money = Field(..., ge=0)
    total: Money = Field(..., ge=0)
    closing_balance: Money = Field(..., ge=0)
    status: ScheduleEntryStatus = Field(default=ScheduleEntryStatus.PENDING)

    paid_at: Optional[datetime] = Field(default=None)
    overdue_since: Optional[datetime] = Field(default=None)
    ledger_entry_id: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def _validate_total(self) -> "ScheduleEntryModel":
        """``total`` is always principal plus interest."""
        if self.total != self.principal_component + self.interest_component:
            raise ValueError("total must equal principal_component + interest_component")
        return self

    def can_transition_to(self, target: ScheduleEntryStatus) -> bool:
        """Return whether the forward-only status machine allows ``target``."""
        return target in _ALLOWED_TRANSITIONS[self.status]


class RepaymentScheduleModel(BaseDocumentModel):
    """Amortization table for one (plan, interest-bearing method) pair."""

    schedule_id: str = Field(..., min_length=3)
    plan_id: str = Field(..., min_length=3)
    method: FundingMethod
    external_ref: Optional[str] = Field(default=None, description="Mortgage, cooperative plan or loan id.")

    principal: Money = Field(..., gt=0)
    interest_rate: Decimal = Field(..., ge=0, description="Annual nominal rate in percent.")
    tenure_periods: int = Field(..., gt=0)
    frequency: RepaymentFrequency = Field(default=RepaymentFrequency.MONTHLY)
    start_date: date
    level_payment: Money = Field(..., ge=0)
    schedule: List[ScheduleEntryModel] = Field(default_factory=list)

    schedule_approved: bool = Field(default=False)
    schedule_approved_at: Optional[datetime] = Field(default=None)
    approved_by: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def _require_schedule_backed_method(self) -> "RepaymentScheduleModel":
        """Only mortgage, cooperative and loan methods carry schedules."""
        if not self.method.is_schedule_backed:
            raise ValueError("{0} does not use a repayment schedule".format(self.method.value))
        return self

    @classmethod
    def validate_schedule(cls, entries: List[ScheduleEntryModel], expected_principal: Decimal) -> None:
        """Validate ordering and principal reconciliation of a schedule.

        Raises:
            ModelValidationError: If ordering or principal constraints fail.
        """
        if not entries:
            raise ModelValidationError("Repayment schedule cannot be empty")
        for index, entry in enumerate(entries, start=1):
            if entry.period_index != index:
                raise ModelValidationError("Schedule period indexes must be continuous from 1")
        principal_total = sum_money(entry.principal_component for entry in entries)
        if principal_total != expected_principal:
            raise ModelValidationError(
                "Schedule principal {0} does not reconcile to {1}".format(principal_total, expected_principal)
            )
        if entries[-1].closing_balance != ZERO:
            raise ModelValidationError("Schedule must amortize to a zero closing balance")

    def entry_for(self, period_index: int) -> Optional[ScheduleEntryModel]:
        """Return the schedule entry for one period."""
        for entry in self.schedule:
            if entry.period_index == period_index:
                return entry
        return None

    @property
    def is_fully_paid(self) -> bool:
        return all(entry.status == ScheduleEntryStatus.PAID for entry in self.schedule)

    @property
    def principal_paid(self) -> Decimal:
        return sum_money(e.principal_component for e in self.schedule if e.status == ScheduleEntryStatus.PAID)

    @property
    def interest_paid(self) -> Decimal:
        return sum_money(e.interest_component for e in self.schedule if e.status == ScheduleEntryStatus.PAID)

    @property
    def total_interest(self) -> Decimal:
        return sum_money(entry.interest_component for entry in self.schedule)
