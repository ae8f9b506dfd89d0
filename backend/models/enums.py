"""Reusable enums for property payment domain models."""

from enum import Enum


class StringEnum(str, Enum):
    """Base enum class with string behavior for JSON serialization."""


class FundingMethod(StringEnum):
    """Recognized ways a property payment can be sourced."""

    EQUITY_WALLET = "equity_wallet"
    CASH = "cash"
    COOPERATIVE = "cooperative"
    MORTGAGE = "mortgage"
    LOAN = "loan"

    @property
    def is_schedule_backed(self) -> bool:
        """Return whether the method is repaid through an amortized schedule."""
        return self in SCHEDULE_BACKED_METHODS

    @property
    def requires_schedule_approval(self) -> bool:
        """Return whether schedules for this method need an explicit approval."""
        return self in APPROVAL_GATED_METHODS

    @property
    def settles_instantly(self) -> bool:
        """Return whether a submission is completed without external confirmation."""
        return self is FundingMethod.EQUITY_WALLET


SCHEDULE_BACKED_METHODS = frozenset(
    {FundingMethod.MORTGAGE, FundingMethod.COOPERATIVE, FundingMethod.LOAN}
)
APPROVAL_GATED_METHODS = frozenset({FundingMethod.MORTGAGE, FundingMethod.COOPERATIVE})


class FundingOption(StringEnum):
    """How a plan splits the property price across methods."""

    SINGLE = "single"
    MIX = "mix"


class PlanStatus(StringEnum):
    """Payment plan lifecycle states."""

    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    SUPERSEDED = "superseded"


class EntryDirection(StringEnum):
    """Whether a ledger entry adds to or removes from the paid-in balance."""

    CREDIT = "credit"
    DEBIT = "debit"


class LedgerEntryStatus(StringEnum):
    """Settlement states of a ledger entry."""

    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ScheduleEntryStatus(StringEnum):
    """Installment states inside a repayment schedule."""

    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"


class RepaymentFrequency(StringEnum):
    """Installment cadence for amortized schedules."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi_annually"
    ANNUALLY = "annually"

    @property
    def periods_per_year(self) -> int:
        """Return number of installments in one year."""
        return {
            RepaymentFrequency.MONTHLY: 12,
            RepaymentFrequency.QUARTERLY: 4,
            RepaymentFrequency.SEMI_ANNUALLY: 2,
            RepaymentFrequency.ANNUALLY: 1,
        }[self]

    @property
    def months_per_period(self) -> int:
        """Return calendar months between two due dates."""
        return 12 // self.periods_per_year
