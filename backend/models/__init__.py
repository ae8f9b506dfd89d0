"""Public model package exports for the property payment backend."""

from .base import BaseDocumentModel, Money, Percentage
from .enums import (
    EntryDirection,
    FundingMethod,
    FundingOption,
    LedgerEntryStatus,
    PlanStatus,
    RepaymentFrequency,
    ScheduleEntryStatus,
)
from .exceptions import ModelError, ModelNotFoundError, ModelValidationError, PaymentError, VersionConflictError
from .ledger import LedgerEntryModel
from .plans import FundingAllocationModel, PaymentPlanModel
from .repositories import PaymentStore
from .schedules import RepaymentScheduleModel, ScheduleEntryModel

__all__ = [
    "BaseDocumentModel",
    "Money",
    "Percentage",
    "EntryDirection",
    "FundingMethod",
    "FundingOption",
    "LedgerEntryStatus",
    "PlanStatus",
    "RepaymentFrequency",
    "ScheduleEntryStatus",
    "ModelError",
    "ModelValidationError",
    "ModelNotFoundError",
    "PaymentError",
    "VersionConflictError",
    "LedgerEntryModel",
    "FundingAllocationModel",
    "PaymentPlanModel",
    "PaymentStore",
    "RepaymentScheduleModel",
    "ScheduleEntryModel",
]
