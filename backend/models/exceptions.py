"""Custom exceptions for model, repository, and payment layers."""

from typing import Any, Dict, Optional


class ModelError(Exception):
    """Base class for model-related failures."""


class ModelValidationError(ModelError):
    """Raised when model data fails custom business validation."""


class ModelNotFoundError(ModelError):
    """Raised when a requested document does not exist."""


class VersionConflictError(ModelError):
    """Raised when optimistic concurrency version checks fail."""


class PaymentError(ModelError):
    """Recoverable payment failure reported back to the caller.

    Attributes:
        error_kind: Stable machine-readable kind, for example ``ExceedsAllocation``.
        message: Human-readable explanation.
        context: Extra fields (method, remaining, field) needed to correct and resubmit.
    """

    error_kind = "PaymentError"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def to_payload(self) -> Dict[str, Any]:
        """Serialize error into the structured API failure shape."""
        context: Dict[str, Any] = {}
        for key, value in self.context.items():
            if value is None or isinstance(value, (bool, int, str)):
                context[key] = value
            else:
                context[key] = str(value)
        return {
            "success": False,
            "message": self.message,
            "error_kind": self.error_kind,
            "context": context,
        }


class InvalidAmount(PaymentError):
    error_kind = "InvalidAmount"


class MethodNotInPlan(PaymentError):
    error_kind = "MethodNotInPlan"


class ExceedsAllocation(PaymentError):
    error_kind = "ExceedsAllocation"


class InsufficientWalletBalance(PaymentError):
    error_kind = "InsufficientWalletBalance"


class PayerNameRequired(PaymentError):
    error_kind = "PayerNameRequired"


class PayerPhoneRequired(PaymentError):
    error_kind = "PayerPhoneRequired"


class TransactionReferenceRequired(PaymentError):
    error_kind = "TransactionReferenceRequired"


class EvidenceRequired(PaymentError):
    error_kind = "EvidenceRequired"


class ScheduleNotApproved(PaymentError):
    error_kind = "ScheduleNotApproved"


class AlreadyApproved(PaymentError):
    error_kind = "AlreadyApproved"


class ApprovalNotApplicable(PaymentError):
    error_kind = "ApprovalNotApplicable"


class AlreadyPaid(PaymentError):
    error_kind = "AlreadyPaid"


class UnknownMethodAllocation(PaymentError):
    error_kind = "UnknownMethodAllocation"


class InvalidAllocation(PaymentError):
    error_kind = "InvalidAllocation"


class PlanLocked(PaymentError):
    error_kind = "PlanLocked"


class InvalidStateTransition(PaymentError):
    error_kind = "InvalidStateTransition"


class AllocationConflict(PaymentError):
    """Lost a race on a shared allocation; safe to retry immediately."""

    error_kind = "AllocationConflict"


class PersistenceUnavailable(PaymentError):
    """Storage failed; nothing was committed."""

    error_kind = "PersistenceUnavailable"


class CollaboratorUnavailable(PaymentError):
    """Wallet or evidence collaborator failed before commit."""

    error_kind = "CollaboratorUnavailable"


class RecordNotFound(PaymentError):
    error_kind = "NotFound"
