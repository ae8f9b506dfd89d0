"""Service layer exports."""

from .allocation_calculator import AllocationCalculator
from .approval_gate import ApprovalGate
from .collaborators import (
    EvidenceStore,
    EvidenceUpload,
    HttpWalletService,
    LocalEvidenceStore,
    ManualPaymentConfig,
    PayerInfo,
    StaticWalletService,
    WalletService,
    build_wallet_service,
)
from .ledger_engine import LedgerEngine
from .overdue_sweeper import OverdueSweeper
from .payment_setup_service import PaymentSetupService
from .payment_submission_handler import PaymentSubmissionHandler, SubmissionResult
from .repayment_schedule_engine import RepaymentScheduleEngine, amortize

__all__ = [
    "AllocationCalculator",
    "ApprovalGate",
    "EvidenceStore",
    "EvidenceUpload",
    "HttpWalletService",
    "LocalEvidenceStore",
    "ManualPaymentConfig",
    "PayerInfo",
    "StaticWalletService",
    "WalletService",
    "build_wallet_service",
    "LedgerEngine",
    "OverdueSweeper",
    "PaymentSetupService",
    "PaymentSubmissionHandler",
    "SubmissionResult",
    "RepaymentScheduleEngine",
    "amortize",
]
