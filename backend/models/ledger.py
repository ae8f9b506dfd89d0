"""Ledger entry model: the immutable audit record of every money movement."""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field, field_validator

from common.money import round_money
from .base import BaseDocumentModel, Money
from .enums import EntryDirection, FundingMethod, LedgerEntryStatus


logger = logging.getLogger(__name__)


class LedgerEntryModel(BaseDocumentModel):
    """One credit or debit against a payment plan.

    Records are frozen. The only permitted change is the forward settlement
    transition ``pending -> completed | rejected`` performed by the store as a
    conditional update that yields a new record with the same ``entry_id``.
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        frozen=True,
        use_enum_values=False,
    )

    entry_id: str = Field(..., min_length=3)
    plan_id: str = Field(..., min_length=3)
    method: FundingMethod
    direction: EntryDirection = Field(default=EntryDirection.CREDIT)
    amount: Money = Field(..., gt=0)
    status: LedgerEntryStatus = Field(default=LedgerEntryStatus.PENDING)
    sequence: int = Field(default=0, ge=0)

    reference: Optional[str] = Field(default=None)
    payment_id: Optional[str] = Field(default=None)
    schedule_id: Optional[str] = Field(default=None)
    schedule_entry_id: Optional[str] = Field(default=None)
    submission_token: Optional[str] = Field(default=None)
    reverses_entry_id: Optional[str] = Field(default=None)

    payer_name: Optional[str] = Field(default=None)
    payer_phone: Optional[str] = Field(default=None)
    evidence_url: Optional[str] = Field(default=None)
    notes: Optional[str] = Field(default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    recorded_by: Optional[str] = Field(default=None)

    resolved_at: Optional[datetime] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None)
    rejection_reason: Optional[str] = Field(default=None)

    @field_validator("amount")
    @classmethod
    def _quantize_amount(cls, value: Decimal) -> Decimal:
        """Keep ledger amounts at cent precision."""
        return round_money(value)

    @property
    def is_credit(self) -> bool:
        """Return whether the entry adds to the paid-in balance."""
        return self.direction == EntryDirection.CREDIT

    @property
    def signed_amount(self) -> Decimal:
        """Return amount with debit entries negated."""
        return self.amount if self.is_credit else -self.amount
