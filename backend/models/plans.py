"""Payment plan and funding allocation models."""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from common.money import DEFAULT_TOLERANCE, HUNDRED, ZERO, percentage_of, round_money, sum_money
from .base import BaseDocumentModel, Money, Percentage
from .enums import FundingMethod, FundingOption, PlanStatus


logger = logging.getLogger(__name__)

MAX_MIX_METHODS = 3


class FundingAllocationModel(BaseModel):
    """Share of the property price assigned to one funding method."""

    method: FundingMethod
    percentage: Optional[Percentage] = Field(default=None, gt=0, le=100)
    target_amount: Optional[Money] = Field(default=None, gt=0)

    @field_validator("target_amount")
    @classmethod
    def _quantize_target(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        """Keep explicit targets at cent precision."""
        if value is None:
            return None
        return round_money(value)

    @model_validator(mode="after")
    def _require_share(self) -> "FundingAllocationModel":
        """An allocation must state a percentage or an explicit amount."""
        if self.percentage is None and self.target_amount is None:
            raise ValueError("allocation for {0} needs a percentage or target_amount".format(self.method.value))
        return self


class PaymentPlanModel(BaseDocumentModel):
    """Funding arrangement for one (tenant, member, property) triple."""

    plan_id: str = Field(..., min_length=3)
    tenant_id: str = Field(..., min_length=1)
    member_id: str = Field(..., min_length=1)
    property_id: str = Field(..., min_length=1)

    funding_option: FundingOption
    selected_methods: List[FundingMethod] = Field(..., min_length=1, max_length=MAX_MIX_METHODS)
    allocations: List[FundingAllocationModel] = Field(..., min_length=1)
    total_amount: Money = Field(..., gt=0)
    status: PlanStatus = Field(default=PlanStatus.DRAFT)

    notes: Optional[str] = Field(default=None)
    activated_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    superseded_by: Optional[str] = Field(default=None)

    @field_validator("total_amount")
    @classmethod
    def _quantize_total(cls, value: Decimal) -> Decimal:
        """Keep the property price at cent precision."""
        return round_money(value)

    @model_validator(mode="after")
    def _validate_allocation_table(self) -> "PaymentPlanModel":
        """Enforce method-set and allocation-sum invariants."""
        try:
            methods = list(self.selected_methods)
            if len(set(methods)) != len(methods):
                raise ValueError("selected_methods must be distinct")

            if self.funding_option == FundingOption.SINGLE and len(methods) != 1:
                raise ValueError("single funding requires exactly one method")
            if self.funding_option == FundingOption.MIX and not 2 <= len(methods) <= MAX_MIX_METHODS:
                raise ValueError("mix funding requires two or three methods")

            allocated = [item.method for item in self.allocations]
            if len(set(allocated)) != len(allocated):
                raise ValueError("each method must have exactly one allocation")
            if set(allocated) != set(methods):
                raise ValueError("allocations must cover exactly the selected methods")

            if self.funding_option == FundingOption.SINGLE:
                only = self.allocations[0]
                if only.percentage is not None and only.percentage != HUNDRED:
                    raise ValueError("single funding must allocate 100%")

            if all(item.target_amount is None for item in self.allocations):
                percentage_total = sum((item.percentage for item in self.allocations), ZERO)
                if abs(percentage_total - HUNDRED) > DEFAULT_TOLERANCE:
                    raise ValueError("allocation percentages must add up to 100")

            allocated_total = sum_money(self.target_amounts().values())
            if abs(allocated_total - self.total_amount) > DEFAULT_TOLERANCE:
                raise ValueError(
                    "allocations sum to {0} but total_amount is {1}".format(allocated_total, self.total_amount)
                )
            return self
        except Exception:
            logger.warning("Plan allocation validation failed plan_id=%s", self.plan_id)
            raise

    def target_amounts(self) -> Dict[FundingMethod, Decimal]:
        """Resolve every method's target in selection order.

        ``target_amount`` wins over ``percentage``. When percentages are used the
        last percentage-based method absorbs the rounding residue so the table
        sums to ``total_amount`` exactly.
        """
        by_method = {item.method: item for item in self.allocations}
        targets: Dict[FundingMethod, Decimal] = {}
        last_percentage_method: Optional[FundingMethod] = None
        for method in self.selected_methods:
            allocation = by_method.get(method)
            if allocation is None:
                continue
            if allocation.target_amount is not None:
                targets[method] = allocation.target_amount
            else:
                targets[method] = percentage_of(self.total_amount, allocation.percentage)
                last_percentage_method = method

        residue = self.total_amount - sum_money(targets.values())
        if last_percentage_method is not None and residue != ZERO and abs(residue) <= DEFAULT_TOLERANCE * len(targets):
            targets[last_percentage_method] = round_money(targets[last_percentage_method] + residue)
        return targets

    def target_for(self, method: FundingMethod) -> Optional[Decimal]:
        """Return the target for one method, or None when it is not in the plan."""
        return self.target_amounts().get(method)

    def includes(self, method: FundingMethod) -> bool:
        """Return whether the method is part of this plan."""
        return method in self.selected_methods
