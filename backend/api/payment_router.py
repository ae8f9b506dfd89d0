"""Property payment router: payment-setup view, submissions, schedule approval and admin review."""

from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError, field_validator
from starlette.datastructures import UploadFile

from models.enums import FundingMethod, FundingOption, PlanStatus, RepaymentFrequency
from models.exceptions import PaymentError
from services.collaborators import EvidenceUpload, PayerInfo
from services.payment_setup_service import PaymentSetupService


logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "AllocationConflict": status.HTTP_409_CONFLICT,
    "AlreadyApproved": status.HTTP_409_CONFLICT,
    "AlreadyPaid": status.HTTP_409_CONFLICT,
    "InvalidStateTransition": status.HTTP_409_CONFLICT,
    "PersistenceUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "CollaboratorUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}
_ADMIN_ROLES = {"ADMIN"}
_APPROVER_ROLES = {"ADMIN", "APPROVER"}


class AllocationRequest(BaseModel):
    """One method's share of the property price."""

    method: FundingMethod
    percentage: Optional[Decimal] = Field(default=None)
    target_amount: Optional[Decimal] = Field(default=None)


class PaymentPlanCreateRequest(BaseModel):
    """Request payload for configuring a property's payment plan."""

    tenant_id: str = Field(..., min_length=1)
    member_id: str = Field(..., min_length=1)
    property_id: str = Field(..., min_length=1)
    funding_option: FundingOption
    allocations: List[AllocationRequest] = Field(..., min_length=1)
    total_amount: Decimal = Field(..., gt=0)
    status: PlanStatus = Field(default=PlanStatus.DRAFT)
    notes: Optional[str] = Field(default=None)


class PaymentPlanAllocationRequest(BaseModel):
    """Request payload for editing a draft plan or reissuing a live one."""

    funding_option: FundingOption
    allocations: List[AllocationRequest] = Field(..., min_length=1)
    total_amount: Optional[Decimal] = Field(default=None, gt=0)
    notes: Optional[str] = Field(default=None)


class ScheduleCreateRequest(BaseModel):
    """Request payload for attaching a repayment schedule."""

    method: FundingMethod
    interest_rate: Decimal = Field(..., ge=0)
    tenure_periods: int = Field(..., gt=0)
    frequency: RepaymentFrequency = Field(default=RepaymentFrequency.MONTHLY)
    start_date: date
    principal: Optional[Decimal] = Field(default=None, gt=0)
    external_ref: Optional[str] = Field(default=None, min_length=1)


class PaymentSubmissionRequest(BaseModel):
    """Payment submission body, sent as JSON or as multipart form fields."""

    method: str = Field(..., min_length=1)
    amount: str = Field(..., min_length=1)
    notes: Optional[str] = Field(default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    payer_name: Optional[str] = Field(default=None)
    payer_phone: Optional[str] = Field(default=None)
    payer_email: Optional[str] = Field(default=None)
    reference: Optional[str] = Field(default=None)
    submission_token: Optional[str] = Field(default=None)
    period_index: Optional[int] = Field(default=None, gt=0)

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_text(cls, value: Any) -> Any:
        """Keep the amount textual so no binary float reaches the ledger."""
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, value: Any) -> Any:
        """Form posts carry metadata as a JSON string."""
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value


class ReviewRequest(BaseModel):
    """Request payload for rejecting or reversing a ledger entry."""

    reason: str = Field(..., min_length=3)


def jsonable(value: Any) -> Any:
    """Convert models, dataclasses and Decimals into JSON-safe values.

    Money stays textual so clients never see float rounding.
    """
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if is_dataclass(value) and not isinstance(value, type):
        return jsonable(asdict(value))
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(key): jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return value


def _error_response(exc: PaymentError) -> JSONResponse:
    """Map a payment failure to its HTTP status and structured body."""
    status_code = _STATUS_BY_KIND.get(exc.error_kind, status.HTTP_422_UNPROCESSABLE_ENTITY)
    return JSONResponse(status_code=status_code, content=exc.to_payload())


def _validation_response(exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "message": "Invalid payment submission",
            "error_kind": "ValidationError",
            "context": {"errors": json.loads(exc.json(include_url=False))},
        },
    )


def _require_role(role: Optional[str], allowed: set[str]) -> str:
    """Validate caller role for admin-like actions."""
    normalized = (role or "").strip().upper()
    if normalized not in allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient role. Required one of: {0}".format(", ".join(sorted(allowed))),
        )
    return normalized


def _allocations(items: List[AllocationRequest]) -> List[Dict[str, Any]]:
    return [item.model_dump(exclude_none=True) for item in items]


async def _read_submission(request: Request) -> tuple[PaymentSubmissionRequest, Optional[EvidenceUpload]]:
    """Parse a JSON or multipart submission and pull out the evidence file."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        return PaymentSubmissionRequest.model_validate(await request.json()), None

    form = await request.form()
    fields: Dict[str, Any] = {}
    evidence: Optional[EvidenceUpload] = None
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if key == "evidence" and evidence is None:
                content = await value.read()
                if content:
                    evidence = EvidenceUpload(
                        filename=value.filename or "evidence",
                        content=content,
                        content_type=value.content_type,
                    )
            continue
        fields[key] = value if value != "" else None
    return PaymentSubmissionRequest.model_validate(fields), evidence


def build_payment_router(service: PaymentSetupService) -> APIRouter:
    """Build the property payment router."""
    router = APIRouter(tags=["property-payments"])

    @router.get("/properties/{property_id}/payment-setup", summary="Get payment setup for a property")
    def payment_setup(
        property_id: str,
        x_tenant_id: str = Header(...),
        x_member_id: str = Header(...),
    ) -> Dict[str, Any]:
        """Return plan, allocations, ledger, schedules and wallet balance for the member."""
        try:
            return jsonable(service.payment_setup_for_property(x_tenant_id, x_member_id, property_id))
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/properties/{property_id}/payments", summary="Submit a property payment")
    async def submit_payment(
        property_id: str,
        request: Request,
        x_tenant_id: str = Header(...),
        x_member_id: str = Header(...),
        idempotency_key: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        """Validate and record a payment, then return the refreshed payment setup."""
        try:
            payload, evidence = await _read_submission(request)
        except ValidationError as exc:
            return _validation_response(exc)
        except ValueError as exc:
            return JSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                content={"success": False, "message": str(exc), "error_kind": "ValidationError", "context": {}},
            )

        try:
            result = await run_in_threadpool(
                service.submit_payment,
                x_tenant_id,
                x_member_id,
                property_id,
                payload.method,
                payload.amount,
                payer=PayerInfo(name=payload.payer_name, phone=payload.payer_phone, email=payload.payer_email),
                evidence=evidence,
                reference=payload.reference,
                notes=payload.notes,
                metadata=payload.metadata,
                submission_token=payload.submission_token or idempotency_key,
                period_index=payload.period_index,
            )
        except PaymentError as exc:
            return _error_response(exc)

        message = "Payment already recorded" if result.replayed else "Payment recorded"
        try:
            view = await run_in_threadpool(service.payment_setup_for_property, x_tenant_id, x_member_id, property_id)
        except PaymentError as exc:
            logger.warning(
                "Payment setup refresh failed after commit entry_id=%s kind=%s",
                result.entry.entry_id,
                exc.error_kind,
            )
            view = None
            message = "{0}, payment setup is temporarily unavailable".format(message)
        return jsonable(
            {
                "success": True,
                "message": message,
                "replayed": result.replayed,
                "entry": result.entry,
                "schedule_entry": result.schedule_entry,
                "data": view,
            }
        )

    @router.post("/mortgages/{mortgage_id}/approve-schedule", summary="Approve a mortgage repayment schedule")
    def approve_mortgage_schedule(
        mortgage_id: str,
        x_admin_role: Optional[str] = Header(default=None),
        x_actor_id: Optional[str] = Header(default="approver"),
    ) -> Dict[str, Any]:
        """Flip the mortgage schedule to approved; a second call reports AlreadyApproved."""
        _require_role(x_admin_role, _APPROVER_ROLES)
        try:
            schedule = service.approve_schedule(FundingMethod.MORTGAGE, mortgage_id, x_actor_id or "approver")
            return jsonable({"success": True, "schedule": schedule})
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/cooperative-plans/{plan_id}/approve-schedule", summary="Approve a cooperative repayment schedule")
    def approve_cooperative_schedule(
        plan_id: str,
        x_admin_role: Optional[str] = Header(default=None),
        x_actor_id: Optional[str] = Header(default="approver"),
    ) -> Dict[str, Any]:
        """Flip the cooperative schedule to approved; a second call reports AlreadyApproved."""
        _require_role(x_admin_role, _APPROVER_ROLES)
        try:
            schedule = service.approve_schedule(FundingMethod.COOPERATIVE, plan_id, x_actor_id or "approver")
            return jsonable({"success": True, "schedule": schedule})
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/payment-plans", summary="Create a payment plan")
    def create_plan(
        payload: PaymentPlanCreateRequest,
        x_admin_role: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            plan = service.create_plan(
                tenant_id=payload.tenant_id,
                member_id=payload.member_id,
                property_id=payload.property_id,
                funding_option=payload.funding_option,
                allocations=_allocations(payload.allocations),
                total_amount=payload.total_amount,
                status=payload.status,
                notes=payload.notes,
            )
            return jsonable({"success": True, "payment_plan": plan})
        except PaymentError as exc:
            return _error_response(exc)

    @router.put("/admin/payment-plans/{plan_id}/allocations", summary="Edit a draft plan")
    def update_plan(
        plan_id: str,
        payload: PaymentPlanAllocationRequest,
        x_admin_role: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            current = service.get_plan(plan_id)
            plan = service.update_plan_allocations(
                plan_id,
                funding_option=payload.funding_option,
                allocations=_allocations(payload.allocations),
                total_amount=payload.total_amount if payload.total_amount is not None else current.total_amount,
                notes=payload.notes,
            )
            return jsonable({"success": True, "payment_plan": plan})
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/payment-plans/{plan_id}/activate", summary="Activate a draft plan")
    def activate_plan(plan_id: str, x_admin_role: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            return jsonable({"success": True, "payment_plan": service.activate_plan(plan_id)})
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/payment-plans/{plan_id}/reissue", summary="Supersede a live plan")
    def reissue_plan(
        plan_id: str,
        payload: PaymentPlanAllocationRequest,
        x_admin_role: Optional[str] = Header(default=None),
        x_actor_id: Optional[str] = Header(default="admin"),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            plan = service.reissue_plan(
                plan_id,
                funding_option=payload.funding_option,
                allocations=_allocations(payload.allocations),
                total_amount=payload.total_amount,
                notes=payload.notes,
                actor=x_actor_id or "admin",
            )
            return jsonable({"success": True, "payment_plan": plan})
        except PaymentError as exc:
            return _error_response(exc)

    @router.get("/admin/payment-plans/{plan_id}/summary", summary="Funding summary for a plan")
    def plan_summary(plan_id: str, x_admin_role: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            return jsonable(service.funding_summary(plan_id))
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/payment-plans/{plan_id}/schedules", summary="Attach a repayment schedule")
    def create_schedule(
        plan_id: str,
        payload: ScheduleCreateRequest,
        x_admin_role: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            schedule = service.create_schedule(
                plan_id,
                method=payload.method,
                interest_rate=payload.interest_rate,
                tenure_periods=payload.tenure_periods,
                start_date=payload.start_date,
                frequency=payload.frequency,
                principal=payload.principal,
                external_ref=payload.external_ref,
            )
            return jsonable({"success": True, "schedule": schedule})
        except PaymentError as exc:
            return _error_response(exc)

    @router.post(
        "/admin/schedules/{schedule_id}/periods/{period_index}/mark-paid",
        summary="Mark an installment paid",
    )
    def mark_installment_paid(
        schedule_id: str,
        period_index: int,
        x_admin_role: Optional[str] = Header(default=None),
        x_actor_id: Optional[str] = Header(default="admin"),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            result = service.mark_schedule_paid(schedule_id, period_index, actor=x_actor_id)
            return jsonable(dict(result, success=True))
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/schedules/sweep-overdue", summary="Flag past-due installments")
    def sweep_overdue(x_admin_role: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            return {"success": True, "marked_overdue": service.sweep_overdue()}
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/ledger-entries/{entry_id}/confirm", summary="Confirm a pending payment")
    def confirm_entry(
        entry_id: str,
        x_admin_role: Optional[str] = Header(default=None),
        x_actor_id: Optional[str] = Header(default="admin"),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            return jsonable({"success": True, "entry": service.confirm_entry(entry_id, x_actor_id or "admin")})
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/ledger-entries/{entry_id}/reject", summary="Reject a pending payment")
    def reject_entry(
        entry_id: str,
        payload: ReviewRequest,
        x_admin_role: Optional[str] = Header(default=None),
        x_actor_id: Optional[str] = Header(default="admin"),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            entry = service.reject_entry(entry_id, x_actor_id or "admin", payload.reason)
            return jsonable({"success": True, "entry": entry})
        except PaymentError as exc:
            return _error_response(exc)

    @router.post("/admin/ledger-entries/{entry_id}/reverse", summary="Reverse a completed payment")
    def reverse_entry(
        entry_id: str,
        payload: ReviewRequest,
        x_admin_role: Optional[str] = Header(default=None),
        x_actor_id: Optional[str] = Header(default="admin"),
    ) -> Dict[str, Any]:
        _require_role(x_admin_role, _ADMIN_ROLES)
        try:
            entry = service.reverse_entry(entry_id, x_actor_id or "admin", payload.reason)
            return jsonable({"success": True, "entry": entry})
        except PaymentError as exc:
            return _error_response(exc)

    return router
