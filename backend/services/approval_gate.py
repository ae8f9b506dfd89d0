"""One-way approval gate for mortgage and cooperative repayment schedules."""

from datetime import datetime
import logging
from typing import Optional

from models.base import utc_now
from models.enums import FundingMethod
from models.exceptions import (
    AlreadyApproved,
    ApprovalNotApplicable,
    ModelNotFoundError,
    RecordNotFound,
    ScheduleNotApproved,
    VersionConflictError,
)
from models.repositories import PaymentStore
from models.schedules import RepaymentScheduleModel
from .ledger_engine import store_guard


logger = logging.getLogger(__name__)


class ApprovalGate:
    """Flips ``schedule_approved`` from false to true exactly once."""

    def __init__(self, store: PaymentStore) -> None:
        self._store = store

    def resolve(self, method: FundingMethod, external_ref: str) -> RepaymentScheduleModel:
        """Find a schedule by its mortgage or cooperative plan identifier."""
        try:
            with store_guard("find_schedule", method=method.value, external_ref=external_ref):
                return self._store.find_schedule(method, external_ref)
        except ModelNotFoundError:
            raise RecordNotFound(
                "No {0} schedule found".format(method.value),
                context={"method": method.value, "external_ref": external_ref},
            )

    def _load(self, schedule_id: str) -> RepaymentScheduleModel:
        try:
            with store_guard("get_schedule", schedule_id=schedule_id):
                return self._store.get_schedule(schedule_id)
        except ModelNotFoundError:
            raise RecordNotFound("Repayment schedule not found", context={"schedule_id": schedule_id})

    def approve(
        self,
        schedule_id: str,
        approver: str,
        approved_at: Optional[datetime] = None,
    ) -> RepaymentScheduleModel:
        """Approve a schedule.

        Raises:
            ApprovalNotApplicable: For methods whose schedules need no approval.
            AlreadyApproved: If the schedule was approved before, including by a concurrent caller.
        """
        schedule = self._load(schedule_id)
        if not schedule.method.requires_schedule_approval:
            raise ApprovalNotApplicable(
                "{0} schedules do not take a separate approval".format(schedule.method.value),
                context={"schedule_id": schedule_id, "method": schedule.method.value},
            )
        if schedule.schedule_approved:
            raise AlreadyApproved(
                "Schedule was already approved",
                context={"schedule_id": schedule_id, "approved_by": schedule.approved_by},
            )

        approved = schedule.model_copy(
            update={
                "schedule_approved": True,
                "schedule_approved_at": approved_at or utc_now(),
                "approved_by": approver,
            }
        )
        try:
            with store_guard("update_schedule", schedule_id=schedule_id):
                stored = self._store.update_schedule(approved, expected_version=schedule.version)
        except VersionConflictError:
            latest = self._load(schedule_id)
            if latest.schedule_approved:
                raise AlreadyApproved(
                    "Schedule was approved concurrently",
                    context={"schedule_id": schedule_id, "approved_by": latest.approved_by},
                )
            # Only an installment status moved; approval is still ours to apply.
            return self.approve(schedule_id, approver, approved_at)
        logger.info(
            "Schedule approved schedule_id=%s method=%s approver=%s",
            schedule_id,
            schedule.method.value,
            approver,
        )
        return stored

    def approve_by_reference(
        self,
        method: FundingMethod,
        external_ref: str,
        approver: str,
        approved_at: Optional[datetime] = None,
    ) -> RepaymentScheduleModel:
        """Approve the schedule attached to a mortgage id or cooperative plan id."""
        schedule = self.resolve(method, external_ref)
        return self.approve(schedule.schedule_id, approver, approved_at)

    @staticmethod
    def require_approved(schedule: RepaymentScheduleModel) -> None:
        """Raise ``ScheduleNotApproved`` unless payments may flow against the schedule."""
        if not schedule.schedule_approved:
            raise ScheduleNotApproved(
                "{0} schedule must be approved before payments are accepted".format(schedule.method.value),
                context={"schedule_id": schedule.schedule_id, "method": schedule.method.value},
            )
