"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Request  → request bodies (write)
  - *Out                → response bodies (read)
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from leaveflow.common.constants import (
    ApprovalDecision,
    ApprovalFlow,
    LeaveStatus,
    LeaveType,
    UserRole,
)


# ═════════════════════════════════════════════════════════════════════
# Leave Request: write
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestCreate(BaseModel):
    """Payload for submitting a leave request."""

    leave_type: LeaveType
    start_date: date = Field(..., description="Leave start date (inclusive)")
    end_date: date = Field(..., description="Leave end date (inclusive)")
    reason: Optional[str] = Field(None, max_length=1000)
    certificate_url: Optional[str] = Field(
        None, max_length=500, description="Opaque reference to an uploaded medical certificate",
    )

    @field_validator("certificate_url")
    @classmethod
    def blank_certificate_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def check_dates(self) -> "LeaveRequestCreate":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class LeaveResubmitRequest(BaseModel):
    """Optional edits applied when a returned or recalled request is resubmitted."""

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = Field(None, max_length=1000)
    certificate_url: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def check_dates(self) -> "LeaveResubmitRequest":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class ApprovalActionRequest(BaseModel):
    """Body for forward / approve / reject / return."""

    approval_id: Optional[uuid.UUID] = Field(
        None, description="Approval step the caller is acting on; stale steps are refused",
    )
    comment: Optional[str] = Field(None, max_length=1000)


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)


class ShortenRequest(BaseModel):
    new_end_date: date


class RecallRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)


class ConfirmReturnRequest(BaseModel):
    fitness_certificate_url: Optional[str] = Field(None, max_length=500)


# ═════════════════════════════════════════════════════════════════════
# Read models
# ═════════════════════════════════════════════════════════════════════


class AllocationOut(BaseModel):
    leave_type: LeaveType
    days: int


class LeaveRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    requester_id: uuid.UUID
    leave_type: LeaveType
    start_date: date
    end_date: date
    working_days: int
    status: LeaveStatus
    reason: Optional[str] = None
    policy_version: str
    certificate_url: Optional[str] = None
    fitness_certificate_url: Optional[str] = None
    cancellation_reason: Optional[str] = None
    is_partial_cancellation: bool = False
    cancellation_end_date: Optional[date] = None
    original_end_date: Optional[date] = None
    return_confirmed: bool = False
    overstay_flagged_at: Optional[datetime] = None
    allocations: Optional[list[AllocationOut]] = None
    consumed_allocations: Optional[list[AllocationOut]] = None


class ApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    leave_id: uuid.UUID
    step: int
    flow: ApprovalFlow
    chain_position: int
    approver_role: UserRole
    approver_id: Optional[uuid.UUID] = None
    decision: ApprovalDecision
    to_role: Optional[UserRole] = None
    comment: Optional[str] = None
    decided_by: Optional[uuid.UUID] = None
    decided_at: Optional[datetime] = None


class LeaveBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    leave_type: LeaveType
    year: int
    opening: int
    accrued: int
    used: int
    closing: int


class FindingOut(BaseModel):
    severity: str
    code: str
    message: str


class SubmissionOut(BaseModel):
    """Submission response: the created request plus non-blocking warnings."""

    leave: LeaveRequestOut
    warnings: list[FindingOut] = []
    allocations: list[AllocationOut] = []
    requires_conversion: bool = False
    breakdown: str = ""
    # Days falling through to EXTRAORDINARY (unpaid)
    unpaid_days: int = 0
