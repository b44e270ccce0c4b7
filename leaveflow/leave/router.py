"""Leave router — submit, chain actions, cancellation, recall, duty return, balances.

All endpoints require authentication. Chain authority (who may forward,
approve or reject a given step) is enforced by the service, not by role
gates here.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.dependencies import get_current_user, require_role
from leaveflow.auth.models import User
from leaveflow.common.constants import RECALL_ROLES, LeaveType, UserRole
from leaveflow.common.exceptions import AuthorizationError
from leaveflow.common.rate_limit import limiter
from leaveflow.database import get_db
from leaveflow.leave.schemas import (
    ApprovalActionRequest,
    ApprovalOut,
    CancelRequest,
    ConfirmReturnRequest,
    FindingOut,
    LeaveBalanceOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveResubmitRequest,
    RecallRequest,
    ShortenRequest,
    SubmissionOut,
)
from leaveflow.leave.service import LeaveService, SubmissionResult
from leaveflow.leave.working_days import local_today

router = APIRouter(prefix="", tags=["leave"])


def _submission_out(result: SubmissionResult) -> SubmissionOut:
    return SubmissionOut(
        leave=LeaveRequestOut.model_validate(result.leave),
        warnings=[
            FindingOut(severity=w.severity.value, code=w.code, message=w.message)
            for w in result.warnings
        ],
        allocations=result.plan.as_json(),
        requires_conversion=result.plan.requires_conversion,
        breakdown=result.plan.breakdown,
        unpaid_days=result.plan.days_for(LeaveType.extraordinary),
    )


# ── POST / ──────────────────────────────────────────────────────────

@router.post("/", response_model=SubmissionOut, status_code=201)
@limiter.limit("20/minute")
async def submit_leave(
    request: Request,
    body: LeaveRequestCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Submit a leave request. Blocking policy findings fail; warnings are returned."""
    result = await LeaveService.submit(db, user.id, body)
    return _submission_out(result)


# ── GET /balances/me ────────────────────────────────────────────────

@router.get("/balances/me", response_model=list[LeaveBalanceOut])
async def my_balances(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Ledger rows for the authenticated user (current year by default)."""
    return await LeaveService.get_balances(db, user.id, year or local_today().year)


# ── GET /{id} ───────────────────────────────────────────────────────

@router.get("/{leave_id}", response_model=LeaveRequestOut)
async def get_leave(
    leave_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    leave = await LeaveService.get_leave(db, leave_id)
    if leave.requester_id != user.id and user.role == UserRole.employee:
        raise AuthorizationError("forbidden", details={"leave_id": str(leave_id)})
    return leave


# ── GET /{id}/approvals ─────────────────────────────────────────────

@router.get("/{leave_id}/approvals", response_model=list[ApprovalOut])
async def list_approvals(
    leave_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Full step history of the request, oldest first."""
    leave = await LeaveService.get_leave(db, leave_id)
    if leave.requester_id != user.id and user.role == UserRole.employee:
        raise AuthorizationError("forbidden", details={"leave_id": str(leave_id)})
    return await LeaveService.list_approvals(db, leave_id)


# ── POST /{id}/forward ──────────────────────────────────────────────

@router.post("/{leave_id}/forward", response_model=LeaveRequestOut)
async def forward_leave(
    leave_id: uuid.UUID,
    body: ApprovalActionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Pass the current step to the next role in the chain."""
    return await LeaveService.forward(
        db, leave_id, user.id, approval_id=body.approval_id, comment=body.comment,
    )


# ── POST /{id}/approve ──────────────────────────────────────────────

@router.post("/{leave_id}/approve", response_model=LeaveRequestOut)
async def approve_leave(
    leave_id: uuid.UUID,
    body: ApprovalActionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Final approval of the current flow. Debits or restores the ledger as needed."""
    return await LeaveService.approve(
        db, leave_id, user.id, approval_id=body.approval_id, comment=body.comment,
    )


# ── POST /{id}/reject ───────────────────────────────────────────────

@router.post("/{leave_id}/reject", response_model=LeaveRequestOut)
async def reject_leave(
    leave_id: uuid.UUID,
    body: ApprovalActionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.reject(
        db, leave_id, user.id, approval_id=body.approval_id, comment=body.comment,
    )


# ── POST /{id}/return ───────────────────────────────────────────────

@router.post("/{leave_id}/return", response_model=LeaveRequestOut)
async def return_leave(
    leave_id: uuid.UUID,
    body: ApprovalActionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Send the request back to the requester for changes."""
    return await LeaveService.return_for_modification(
        db, leave_id, user.id, approval_id=body.approval_id, comment=body.comment,
    )


# ── POST /{id}/resubmit ─────────────────────────────────────────────

@router.post("/{leave_id}/resubmit", response_model=SubmissionOut)
async def resubmit_leave(
    leave_id: uuid.UUID,
    body: LeaveResubmitRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await LeaveService.resubmit(db, leave_id, user.id, body)
    return _submission_out(result)


# ── POST /{id}/cancel ───────────────────────────────────────────────

@router.post("/{leave_id}/cancel", response_model=LeaveRequestOut)
async def cancel_leave(
    leave_id: uuid.UUID,
    body: CancelRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel outright, or open a cancellation flow for an approved leave."""
    return await LeaveService.cancel(db, leave_id, user.id, reason=body.reason)


# ── POST /{id}/shorten ──────────────────────────────────────────────

@router.post("/{leave_id}/shorten", response_model=LeaveRequestOut)
async def shorten_leave(
    leave_id: uuid.UUID,
    body: ShortenRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.shorten(db, leave_id, user.id, body.new_end_date)


# ── POST /{id}/recall ───────────────────────────────────────────────

@router.post("/{leave_id}/recall", response_model=LeaveRequestOut)
async def recall_leave(
    leave_id: uuid.UUID,
    body: RecallRequest,
    user: User = Depends(require_role(*sorted(RECALL_ROLES, key=lambda r: r.value))),
    db: AsyncSession = Depends(get_db),
):
    """Recall an employee from approved leave. HR Admin, HR Head or CEO."""
    return await LeaveService.recall(db, leave_id, user.id, reason=body.reason)


# ── POST /{id}/confirm-return ───────────────────────────────────────

@router.post("/{leave_id}/confirm-return", response_model=LeaveRequestOut)
async def confirm_return(
    leave_id: uuid.UUID,
    body: ConfirmReturnRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.confirm_return(
        db, leave_id, user.id, fitness_certificate_url=body.fitness_certificate_url,
    )
