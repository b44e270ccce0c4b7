"""Enums and constants for Leaveflow — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    dept_head = "dept_head"
    hr_admin = "hr_admin"
    hr_head = "hr_head"
    ceo = "ceo"


# Roles allowed to pull an approved employee back from leave
RECALL_ROLES: frozenset[UserRole] = frozenset(
    {UserRole.hr_admin, UserRole.hr_head, UserRole.ceo}
)


# ── Leave ───────────────────────────────────────────────────────────

class LeaveType(str, enum.Enum):
    earned = "earned"
    casual = "casual"
    medical = "medical"
    special = "special"
    extraordinary = "extraordinary"


class LeaveStatus(str, enum.Enum):
    submitted = "submitted"
    pending = "pending"
    returned = "returned"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"
    cancellation_requested = "cancellation_requested"
    recalled = "recalled"
    overstay_pending = "overstay_pending"


# Statuses that hold calendar days (used for overlap / combination checks)
ACTIVE_LEAVE_STATUSES: frozenset[LeaveStatus] = frozenset(
    {
        LeaveStatus.submitted,
        LeaveStatus.pending,
        LeaveStatus.approved,
        LeaveStatus.cancellation_requested,
        LeaveStatus.overstay_pending,
    }
)


class ApprovalDecision(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    forwarded = "forwarded"
    returned = "returned"


class ApprovalFlow(str, enum.Enum):
    request = "request"
    cancellation = "cancellation"
    duty_return = "duty_return"


class RestoreReason(str, enum.Enum):
    rejection = "rejection"
    cancellation = "cancellation"
    shorten = "shorten"
    recall = "recall"
    correction = "correction"


# ── Notifications ───────────────────────────────────────────────────

class NotificationKind(str, enum.Enum):
    approval_required = "approval_required"
    leave_forwarded = "leave_forwarded"
    leave_approved = "leave_approved"
    leave_rejected = "leave_rejected"
    leave_returned = "leave_returned"
    leave_recalled = "leave_recalled"
    leave_cancelled = "leave_cancelled"
    overstay_flagged = "overstay_flagged"


# ── Audit actions ───────────────────────────────────────────────────

class AuditAction(str, enum.Enum):
    leave_submitted = "LEAVE_SUBMITTED"
    leave_forward = "LEAVE_FORWARD"
    leave_approve = "LEAVE_APPROVE"
    leave_reject = "LEAVE_REJECT"
    leave_return = "LEAVE_RETURN"
    leave_resubmitted = "LEAVE_RESUBMITTED"
    leave_cancelled = "LEAVE_CANCELLED"
    cancellation_requested = "CANCELLATION_REQUESTED"
    leave_shortened = "LEAVE_SHORTENED"
    leave_recall = "LEAVE_RECALL"
    return_confirmed = "RETURN_CONFIRMED"
    duty_return_requested = "DUTY_RETURN_REQUESTED"
    balance_deducted = "BALANCE_DEDUCTED"
    balance_restored = "BALANCE_RESTORED"
    el_overflow_to_special = "EL_OVERFLOW_TO_SPECIAL"
    el_accrued = "EL_ACCRUED"
    el_carried_forward = "EL_CARRIED_FORWARD"
    cl_lapsed = "CL_LAPSED"
    entitlement_granted = "ENTITLEMENT_GRANTED"
    overstay_flagged = "OVERSTAY_FLAGGED"


# ── Misc constants ──────────────────────────────────────────────────

DATE_FORMAT = "%d-%b-%Y"          # 19-Oct-2026
MONTH_PERIOD_FORMAT = "%Y-%m"
