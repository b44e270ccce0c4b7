"""Common module — shared utilities for Leaveflow."""

from leaveflow.common.audit import AuditTrail, audit_event_exists, create_audit_entry
from leaveflow.common.constants import (
    ApprovalDecision,
    ApprovalFlow,
    AuditAction,
    LeaveStatus,
    LeaveType,
    NotificationKind,
    RestoreReason,
    UserRole,
)
from leaveflow.common.exceptions import (
    AppException,
    AuthorizationError,
    ErrorKind,
    InsufficientBalanceError,
    InternalError,
    NotFoundException,
    PolicyViolationError,
    StateConflictError,
    ValidationError,
    register_exception_handlers,
)

__all__ = [
    # Audit
    "AuditTrail",
    "audit_event_exists",
    "create_audit_entry",
    # Constants / Enums
    "ApprovalDecision",
    "ApprovalFlow",
    "AuditAction",
    "LeaveStatus",
    "LeaveType",
    "NotificationKind",
    "RestoreReason",
    "UserRole",
    # Exceptions
    "AppException",
    "AuthorizationError",
    "ErrorKind",
    "InsufficientBalanceError",
    "InternalError",
    "NotFoundException",
    "PolicyViolationError",
    "StateConflictError",
    "ValidationError",
    "register_exception_handlers",
]
