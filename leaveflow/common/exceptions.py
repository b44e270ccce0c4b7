"""Custom exceptions and RFC 7807 Problem Detail error handlers.

Every engine failure carries a ``kind`` from the error taxonomy, a stable
snake_case ``code`` and a ``details`` dict (e.g. current vs. expected
status) so both the UI and automated retries can act on it.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("leaveflow.errors")

BASE_ERROR_URI = "https://leaveflow.dev/errors"


class ErrorKind(str, enum.Enum):
    VALIDATION = "VALIDATION"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    AUTHORIZATION = "AUTHORIZATION"
    STATE_CONFLICT = "STATE_CONFLICT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INTERNAL = "INTERNAL"


ERROR_MESSAGES: dict[str, str] = {
    # Input
    "invalid_dates": "End date must be on or after the start date.",
    "invalid_days": "Day count must be greater than zero.",
    "no_working_days": "The selected range contains no working days.",
    "not_found": "The requested record does not exist.",
    # Policy
    "backdate_disallowed_by_policy": "This leave type cannot be applied for past dates.",
    "backdate_window_exceeded": "The start date is further in the past than policy allows.",
    "medical_certificate_required": "A medical certificate is required for medical leave of this length.",
    "fitness_certificate_required": "A fitness certificate is required before returning to duty.",
    "cl_cannot_touch_holiday": "Casual leave cannot include or sit next to a weekend or holiday.",
    "cl_cannot_combine": "Casual leave cannot be combined with another leave.",
    "overlapping_leave": "The requested dates overlap an existing leave.",
    "resubmit_overlaps_taken_days": "A recalled leave can only be resubmitted for dates after the days already taken.",
    "el_insufficient_notice": "Earned leave should be applied with more notice.",
    "cl_insufficient_notice": "Casual leave should be applied with more notice.",
    "cl_exceeds_consecutive_limit": "Casual leave beyond the consecutive-day cap will be taken from earned leave.",
    "ml_exceeds_cap": "Medical leave beyond the per-request cap will be converted to other leave types.",
    # Authorization
    "forbidden": "You do not have permission to perform this action.",
    "self_approval_disallowed": "You cannot act on your own leave request.",
    "not_current_approver": "You are not the current approver for this request.",
    "hr_admin_cannot_approve": "HR Admin can forward or reject but cannot approve.",
    "not_requester": "Only the requester can perform this action.",
    "recall_role_required": "Only HR Admin, HR Head or CEO can recall a leave.",
    # State
    "invalid_status": "The request is not in a status that allows this action.",
    "stale_approval": "This approval step has already been decided.",
    "concurrent_update": "The request was modified concurrently. Re-fetch and retry.",
    "no_pending_approval": "The request has no approval step awaiting a decision.",
    "no_next_role": "There is no further approver in the chain.",
    "invalid_forward_target": "The final approver must approve or reject rather than forward.",
    "already_cancelled": "The request is already cancelled.",
    "cannot_cancel_now": "The leave can no longer be cancelled.",
    "cannot_recall_past_leave": "A leave that has already ended cannot be recalled.",
    "shorten_not_started": "Only a leave that has started can be shortened.",
    "shorten_already_ended": "A leave that has already ended cannot be shortened.",
    "shorten_invalid_date": "The new end date must fall between today and the current end date.",
    "shorten_no_reduction": "The new end date does not remove any working days.",
    # Balance
    "insufficient_balance": "Insufficient leave balance for this request.",
    # Internal
    "internal_error": "An unexpected error occurred.",
}


# ── Exception hierarchy ─────────────────────────────────────────────

class AppException(Exception):
    """Base for all application exceptions → RFC 7807 JSON."""

    def __init__(
        self,
        status_code: int,
        error_type: str,
        title: str,
        detail: str,
        errors: Optional[dict[str, Any]] = None,
        *,
        kind: ErrorKind = ErrorKind.INTERNAL,
        code: str = "internal_error",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.error_type = error_type
        self.title = title
        self.detail = detail
        self.errors = errors
        self.kind = kind
        self.code = code
        self.details = details or {}
        super().__init__(detail)

    @property
    def message(self) -> str:
        return self.detail


class _EngineError(AppException):
    """Shared constructor for the taxonomy classes below."""

    status_code_default = 500
    kind_default = ErrorKind.INTERNAL
    error_type_default = "internal-error"
    title_default = "Internal Error"

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        *,
        details: Optional[dict[str, Any]] = None,
        field: Optional[str] = None,
    ) -> None:
        text = message or ERROR_MESSAGES.get(code, code)
        super().__init__(
            status_code=self.status_code_default,
            error_type=self.error_type_default,
            title=self.title_default,
            detail=text,
            errors={field or code: [text]},
            kind=self.kind_default,
            code=code,
            details=details,
        )


class ValidationError(_EngineError):
    """422 — bad input shape or range."""

    status_code_default = 422
    kind_default = ErrorKind.VALIDATION
    error_type_default = "validation-error"
    title_default = "Validation Error"


class PolicyViolationError(_EngineError):
    """422 — a hard leave-policy rule is broken."""

    status_code_default = 422
    kind_default = ErrorKind.POLICY_VIOLATION
    error_type_default = "policy-violation"
    title_default = "Policy Violation"


class AuthorizationError(_EngineError):
    """403 — wrong role, wrong owner, or self-approval."""

    status_code_default = 403
    kind_default = ErrorKind.AUTHORIZATION
    error_type_default = "forbidden"
    title_default = "Forbidden"


class StateConflictError(_EngineError):
    """409 — stale precondition; re-fetch and retry."""

    status_code_default = 409
    kind_default = ErrorKind.STATE_CONFLICT
    error_type_default = "state-conflict"
    title_default = "State Conflict"


class InsufficientBalanceError(_EngineError):
    """422 — ledger cannot cover the request even after conversion."""

    status_code_default = 422
    kind_default = ErrorKind.INSUFFICIENT_BALANCE
    error_type_default = "insufficient-balance"
    title_default = "Insufficient Balance"

    def __init__(
        self,
        code: str = "insufficient_balance",
        message: Optional[str] = None,
        *,
        details: Optional[dict[str, Any]] = None,
        field: Optional[str] = "balance",
    ) -> None:
        super().__init__(code, message, details=details, field=field)


class InternalError(_EngineError):
    """500 — unexpected persistence or collaborator failure."""


class NotFoundException(AppException):
    """404 — entity not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(
            status_code=404,
            error_type="not-found",
            title=f"{entity_type} Not Found",
            detail=f"{entity_type} with id '{entity_id}' does not exist.",
            kind=ErrorKind.VALIDATION,
            code="not_found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )


# ── RFC 7807 builder ────────────────────────────────────────────────

def _build_problem_detail(exc: AppException, request: Request) -> dict[str, Any]:
    body: dict[str, Any] = {
        "type": f"{BASE_ERROR_URI}/{exc.error_type}",
        "title": exc.title,
        "status": exc.status_code,
        "detail": exc.detail,
        "instance": str(request.url.path),
        "kind": exc.kind.value,
        "code": exc.code,
    }
    if exc.details:
        body["details"] = exc.details
    if exc.errors:
        body["errors"] = exc.errors
    return body


# ── FastAPI handlers ────────────────────────────────────────────────

async def _handle_app_exception(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    if exc.kind == ErrorKind.STATE_CONFLICT:
        logger.warning("State conflict on %s: %s %s", request.url.path, exc.code, exc.details)
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_problem_detail(exc, request),
        media_type="application/problem+json",
    )


async def _handle_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    field_errors: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = err.get("loc", ())
        name = (
            ".".join(str(p) for p in loc[1:])
            if len(loc) > 1
            else str(loc[0]) if loc else "unknown"
        )
        field_errors.setdefault(name, []).append(err.get("msg", "Invalid value"))

    return JSONResponse(
        status_code=422,
        content={
            "type": f"{BASE_ERROR_URI}/validation-error",
            "title": "Validation Error",
            "status": 422,
            "detail": "Request validation failed.",
            "instance": str(request.url.path),
            "kind": ErrorKind.VALIDATION.value,
            "code": "invalid_input",
            "errors": field_errors,
        },
        media_type="application/problem+json",
    )


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "type": f"{BASE_ERROR_URI}/internal-error",
            "title": "Internal Error",
            "status": 500,
            "detail": ERROR_MESSAGES["internal_error"],
            "instance": str(request.url.path),
            "kind": ErrorKind.INTERNAL.value,
            "code": "internal_error",
        },
        media_type="application/problem+json",
    )


# ── Registration helper (called from main.py) ──────────────────────

def register_exception_handlers(app: FastAPI) -> None:
    """Attach all custom exception handlers to the FastAPI app."""
    app.add_exception_handler(AppException, _handle_app_exception)          # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _handle_unexpected)
