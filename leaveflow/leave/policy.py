"""Leave policy engine.

Stateless validators evaluated against one immutable ``LeavePolicy``
snapshot. Callers inject the snapshot explicitly; there is no module-level
mutable configuration. A finding is either a WARN (surfaced to the
requester, never blocks) or a REJECT (aborts before any write).
"""

from __future__ import annotations

import enum
from datetime import date, timedelta
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from leaveflow.common.constants import LeaveType
from leaveflow.common.exceptions import (
    ERROR_MESSAGES,
    ErrorKind,
    PolicyViolationError,
    ValidationError,
)


# ═════════════════════════════════════════════════════════════════════
# Policy snapshot
# ═════════════════════════════════════════════════════════════════════


class LeavePolicy(BaseModel):
    """Versioned, immutable thresholds for every leave rule."""

    model_config = ConfigDict(frozen=True)

    version: str = "v2.0"

    # Annual entitlements
    annual_entitlement: dict[LeaveType, int] = Field(
        default_factory=lambda: {
            LeaveType.earned: 24,
            LeaveType.casual: 10,
            LeaveType.medical: 14,
        }
    )
    el_accrual_per_month: int = 2

    # Largest single request a type may cover before the excess converts
    per_request_cap: dict[LeaveType, int] = Field(
        default_factory=lambda: {LeaveType.casual: 3, LeaveType.medical: 14}
    )

    # Minimum notice in working days (soft)
    notice_working_days: dict[LeaveType, int] = Field(
        default_factory=lambda: {LeaveType.earned: 5, LeaveType.casual: 5}
    )

    medical_certificate_after_days: int = 3
    fitness_certificate_after_days: int = 7

    carry_forward_cap: dict[LeaveType, int] = Field(
        default_factory=lambda: {LeaveType.earned: 60, LeaveType.special: 120}
    )

    # Calendar days a start date may lie in the past; absent type = never
    backdate_window_days: dict[LeaveType, int] = Field(
        default_factory=lambda: {LeaveType.earned: 30, LeaveType.medical: 30}
    )

    @property
    def el_cap(self) -> int:
        return self.carry_forward_cap[LeaveType.earned]

    @property
    def special_cap(self) -> int:
        return self.carry_forward_cap[LeaveType.special]


DEFAULT_POLICY = LeavePolicy()


# ═════════════════════════════════════════════════════════════════════
# Findings
# ═════════════════════════════════════════════════════════════════════


class Severity(str, enum.Enum):
    WARN = "WARN"
    REJECT = "REJECT"


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Severity
    kind: ErrorKind = ErrorKind.POLICY_VIOLATION
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def warn(cls, code: str, **details: Any) -> "Finding":
        return cls(
            severity=Severity.WARN,
            code=code,
            message=ERROR_MESSAGES.get(code, code),
            details=details,
        )

    @classmethod
    def reject(
        cls, code: str, kind: ErrorKind = ErrorKind.POLICY_VIOLATION, **details: Any,
    ) -> "Finding":
        return cls(
            severity=Severity.REJECT,
            kind=kind,
            code=code,
            message=ERROR_MESSAGES.get(code, code),
            details=details,
        )


class SubmissionFacts(BaseModel):
    """Everything the submission check needs, gathered by the caller."""

    leave_type: LeaveType
    start_date: date
    end_date: date
    working_days: int
    today: date
    certificate_url: Optional[str] = None
    notice_working_days: int = 0
    touches_non_working_day: bool = False
    overlaps_active_leave: bool = False
    adjacent_to_active_leave: bool = False


# ═════════════════════════════════════════════════════════════════════
# Individual rules
# ═════════════════════════════════════════════════════════════════════


def needs_certificate(policy: LeavePolicy, leave_type: LeaveType, days: int) -> bool:
    return leave_type == LeaveType.medical and days > policy.medical_certificate_after_days


def needs_fitness_certificate(policy: LeavePolicy, leave_type: LeaveType, days: int) -> bool:
    return leave_type == LeaveType.medical and days > policy.fitness_certificate_after_days


def within_backdate_limit(
    policy: LeavePolicy, leave_type: LeaveType, today: date, start: date,
) -> bool:
    if start >= today:
        return True
    window = policy.backdate_window_days.get(leave_type)
    if window is None:
        return False
    return start >= today - timedelta(days=window)


def notice_warning(
    policy: LeavePolicy, leave_type: LeaveType, notice_working_days: int,
) -> Optional[Finding]:
    required = policy.notice_working_days.get(leave_type)
    if required is None or notice_working_days >= required:
        return None
    code = "el_insufficient_notice" if leave_type == LeaveType.earned else "cl_insufficient_notice"
    return Finding.warn(code, required=required, given=notice_working_days)


def conversion_warning(
    policy: LeavePolicy, leave_type: LeaveType, days: int,
) -> Optional[Finding]:
    cap = policy.per_request_cap.get(leave_type)
    if cap is None or days <= cap:
        return None
    code = "cl_exceeds_consecutive_limit" if leave_type == LeaveType.casual else "ml_exceeds_cap"
    return Finding.warn(code, cap=cap, requested=days)


# ═════════════════════════════════════════════════════════════════════
# Aggregate evaluation
# ═════════════════════════════════════════════════════════════════════


def evaluate_submission(policy: LeavePolicy, facts: SubmissionFacts) -> list[Finding]:
    """Run every submission rule and return all findings, REJECTs first."""
    findings: list[Finding] = []

    if facts.end_date < facts.start_date:
        return [Finding.reject("invalid_dates", ErrorKind.VALIDATION)]
    if facts.working_days <= 0:
        return [Finding.reject("no_working_days", ErrorKind.VALIDATION)]

    if not within_backdate_limit(policy, facts.leave_type, facts.today, facts.start_date):
        window = policy.backdate_window_days.get(facts.leave_type)
        if window is None:
            findings.append(Finding.reject("backdate_disallowed_by_policy", leave_type=facts.leave_type.value))
        else:
            findings.append(Finding.reject("backdate_window_exceeded", window_days=window))

    if needs_certificate(policy, facts.leave_type, facts.working_days) and not facts.certificate_url:
        findings.append(
            Finding.reject(
                "medical_certificate_required",
                threshold=policy.medical_certificate_after_days,
                days=facts.working_days,
            )
        )

    if facts.overlaps_active_leave:
        findings.append(Finding.reject("overlapping_leave"))

    if facts.leave_type == LeaveType.casual:
        if facts.touches_non_working_day:
            findings.append(Finding.reject("cl_cannot_touch_holiday"))
        if facts.adjacent_to_active_leave:
            findings.append(Finding.reject("cl_cannot_combine"))

    if facts.start_date >= facts.today:
        warning = notice_warning(policy, facts.leave_type, facts.notice_working_days)
        if warning is not None:
            findings.append(warning)

    advisory = conversion_warning(policy, facts.leave_type, facts.working_days)
    if advisory is not None:
        findings.append(advisory)

    return sorted(findings, key=lambda f: f.severity != Severity.REJECT)


_KIND_TO_ERROR = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.POLICY_VIOLATION: PolicyViolationError,
}


def raise_for_findings(findings: list[Finding]) -> list[Finding]:
    """Raise the first REJECT as its error kind; otherwise return the WARNs."""
    for finding in findings:
        if finding.severity == Severity.REJECT:
            error_cls = _KIND_TO_ERROR.get(finding.kind, PolicyViolationError)
            raise error_cls(finding.code, finding.message, details=finding.details)
    return [f for f in findings if f.severity == Severity.WARN]
