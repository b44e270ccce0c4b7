"""Leave-request transition table.

The single place that decides which (status, action) pairs are legal.
Service methods call ``next_status`` before writing anything.
"""

from __future__ import annotations

import enum

from leaveflow.common.constants import LeaveStatus
from leaveflow.common.exceptions import StateConflictError


class Action(str, enum.Enum):
    FORWARD = "FORWARD"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RETURN = "RETURN"
    RESUBMIT = "RESUBMIT"
    CANCEL = "CANCEL"
    REQUEST_CANCELLATION = "REQUEST_CANCELLATION"
    FORWARD_CANCELLATION = "FORWARD_CANCELLATION"
    APPROVE_CANCELLATION = "APPROVE_CANCELLATION"
    APPROVE_PARTIAL_CANCELLATION = "APPROVE_PARTIAL_CANCELLATION"
    REJECT_CANCELLATION = "REJECT_CANCELLATION"
    SHORTEN = "SHORTEN"
    RECALL = "RECALL"
    FLAG_OVERSTAY = "FLAG_OVERSTAY"
    REQUEST_DUTY_RETURN = "REQUEST_DUTY_RETURN"
    FORWARD_DUTY_RETURN = "FORWARD_DUTY_RETURN"
    REJECT_DUTY_RETURN = "REJECT_DUTY_RETURN"
    CONFIRM_RETURN = "CONFIRM_RETURN"


S = LeaveStatus
A = Action

_IN_REVIEW = {
    A.FORWARD: S.pending,
    A.APPROVE: S.approved,
    A.REJECT: S.rejected,
    A.RETURN: S.returned,
    A.CANCEL: S.cancelled,
}

_SENT_BACK = {
    A.RESUBMIT: S.submitted,
    A.CANCEL: S.cancelled,
}

TRANSITIONS: dict[LeaveStatus, dict[Action, LeaveStatus]] = {
    S.submitted: dict(_IN_REVIEW),
    S.pending: dict(_IN_REVIEW),
    S.returned: dict(_SENT_BACK),
    S.recalled: dict(_SENT_BACK),
    S.approved: {
        A.REQUEST_CANCELLATION: S.cancellation_requested,
        A.SHORTEN: S.approved,
        A.RECALL: S.recalled,
        A.FLAG_OVERSTAY: S.overstay_pending,
        A.REQUEST_DUTY_RETURN: S.approved,
        A.FORWARD_DUTY_RETURN: S.approved,
        A.REJECT_DUTY_RETURN: S.approved,
        A.CONFIRM_RETURN: S.approved,
    },
    S.cancellation_requested: {
        A.FORWARD_CANCELLATION: S.cancellation_requested,
        A.APPROVE_CANCELLATION: S.cancelled,
        A.APPROVE_PARTIAL_CANCELLATION: S.approved,
        # A refused cancellation leaves the approved leave standing
        A.REJECT_CANCELLATION: S.approved,
    },
    S.overstay_pending: {
        A.REQUEST_DUTY_RETURN: S.overstay_pending,
        A.FORWARD_DUTY_RETURN: S.overstay_pending,
        A.REJECT_DUTY_RETURN: S.overstay_pending,
        A.CONFIRM_RETURN: S.approved,
    },
    S.rejected: {},
    S.cancelled: {},
}

assert set(TRANSITIONS) == set(LeaveStatus), "every status needs a transition row"


def allowed_from(action: Action) -> list[LeaveStatus]:
    return [status for status, row in TRANSITIONS.items() if action in row]


def can_transition(current: LeaveStatus, action: Action) -> bool:
    return action in TRANSITIONS[current]


def next_status(current: LeaveStatus, action: Action) -> LeaveStatus:
    """Target status for ``action`` from ``current``.

    Raises:
        StateConflictError: ``already_cancelled`` for anything on a
            cancelled request, ``invalid_status`` otherwise.
    """
    row = TRANSITIONS[current]
    if action in row:
        return row[action]
    code = "already_cancelled" if current == LeaveStatus.cancelled and action == Action.CANCEL else "invalid_status"
    raise StateConflictError(
        code,
        details={
            "current_status": current.value,
            "action": action.value,
            "allowed_from": [s.value for s in allowed_from(action)],
        },
        field="status",
    )
