"""Approval-chain resolver.

Maps (flow, leave type, requester role) to the ordered approver roles and
decides what the current approver may do at a given chain position.
"""

from __future__ import annotations

import enum
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict

from leaveflow.common.constants import ApprovalFlow, LeaveStatus, LeaveType, UserRole
from leaveflow.common.exceptions import AuthorizationError, ValidationError
from leaveflow.leave.transitions import Action, next_status

Chain = tuple[UserRole, ...]

_LONG: dict[UserRole, Chain] = {
    UserRole.employee: (UserRole.dept_head, UserRole.hr_admin, UserRole.hr_head, UserRole.ceo),
    UserRole.dept_head: (UserRole.hr_admin, UserRole.hr_head, UserRole.ceo),
    UserRole.hr_admin: (UserRole.hr_head, UserRole.ceo),
    UserRole.hr_head: (UserRole.ceo,),
    UserRole.ceo: (UserRole.hr_head,),
}

_SHORT: dict[UserRole, Chain] = {
    UserRole.employee: (UserRole.dept_head,),
    UserRole.dept_head: (UserRole.hr_admin, UserRole.hr_head),
    UserRole.hr_admin: (UserRole.hr_head,),
    UserRole.hr_head: (UserRole.ceo,),
    UserRole.ceo: (UserRole.hr_head,),
}

REQUEST_CHAINS: dict[LeaveType, dict[UserRole, Chain]] = {
    LeaveType.casual: _SHORT,
    LeaveType.earned: _LONG,
    LeaveType.medical: _LONG,
    LeaveType.special: _LONG,
    LeaveType.extraordinary: _LONG,
}

CANCELLATION_CHAINS: dict[UserRole, Chain] = {
    UserRole.employee: (UserRole.hr_admin, UserRole.hr_head),
    UserRole.dept_head: (UserRole.hr_admin, UserRole.hr_head),
    UserRole.hr_admin: (UserRole.hr_head, UserRole.ceo),
    UserRole.hr_head: (UserRole.hr_admin, UserRole.ceo),
    UserRole.ceo: (UserRole.hr_admin, UserRole.hr_head),
}

DUTY_RETURN_CHAIN: Chain = (UserRole.hr_admin, UserRole.hr_head, UserRole.ceo)

assert set(REQUEST_CHAINS) == set(LeaveType)
assert all(set(table) == set(UserRole) for table in REQUEST_CHAINS.values())
assert set(CANCELLATION_CHAINS) == set(UserRole)


def resolve_chain(
    leave_type: LeaveType,
    requester_role: UserRole,
    flow: ApprovalFlow = ApprovalFlow.request,
) -> Chain:
    """Ordered approver roles for a request, cancellation, or duty return."""
    if flow == ApprovalFlow.request:
        return REQUEST_CHAINS[leave_type][requester_role]
    if flow == ApprovalFlow.cancellation:
        return CANCELLATION_CHAINS[requester_role]
    return DUTY_RETURN_CHAIN


def is_final_approver(chain: Chain, position: int) -> bool:
    return position == len(chain) - 1


def next_role(chain: Chain, position: int) -> Optional[UserRole]:
    if position + 1 < len(chain):
        return chain[position + 1]
    return None


# ═════════════════════════════════════════════════════════════════════
# Decision rules
# ═════════════════════════════════════════════════════════════════════


class ChainAction(str, enum.Enum):
    FORWARD = "FORWARD"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RETURN = "RETURN"


class Actor(BaseModel):
    """The caller as the resolver sees it."""

    model_config = ConfigDict(frozen=True)

    role: UserRole
    user_id: uuid.UUID
    department: Optional[str] = None


class StepContext(BaseModel):
    """The pending approval step being acted on."""

    model_config = ConfigDict(frozen=True)

    chain: Chain
    position: int
    requester_id: uuid.UUID
    requester_department: Optional[str] = None


def check_action(actor: Actor, step: StepContext, action: ChainAction) -> None:
    """Raise unless ``actor`` may perform ``action`` on ``step``.

    The current step's role holder may RETURN anywhere, FORWARD at a
    non-final position, and APPROVE/REJECT only at the final one. HR_ADMIN
    may REJECT at any position but never APPROVE. Nobody acts on their
    own request.
    """
    if actor.user_id == step.requester_id:
        raise AuthorizationError("self_approval_disallowed")

    current_role = step.chain[step.position]
    final = is_final_approver(step.chain, step.position)

    if action == ChainAction.REJECT and actor.role == UserRole.hr_admin:
        return

    if actor.role != current_role:
        raise AuthorizationError(
            "not_current_approver",
            details={"expected_role": current_role.value, "actor_role": actor.role.value},
        )

    if current_role == UserRole.dept_head and actor.department != step.requester_department:
        raise AuthorizationError(
            "not_current_approver",
            details={"reason": "department_mismatch"},
        )

    if action == ChainAction.APPROVE:
        if actor.role == UserRole.hr_admin:
            raise AuthorizationError("hr_admin_cannot_approve")
        if not final:
            raise AuthorizationError(
                "not_current_approver",
                "Only the final approver can approve; forward the request instead.",
                details={"position": step.position, "chain": [r.value for r in step.chain]},
            )
    elif action == ChainAction.REJECT:
        if not final:
            raise AuthorizationError(
                "not_current_approver",
                "Only the final approver or HR Admin can reject.",
                details={"position": step.position},
            )
    elif action == ChainAction.FORWARD:
        if final:
            raise ValidationError(
                "invalid_forward_target",
                details={"position": step.position, "chain": [r.value for r in step.chain]},
            )
        if next_role(step.chain, step.position) is None:
            raise ValidationError("no_next_role")


STATUS_ACTIONS: dict[tuple[ApprovalFlow, ChainAction], Action] = {
    (ApprovalFlow.request, ChainAction.FORWARD): Action.FORWARD,
    (ApprovalFlow.request, ChainAction.APPROVE): Action.APPROVE,
    (ApprovalFlow.request, ChainAction.REJECT): Action.REJECT,
    (ApprovalFlow.request, ChainAction.RETURN): Action.RETURN,
    (ApprovalFlow.cancellation, ChainAction.FORWARD): Action.FORWARD_CANCELLATION,
    (ApprovalFlow.cancellation, ChainAction.APPROVE): Action.APPROVE_CANCELLATION,
    (ApprovalFlow.cancellation, ChainAction.REJECT): Action.REJECT_CANCELLATION,
    (ApprovalFlow.duty_return, ChainAction.FORWARD): Action.FORWARD_DUTY_RETURN,
    (ApprovalFlow.duty_return, ChainAction.APPROVE): Action.CONFIRM_RETURN,
    (ApprovalFlow.duty_return, ChainAction.REJECT): Action.REJECT_DUTY_RETURN,
}


def transition_action(flow: ApprovalFlow, action: ChainAction) -> Action:
    """State-machine action for a chain action taken inside ``flow``."""
    try:
        return STATUS_ACTIONS[(flow, action)]
    except KeyError:
        raise ValidationError(
            "invalid_status",
            f"{action.value} is not available in the {flow.value} flow.",
            details={"flow": flow.value, "action": action.value},
        ) from None


def status_after_action(
    current: LeaveStatus,
    flow: ApprovalFlow,
    chain: Chain,
    position: int,
    action: ChainAction,
) -> LeaveStatus:
    """Status the request lands in if ``action`` is taken at ``position``.

    Intermediate approvers cannot decide, so APPROVE there is refused
    before consulting the transition table.
    """
    if action == ChainAction.APPROVE and not is_final_approver(chain, position):
        raise ValidationError(
            "invalid_status",
            "Only the final approver can approve.",
            details={"position": position, "chain": [r.value for r in chain]},
        )
    return next_status(current, transition_action(flow, action))
