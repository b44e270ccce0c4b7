"""Approval-chain resolver tests — chains per role/type and per-step decision rules."""

from __future__ import annotations

import uuid

import pytest

from leaveflow.common.constants import ApprovalFlow, LeaveStatus, LeaveType, UserRole
from leaveflow.common.exceptions import AuthorizationError, StateConflictError, ValidationError
from leaveflow.leave.chain import (
    DUTY_RETURN_CHAIN,
    Actor,
    ChainAction,
    StepContext,
    check_action,
    is_final_approver,
    next_role,
    resolve_chain,
    status_after_action,
    transition_action,
)
from leaveflow.leave.transitions import Action

R = UserRole
REQUESTER = uuid.uuid4()
LONG = (R.dept_head, R.hr_admin, R.hr_head, R.ceo)


def _actor(role: UserRole, department: str = "ENG", user_id: uuid.UUID | None = None) -> Actor:
    return Actor(role=role, user_id=user_id or uuid.uuid4(), department=department)


def _step(chain=LONG, position: int = 0, department: str = "ENG") -> StepContext:
    return StepContext(
        chain=chain, position=position, requester_id=REQUESTER, requester_department=department,
    )


# ═════════════════════════════════════════════════════════════════════
# Resolution
# ═════════════════════════════════════════════════════════════════════


class TestResolveChain:

    def test_employee_casual_is_short(self):
        assert resolve_chain(LeaveType.casual, R.employee) == (R.dept_head,)

    def test_employee_earned_is_long(self):
        assert resolve_chain(LeaveType.earned, R.employee) == LONG

    def test_dept_head_skips_own_level(self):
        assert resolve_chain(LeaveType.casual, R.dept_head) == (R.hr_admin, R.hr_head)
        assert resolve_chain(LeaveType.medical, R.dept_head) == (R.hr_admin, R.hr_head, R.ceo)

    def test_ceo_routes_to_hr_head(self):
        assert resolve_chain(LeaveType.earned, R.ceo) == (R.hr_head,)

    def test_cancellation_chains(self):
        assert resolve_chain(LeaveType.earned, R.employee, ApprovalFlow.cancellation) == (
            R.hr_admin, R.hr_head,
        )
        assert resolve_chain(LeaveType.casual, R.hr_head, ApprovalFlow.cancellation) == (
            R.hr_admin, R.ceo,
        )
        assert resolve_chain(LeaveType.earned, R.hr_admin, ApprovalFlow.cancellation) == (
            R.hr_head, R.ceo,
        )

    @pytest.mark.parametrize("role", list(UserRole))
    def test_cancellation_chain_never_routes_to_requester_role(self, role):
        assert role not in resolve_chain(LeaveType.earned, role, ApprovalFlow.cancellation)

    def test_duty_return_chain(self):
        assert resolve_chain(LeaveType.medical, R.employee, ApprovalFlow.duty_return) == DUTY_RETURN_CHAIN

    @pytest.mark.parametrize("leave_type", list(LeaveType))
    @pytest.mark.parametrize("role", list(UserRole))
    def test_every_combination_resolves(self, leave_type, role):
        chain = resolve_chain(leave_type, role)
        assert len(chain) >= 1
        assert role not in chain or role == R.hr_admin

    def test_position_helpers(self):
        assert is_final_approver(LONG, 3) is True
        assert is_final_approver(LONG, 2) is False
        assert next_role(LONG, 0) == R.hr_admin
        assert next_role(LONG, 3) is None


# ═════════════════════════════════════════════════════════════════════
# Decision rules
# ═════════════════════════════════════════════════════════════════════


class TestCheckAction:

    def test_current_role_may_forward(self):
        check_action(_actor(R.dept_head), _step(), ChainAction.FORWARD)

    def test_self_approval_refused_first(self):
        me = _actor(R.dept_head, user_id=REQUESTER)
        with pytest.raises(AuthorizationError) as exc_info:
            check_action(me, _step(), ChainAction.FORWARD)
        assert exc_info.value.code == "self_approval_disallowed"

    def test_intermediate_cannot_approve(self):
        with pytest.raises(AuthorizationError) as exc_info:
            check_action(_actor(R.hr_head), _step(position=2), ChainAction.APPROVE)
        assert exc_info.value.code == "not_current_approver"

    def test_final_approver_approves(self):
        check_action(_actor(R.ceo), _step(position=3), ChainAction.APPROVE)

    def test_final_approver_cannot_forward(self):
        with pytest.raises(ValidationError) as exc_info:
            check_action(_actor(R.ceo), _step(position=3), ChainAction.FORWARD)
        assert exc_info.value.code == "invalid_forward_target"

    def test_wrong_role_refused(self):
        with pytest.raises(AuthorizationError) as exc_info:
            check_action(_actor(R.hr_head), _step(position=0), ChainAction.FORWARD)
        assert exc_info.value.details["expected_role"] == "dept_head"

    def test_dept_head_of_other_department_refused(self):
        with pytest.raises(AuthorizationError) as exc_info:
            check_action(_actor(R.dept_head, department="OPS"), _step(), ChainAction.FORWARD)
        assert exc_info.value.details == {"reason": "department_mismatch"}

    def test_hr_admin_rejects_at_any_position(self):
        check_action(_actor(R.hr_admin), _step(position=0), ChainAction.REJECT)
        check_action(_actor(R.hr_admin), _step(position=3), ChainAction.REJECT)

    def test_hr_admin_never_approves(self):
        chain = (R.hr_admin, R.hr_head)
        with pytest.raises(AuthorizationError) as exc_info:
            check_action(_actor(R.hr_admin), _step(chain=chain, position=0), ChainAction.APPROVE)
        assert exc_info.value.code == "hr_admin_cannot_approve"

    def test_intermediate_other_than_hr_admin_cannot_reject(self):
        with pytest.raises(AuthorizationError):
            check_action(_actor(R.dept_head), _step(position=0), ChainAction.REJECT)

    def test_return_allowed_anywhere(self):
        check_action(_actor(R.dept_head), _step(position=0), ChainAction.RETURN)
        check_action(_actor(R.ceo), _step(position=3), ChainAction.RETURN)


class TestStatusAfterAction:

    def test_forward_moves_request_to_pending(self):
        status = status_after_action(
            LeaveStatus.submitted, ApprovalFlow.request, LONG, 0, ChainAction.FORWARD,
        )
        assert status == LeaveStatus.pending

    def test_cancellation_forward_keeps_status(self):
        chain = (R.hr_admin, R.hr_head)
        status = status_after_action(
            LeaveStatus.cancellation_requested, ApprovalFlow.cancellation, chain, 0,
            ChainAction.FORWARD,
        )
        assert status == LeaveStatus.cancellation_requested

    def test_duty_return_approval_clears_overstay(self):
        status = status_after_action(
            LeaveStatus.overstay_pending, ApprovalFlow.duty_return, DUTY_RETURN_CHAIN, 2,
            ChainAction.APPROVE,
        )
        assert status == LeaveStatus.approved

    def test_approve_before_final_refused(self):
        with pytest.raises(ValidationError):
            status_after_action(
                LeaveStatus.pending, ApprovalFlow.request, LONG, 1, ChainAction.APPROVE,
            )

    def test_approve_on_wrong_status_is_conflict(self):
        with pytest.raises(StateConflictError):
            status_after_action(
                LeaveStatus.rejected, ApprovalFlow.request, LONG, 3, ChainAction.APPROVE,
            )

    def test_return_only_in_request_flow(self):
        assert transition_action(ApprovalFlow.request, ChainAction.RETURN) == Action.RETURN
        with pytest.raises(ValidationError):
            transition_action(ApprovalFlow.cancellation, ChainAction.RETURN)
