"""Leave service — the request state machine.

Every public method is one transition: it re-reads the request inside the
caller's transaction, validates (policy, chain authority, transition
table), then writes Approval / LeaveRequest / LeaveBalance rows and an
audit entry. Any exception leaves the transaction for ``get_db`` to roll
back, so nothing is ever half-applied.

Status changes are compare-and-set UPDATEs (``WHERE status = :expected``)
and approval decisions are ``WHERE decision = 'pending'``; a writer that
loses a race gets ``StateConflictError`` instead of double-applying.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.models import User
from leaveflow.common.audit import create_audit_entry
from leaveflow.common.constants import (
    ACTIVE_LEAVE_STATUSES,
    RECALL_ROLES,
    ApprovalDecision,
    ApprovalFlow,
    AuditAction,
    LeaveStatus,
    LeaveType,
    NotificationKind,
    RestoreReason,
)
from leaveflow.common.exceptions import (
    AuthorizationError,
    NotFoundException,
    PolicyViolationError,
    StateConflictError,
    ValidationError,
)
from leaveflow.leave.chain import (
    Actor,
    Chain,
    ChainAction,
    StepContext,
    check_action,
    next_role,
    resolve_chain,
    status_after_action,
)
from leaveflow.leave.conversion import ConversionPlan, allocations_from_json, plan_conversion
from leaveflow.leave.ledger import BalanceLedger
from leaveflow.leave.models import Approval, LeaveBalance, LeaveRequest
from leaveflow.leave.policy import (
    DEFAULT_POLICY,
    Finding,
    LeavePolicy,
    SubmissionFacts,
    evaluate_submission,
    needs_fitness_certificate,
    raise_for_findings,
)
from leaveflow.leave.schemas import LeaveRequestCreate, LeaveResubmitRequest
from leaveflow.leave.transitions import Action, can_transition, next_status
from leaveflow.leave.working_days import (
    count_working_days,
    load_holidays,
    local_today,
    touches_non_working_day,
    working_days_between,
)
from leaveflow.notifications.service import (
    NotificationService,
    notify_approvers,
    notify_requester,
)

logger = logging.getLogger("leaveflow.leave")


class SubmissionResult(BaseModel):
    """A created (or resubmitted) request with its warnings and debit plan."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    leave: LeaveRequest
    warnings: list[Finding] = []
    plan: ConversionPlan


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LeaveService:
    """Async leave-request transitions; every method takes the session first."""

    # ─────────────────────────────────────────────────────────────────
    # Loading
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _load_leave(db: AsyncSession, leave_id: uuid.UUID) -> LeaveRequest:
        result = await db.execute(
            select(LeaveRequest)
            .where(LeaveRequest.id == leave_id)
            .execution_options(populate_existing=True)
        )
        leave = result.scalars().first()
        if leave is None:
            raise NotFoundException("LeaveRequest", leave_id)
        return leave

    @staticmethod
    async def _load_user(db: AsyncSession, user_id: uuid.UUID) -> User:
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalars().first()
        if user is None or not user.is_active:
            raise NotFoundException("User", user_id)
        return user

    @staticmethod
    async def _current_approval(
        db: AsyncSession,
        leave: LeaveRequest,
        approval_id: Optional[uuid.UUID],
    ) -> Approval:
        """The PENDING step, or the caller's pinned step if still pending."""
        if approval_id is not None:
            result = await db.execute(
                select(Approval)
                .where(Approval.id == approval_id, Approval.leave_id == leave.id)
                .execution_options(populate_existing=True)
            )
            approval = result.scalars().first()
            if approval is None:
                raise NotFoundException("Approval", approval_id)
            if approval.decision != ApprovalDecision.pending:
                raise StateConflictError(
                    "stale_approval",
                    details={
                        "approval_id": str(approval.id),
                        "step": approval.step,
                        "decision": approval.decision.value,
                        "current_status": leave.status.value,
                    },
                )
            return approval

        result = await db.execute(
            select(Approval)
            .where(
                Approval.leave_id == leave.id,
                Approval.decision == ApprovalDecision.pending,
            )
            .execution_options(populate_existing=True)
        )
        approval = result.scalars().first()
        if approval is None:
            raise StateConflictError(
                "no_pending_approval",
                details={"current_status": leave.status.value},
            )
        return approval

    @staticmethod
    async def _pending_approval(db: AsyncSession, leave_id: uuid.UUID) -> Optional[Approval]:
        result = await db.execute(
            select(Approval).where(
                Approval.leave_id == leave_id,
                Approval.decision == ApprovalDecision.pending,
            )
        )
        return result.scalars().first()

    # ─────────────────────────────────────────────────────────────────
    # Compare-and-set writes
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _claim(
        db: AsyncSession,
        leave: LeaveRequest,
        new_status: LeaveStatus,
        **values: Any,
    ) -> None:
        """Move ``leave`` to ``new_status`` only if nobody moved it first."""
        expected = leave.status
        result = await db.execute(
            update(LeaveRequest)
            .where(LeaveRequest.id == leave.id, LeaveRequest.status == expected)
            .values(status=new_status, updated_at=_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Status race on leave %s: expected %s, wanted %s",
                leave.id, expected.value, new_status.value,
            )
            raise StateConflictError(
                "concurrent_update",
                details={
                    "expected_status": expected.value,
                    "target_status": new_status.value,
                },
            )
        await db.refresh(leave)

    @staticmethod
    async def _decide(
        db: AsyncSession,
        approval: Approval,
        decision: ApprovalDecision,
        actor: User,
        *,
        comment: Optional[str] = None,
        to_role=None,
    ) -> None:
        result = await db.execute(
            update(Approval)
            .where(
                Approval.id == approval.id,
                Approval.decision == ApprovalDecision.pending,
            )
            .values(
                decision=decision,
                decided_by=actor.id,
                decided_at=_now(),
                comment=comment,
                to_role=to_role,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(
                "stale_approval",
                details={"approval_id": str(approval.id), "step": approval.step},
            )
        await db.refresh(approval)

    @staticmethod
    async def _open_step(
        db: AsyncSession,
        leave: LeaveRequest,
        flow: ApprovalFlow,
        chain: Chain,
        position: int,
        requester: User,
    ) -> Approval:
        """Append the next PENDING approval row for ``chain[position]``."""
        role = chain[position]
        max_step = (
            await db.execute(
                select(func.max(Approval.step)).where(Approval.leave_id == leave.id)
            )
        ).scalar_one_or_none() or 0

        approver_id = None
        for candidate in await NotificationService.recipients_for_role(
            db, role, department=requester.department,
        ):
            if candidate.id != requester.id:
                approver_id = candidate.id
                break

        approval = Approval(
            id=uuid.uuid4(),
            leave_id=leave.id,
            step=max_step + 1,
            flow=flow,
            chain_position=position,
            approver_role=role,
            approver_id=approver_id,
            decision=ApprovalDecision.pending,
        )
        db.add(approval)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise StateConflictError(
                "concurrent_update",
                details={"leave_id": str(leave.id), "step": max_step + 1},
            ) from exc
        return approval

    # ─────────────────────────────────────────────────────────────────
    # Shared helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _actor(user: User) -> Actor:
        return Actor(role=user.role, user_id=user.id, department=user.department)

    @staticmethod
    def _step(approval: Approval, chain: Chain, requester: User) -> StepContext:
        return StepContext(
            chain=chain,
            position=approval.chain_position,
            requester_id=requester.id,
            requester_department=requester.department,
        )

    @staticmethod
    def _require_requester(leave: LeaveRequest, user_id: uuid.UUID) -> None:
        if leave.requester_id != user_id:
            raise AuthorizationError("not_requester", details={"leave_id": str(leave.id)})

    @staticmethod
    async def _count(db: AsyncSession, start: date, end: date) -> int:
        holidays = await load_holidays(db, start, end)
        return count_working_days(start, end, holidays)

    @staticmethod
    async def _validate_and_plan(
        db: AsyncSession,
        requester: User,
        *,
        leave_type: LeaveType,
        start_date: date,
        end_date: date,
        certificate_url: Optional[str],
        today: date,
        policy: LeavePolicy,
        exclude_leave_id: Optional[uuid.UUID] = None,
    ) -> tuple[int, list[Finding], ConversionPlan]:
        """Policy + feasibility for a prospective request. No writes."""
        if end_date < start_date:
            raise ValidationError(
                "invalid_dates",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
                field="end_date",
            )

        window_start = min(today, start_date) - timedelta(days=1)
        window_end = max(today, end_date) + timedelta(days=1)
        holidays = await load_holidays(db, window_start, window_end)
        working_days = count_working_days(start_date, end_date, holidays)

        # Neighbouring active leaves: overlap, or touching by one calendar day
        query = select(LeaveRequest).where(
            LeaveRequest.requester_id == requester.id,
            LeaveRequest.status.in_(ACTIVE_LEAVE_STATUSES),
            LeaveRequest.start_date <= end_date + timedelta(days=1),
            LeaveRequest.end_date >= start_date - timedelta(days=1),
        )
        if exclude_leave_id is not None:
            query = query.where(LeaveRequest.id != exclude_leave_id)
        neighbours = (await db.execute(query)).scalars().all()
        overlaps = any(
            n.start_date <= end_date and n.end_date >= start_date for n in neighbours
        )

        facts = SubmissionFacts(
            leave_type=leave_type,
            start_date=start_date,
            end_date=end_date,
            working_days=working_days,
            today=today,
            certificate_url=certificate_url,
            notice_working_days=working_days_between(today, start_date, holidays),
            touches_non_working_day=touches_non_working_day(start_date, end_date, holidays),
            overlaps_active_leave=overlaps,
            adjacent_to_active_leave=bool(neighbours) and not overlaps,
        )
        warnings = raise_for_findings(evaluate_submission(policy, facts))

        balances = await BalanceLedger.available_by_type(db, requester.id, start_date.year)
        plan = plan_conversion(policy, leave_type, working_days, balances)
        return working_days, warnings, plan

    @staticmethod
    async def _release(
        db: AsyncSession,
        leave: LeaveRequest,
        days: int,
        *,
        reason: RestoreReason,
        actor_id: uuid.UUID,
        policy: LeavePolicy,
    ) -> int:
        """Give ``days`` of the executed plan back to the ledger."""
        allocations = allocations_from_json(leave.allocations)
        if not allocations or days <= 0:
            return 0
        held = sum(a.days for a in allocations)
        released = min(days, held)
        remaining = await BalanceLedger.restore_plan(
            db,
            leave.requester_id,
            leave.start_date.year,
            allocations,
            released,
            reason=reason,
            actor_id=actor_id,
            leave_id=leave.id,
            policy=policy,
        )
        leave.allocations = [
            {"leave_type": a.leave_type.value, "days": a.days} for a in remaining
        ] or None
        await db.flush()
        return released

    # ─────────────────────────────────────────────────────────────────
    # Submit
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit(
        db: AsyncSession,
        requester_id: uuid.UUID,
        data: LeaveRequestCreate,
        *,
        today: Optional[date] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> SubmissionResult:
        """Validate, create the request in SUBMITTED, and open step 1."""
        today = today or local_today()
        requester = await LeaveService._load_user(db, requester_id)

        working_days, warnings, plan = await LeaveService._validate_and_plan(
            db,
            requester,
            leave_type=data.leave_type,
            start_date=data.start_date,
            end_date=data.end_date,
            certificate_url=data.certificate_url,
            today=today,
            policy=policy,
        )
        chain = resolve_chain(data.leave_type, requester.role)

        leave = LeaveRequest(
            id=uuid.uuid4(),
            requester_id=requester.id,
            leave_type=data.leave_type,
            start_date=data.start_date,
            end_date=data.end_date,
            working_days=working_days,
            status=LeaveStatus.submitted,
            reason=data.reason,
            certificate_url=data.certificate_url,
            policy_version=policy.version,
        )
        db.add(leave)
        await db.flush()

        approval = await LeaveService._open_step(
            db, leave, ApprovalFlow.request, chain, 0, requester,
        )

        await create_audit_entry(
            db,
            action=AuditAction.leave_submitted,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=requester.id,
            old_values=None,
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "leave_type": leave.leave_type,
                "start_date": leave.start_date,
                "end_date": leave.end_date,
                "working_days": working_days,
                "chain": [r.value for r in chain],
                "first_step": approval.step,
                "warnings": [w.code for w in warnings],
                "plan": plan.as_json(),
                "policy_version": policy.version,
            },
        )
        await notify_approvers(db, leave, chain[0], requester=requester)
        await db.refresh(leave)

        logger.info(
            "Leave %s submitted by %s: %s x%s, chain=%s",
            leave.id, requester.email, leave.leave_type.value, working_days,
            "→".join(r.value for r in chain),
        )
        return SubmissionResult(leave=leave, warnings=warnings, plan=plan)

    # ─────────────────────────────────────────────────────────────────
    # Forward
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def forward(
        db: AsyncSession,
        leave_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        approval_id: Optional[uuid.UUID] = None,
        comment: Optional[str] = None,
    ) -> LeaveRequest:
        """Pass the current step to the next role in the chain."""
        leave = await LeaveService._load_leave(db, leave_id)
        actor = await LeaveService._load_user(db, actor_id)
        requester = await LeaveService._load_user(db, leave.requester_id)
        approval = await LeaveService._current_approval(db, leave, approval_id)

        chain = resolve_chain(leave.leave_type, requester.role, approval.flow)
        check_action(
            LeaveService._actor(actor),
            LeaveService._step(approval, chain, requester),
            ChainAction.FORWARD,
        )
        new_status = status_after_action(
            leave.status, approval.flow, chain, approval.chain_position, ChainAction.FORWARD,
        )
        target_role = next_role(chain, approval.chain_position)
        old_status = leave.status

        await LeaveService._decide(
            db, approval, ApprovalDecision.forwarded, actor,
            comment=comment, to_role=target_role,
        )
        await LeaveService._claim(db, leave, new_status)
        next_step = await LeaveService._open_step(
            db, leave, approval.flow, chain, approval.chain_position + 1, requester,
        )

        await create_audit_entry(
            db,
            action=AuditAction.leave_forward,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=actor.id,
            old_values={"status": old_status, "step": approval.step},
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "flow": approval.flow,
                "from_role": approval.approver_role,
                "to_role": target_role,
                "step": next_step.step,
                "comment": comment,
            },
        )
        await notify_approvers(db, leave, target_role, requester=requester, forwarded=True)
        logger.info(
            "Leave %s forwarded %s→%s by %s",
            leave.id, approval.approver_role.value, target_role.value, actor.email,
        )
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Approve
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def approve(
        db: AsyncSession,
        leave_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        approval_id: Optional[uuid.UUID] = None,
        comment: Optional[str] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveRequest:
        """Final decision on the current flow.

        REQUEST: debit the ledger per a freshly computed conversion plan.
        CANCELLATION: restore the cancelled days (all, or the unused tail).
        DUTY_RETURN: mark the employee as back on duty.
        """
        leave = await LeaveService._load_leave(db, leave_id)
        actor = await LeaveService._load_user(db, actor_id)
        requester = await LeaveService._load_user(db, leave.requester_id)
        approval = await LeaveService._current_approval(db, leave, approval_id)

        chain = resolve_chain(leave.leave_type, requester.role, approval.flow)
        check_action(
            LeaveService._actor(actor),
            LeaveService._step(approval, chain, requester),
            ChainAction.APPROVE,
        )
        partial = approval.flow == ApprovalFlow.cancellation and leave.is_partial_cancellation
        if partial:
            new_status = next_status(leave.status, Action.APPROVE_PARTIAL_CANCELLATION)
        else:
            new_status = status_after_action(
                leave.status, approval.flow, chain, approval.chain_position, ChainAction.APPROVE,
            )

        before = {
            "status": leave.status,
            "end_date": leave.end_date,
            "working_days": leave.working_days,
            "allocations": leave.allocations,
        }
        details: dict[str, Any] = {"flow": approval.flow, "comment": comment}

        await LeaveService._decide(
            db, approval, ApprovalDecision.approved, actor, comment=comment,
        )
        await LeaveService._claim(db, leave, new_status)

        if approval.flow == ApprovalFlow.request:
            balances = await BalanceLedger.available_by_type(
                db, leave.requester_id, leave.start_date.year,
            )
            plan = plan_conversion(policy, leave.leave_type, leave.working_days, balances)
            await BalanceLedger.debit_plan(
                db, leave.requester_id, leave.start_date.year, plan.allocations,
                actor_id=actor.id, leave_id=leave.id,
            )
            leave.allocations = plan.as_json()
            details.update(
                plan=plan.as_json(),
                requires_conversion=plan.requires_conversion,
                unpaid_days=plan.days_for(LeaveType.extraordinary),
            )
            kind = NotificationKind.leave_approved

        elif approval.flow == ApprovalFlow.cancellation:
            if partial:
                new_end = leave.cancellation_end_date
                new_days = await LeaveService._count(db, leave.start_date, new_end)
                released = await LeaveService._release(
                    db, leave, leave.working_days - new_days,
                    reason=RestoreReason.cancellation, actor_id=actor.id, policy=policy,
                )
                leave.original_end_date = leave.original_end_date or leave.end_date
                leave.end_date = new_end
                leave.working_days = new_days
                kind = NotificationKind.leave_approved
            else:
                released = await LeaveService._release(
                    db, leave, leave.working_days,
                    reason=RestoreReason.cancellation, actor_id=actor.id, policy=policy,
                )
                kind = NotificationKind.leave_cancelled
            leave.cancellation_end_date = None
            details.update(restored_days=released, partial=partial)

        else:
            leave.return_confirmed = True
            kind = NotificationKind.leave_approved

        await db.flush()
        await create_audit_entry(
            db,
            action=AuditAction.leave_approve,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=actor.id,
            old_values=before,
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "end_date": leave.end_date,
                "working_days": leave.working_days,
                **details,
            },
        )
        await notify_requester(db, leave, kind, comment=comment)
        logger.info(
            "Leave %s %s flow approved by %s → %s",
            leave.id, approval.flow.value, actor.email, leave.status.value,
        )
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Reject
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def reject(
        db: AsyncSession,
        leave_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        approval_id: Optional[uuid.UUID] = None,
        comment: Optional[str] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveRequest:
        """Refuse the current flow.

        A refused request ends REJECTED; a refused cancellation leaves the
        approved leave in place; a refused duty return drops the fitness
        certificate so the employee can upload a new one.
        """
        leave = await LeaveService._load_leave(db, leave_id)
        actor = await LeaveService._load_user(db, actor_id)
        requester = await LeaveService._load_user(db, leave.requester_id)
        approval = await LeaveService._current_approval(db, leave, approval_id)

        chain = resolve_chain(leave.leave_type, requester.role, approval.flow)
        check_action(
            LeaveService._actor(actor),
            LeaveService._step(approval, chain, requester),
            ChainAction.REJECT,
        )
        new_status = status_after_action(
            leave.status, approval.flow, chain, approval.chain_position, ChainAction.REJECT,
        )
        old_status = leave.status

        await LeaveService._decide(
            db, approval, ApprovalDecision.rejected, actor, comment=comment,
        )
        await LeaveService._claim(db, leave, new_status)

        restored = 0
        if approval.flow == ApprovalFlow.request:
            restored = await LeaveService._release(
                db, leave, leave.working_days,
                reason=RestoreReason.rejection, actor_id=actor.id, policy=policy,
            )
        elif approval.flow == ApprovalFlow.cancellation:
            leave.is_partial_cancellation = False
            leave.cancellation_end_date = None
        else:
            leave.fitness_certificate_url = None
        await db.flush()

        await create_audit_entry(
            db,
            action=AuditAction.leave_reject,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=actor.id,
            old_values={"status": old_status},
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "flow": approval.flow,
                "restored_days": restored,
                "comment": comment,
            },
        )
        await notify_requester(db, leave, NotificationKind.leave_rejected, comment=comment)
        logger.info(
            "Leave %s %s flow rejected by %s → %s",
            leave.id, approval.flow.value, actor.email, leave.status.value,
        )
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Return for modification
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def return_for_modification(
        db: AsyncSession,
        leave_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        approval_id: Optional[uuid.UUID] = None,
        comment: Optional[str] = None,
    ) -> LeaveRequest:
        leave = await LeaveService._load_leave(db, leave_id)
        actor = await LeaveService._load_user(db, actor_id)
        requester = await LeaveService._load_user(db, leave.requester_id)
        approval = await LeaveService._current_approval(db, leave, approval_id)

        if approval.flow != ApprovalFlow.request:
            raise StateConflictError(
                "invalid_status",
                "Only a leave request under review can be returned.",
                details={"current_status": leave.status.value, "flow": approval.flow.value},
            )

        chain = resolve_chain(leave.leave_type, requester.role)
        check_action(
            LeaveService._actor(actor),
            LeaveService._step(approval, chain, requester),
            ChainAction.RETURN,
        )
        new_status = status_after_action(
            leave.status, approval.flow, chain, approval.chain_position, ChainAction.RETURN,
        )
        old_status = leave.status

        await LeaveService._decide(
            db, approval, ApprovalDecision.returned, actor, comment=comment,
        )
        await LeaveService._claim(db, leave, new_status)

        await create_audit_entry(
            db,
            action=AuditAction.leave_return,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=actor.id,
            old_values={"status": old_status, "step": approval.step},
            new_values={"leave_id": leave.id, "status": leave.status, "comment": comment},
        )
        await notify_requester(db, leave, NotificationKind.leave_returned, comment=comment)
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Resubmit
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def resubmit(
        db: AsyncSession,
        leave_id: uuid.UUID,
        requester_id: uuid.UUID,
        data: Optional[LeaveResubmitRequest] = None,
        *,
        today: Optional[date] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> SubmissionResult:
        """Send a RETURNED or RECALLED request back through its chain from the top."""
        today = today or local_today()
        leave = await LeaveService._load_leave(db, leave_id)
        LeaveService._require_requester(leave, requester_id)
        requester = await LeaveService._load_user(db, requester_id)
        new_status = next_status(leave.status, Action.RESUBMIT)
        data = data or LeaveResubmitRequest()

        start_date = data.start_date or leave.start_date
        end_date = data.end_date or leave.end_date
        certificate_url = data.certificate_url or leave.certificate_url
        if (
            leave.status == LeaveStatus.recalled
            and leave.consumed_allocations
            and start_date <= leave.end_date
        ):
            raise ValidationError(
                "resubmit_overlaps_taken_days",
                details={
                    "taken_until": leave.end_date.isoformat(),
                    "requested_start_date": start_date.isoformat(),
                },
                field="start_date",
            )

        working_days, warnings, plan = await LeaveService._validate_and_plan(
            db,
            requester,
            leave_type=leave.leave_type,
            start_date=start_date,
            end_date=end_date,
            certificate_url=certificate_url,
            today=today,
            policy=policy,
            exclude_leave_id=leave.id,
        )
        old = {
            "status": leave.status,
            "start_date": leave.start_date,
            "end_date": leave.end_date,
            "working_days": leave.working_days,
        }

        await LeaveService._claim(db, leave, new_status)
        # Nothing is held here: debits happen at approval and recall clears the rest
        leave.start_date = start_date
        leave.end_date = end_date
        leave.working_days = working_days
        leave.certificate_url = certificate_url
        if data.reason is not None:
            leave.reason = data.reason
        leave.policy_version = policy.version
        leave.allocations = None
        await db.flush()

        chain = resolve_chain(leave.leave_type, requester.role)
        approval = await LeaveService._open_step(
            db, leave, ApprovalFlow.request, chain, 0, requester,
        )

        await create_audit_entry(
            db,
            action=AuditAction.leave_resubmitted,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=requester.id,
            old_values=old,
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "start_date": leave.start_date,
                "end_date": leave.end_date,
                "working_days": leave.working_days,
                "step": approval.step,
                "warnings": [w.code for w in warnings],
            },
        )
        await notify_approvers(db, leave, chain[0], requester=requester)
        return SubmissionResult(leave=leave, warnings=warnings, plan=plan)

    # ─────────────────────────────────────────────────────────────────
    # Cancel
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def cancel(
        db: AsyncSession,
        leave_id: uuid.UUID,
        requester_id: uuid.UUID,
        *,
        reason: str,
        today: Optional[date] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveRequest:
        """Withdraw a request.

        Before approval the request is cancelled at once. An approved leave
        opens a cancellation sub-flow instead; if it has already started,
        the days up to yesterday are locked and only the tail is offered back.
        """
        today = today or local_today()
        leave = await LeaveService._load_leave(db, leave_id)
        LeaveService._require_requester(leave, requester_id)
        requester = await LeaveService._load_user(db, requester_id)
        old_status = leave.status

        if not can_transition(leave.status, Action.REQUEST_CANCELLATION):
            new_status = next_status(leave.status, Action.CANCEL)
            pending = await LeaveService._pending_approval(db, leave.id)
            if pending is not None:
                await LeaveService._decide(
                    db, pending, ApprovalDecision.rejected, requester,
                    comment="Cancelled by requester",
                )
            await LeaveService._claim(db, leave, new_status, cancellation_reason=reason)
            restored = await LeaveService._release(
                db, leave, leave.working_days,
                reason=RestoreReason.cancellation, actor_id=requester.id, policy=policy,
            )
            await create_audit_entry(
                db,
                action=AuditAction.leave_cancelled,
                entity_type="leave_request",
                entity_id=leave.id,
                actor_id=requester.id,
                old_values={"status": old_status},
                new_values={
                    "leave_id": leave.id,
                    "status": leave.status,
                    "reason": reason,
                    "restored_days": restored,
                },
            )
            logger.info("Leave %s cancelled by requester (%s)", leave.id, old_status.value)
            return leave

        new_status = next_status(leave.status, Action.REQUEST_CANCELLATION)
        if leave.end_date < today:
            raise StateConflictError(
                "cannot_cancel_now",
                details={"end_date": leave.end_date.isoformat(), "today": today.isoformat()},
            )

        partial = False
        keep_until: Optional[date] = None
        if leave.start_date <= today:
            keep_until = max(leave.start_date, today - timedelta(days=1))
            kept_days = await LeaveService._count(db, leave.start_date, keep_until)
            partial = 0 < kept_days < leave.working_days
            if not partial:
                keep_until = None

        await LeaveService._claim(
            db,
            leave,
            new_status,
            cancellation_reason=reason,
            is_partial_cancellation=partial,
            cancellation_end_date=keep_until,
        )
        chain = resolve_chain(leave.leave_type, requester.role, ApprovalFlow.cancellation)
        approval = await LeaveService._open_step(
            db, leave, ApprovalFlow.cancellation, chain, 0, requester,
        )

        await create_audit_entry(
            db,
            action=AuditAction.cancellation_requested,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=requester.id,
            old_values={"status": old_status},
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "reason": reason,
                "partial": partial,
                "keep_until": keep_until,
                "step": approval.step,
            },
        )
        await notify_approvers(db, leave, chain[0], requester=requester)
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Shorten
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def shorten(
        db: AsyncSession,
        leave_id: uuid.UUID,
        requester_id: uuid.UUID,
        new_end_date: date,
        *,
        today: Optional[date] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveRequest:
        """Bring an in-progress approved leave to an earlier end."""
        today = today or local_today()
        leave = await LeaveService._load_leave(db, leave_id)
        LeaveService._require_requester(leave, requester_id)
        new_status = next_status(leave.status, Action.SHORTEN)

        if today < leave.start_date:
            raise StateConflictError(
                "shorten_not_started", details={"start_date": leave.start_date.isoformat()},
            )
        if today > leave.end_date:
            raise StateConflictError(
                "shorten_already_ended", details={"end_date": leave.end_date.isoformat()},
            )
        if not (today <= new_end_date < leave.end_date):
            raise ValidationError(
                "shorten_invalid_date",
                details={
                    "today": today.isoformat(),
                    "current_end_date": leave.end_date.isoformat(),
                    "requested_end_date": new_end_date.isoformat(),
                },
                field="new_end_date",
            )

        new_days = await LeaveService._count(db, leave.start_date, new_end_date)
        delta = leave.working_days - new_days
        if new_days == 0:
            raise ValidationError("shorten_invalid_date", field="new_end_date")
        if delta <= 0:
            raise ValidationError("shorten_no_reduction", field="new_end_date")

        before = {
            "end_date": leave.end_date,
            "working_days": leave.working_days,
            "allocations": leave.allocations,
        }
        await LeaveService._claim(db, leave, new_status)
        restored = await LeaveService._release(
            db, leave, delta,
            reason=RestoreReason.shorten, actor_id=requester_id, policy=policy,
        )
        leave.original_end_date = leave.original_end_date or leave.end_date
        leave.end_date = new_end_date
        leave.working_days = new_days
        await db.flush()

        await create_audit_entry(
            db,
            action=AuditAction.leave_shortened,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=requester_id,
            old_values=before,
            new_values={
                "leave_id": leave.id,
                "end_date": leave.end_date,
                "working_days": leave.working_days,
                "restored_days": restored,
                "allocations": leave.allocations,
            },
        )
        logger.info("Leave %s shortened by %s day(s)", leave.id, delta)
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Recall
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def recall(
        db: AsyncSession,
        leave_id: uuid.UUID,
        actor_id: uuid.UUID,
        *,
        reason: str,
        today: Optional[date] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveRequest:
        """Pull an employee back; days not yet taken return to the ledger."""
        today = today or local_today()
        leave = await LeaveService._load_leave(db, leave_id)
        actor = await LeaveService._load_user(db, actor_id)
        if actor.role not in RECALL_ROLES:
            raise AuthorizationError("recall_role_required", details={"role": actor.role.value})
        if actor.id == leave.requester_id:
            raise AuthorizationError("self_approval_disallowed")
        new_status = next_status(leave.status, Action.RECALL)
        if leave.end_date < today:
            raise StateConflictError(
                "cannot_recall_past_leave",
                details={"end_date": leave.end_date.isoformat(), "today": today.isoformat()},
            )

        before = {
            "status": leave.status,
            "end_date": leave.end_date,
            "working_days": leave.working_days,
        }
        kept_days = 0
        keep_until = today - timedelta(days=1)
        if leave.start_date <= keep_until:
            kept_days = await LeaveService._count(db, leave.start_date, keep_until)

        await LeaveService._claim(db, leave, new_status)
        restored = await LeaveService._release(
            db, leave, leave.working_days - kept_days,
            reason=RestoreReason.recall, actor_id=actor.id, policy=policy,
        )
        consumed = leave.allocations if kept_days > 0 else None
        if kept_days > 0:
            leave.original_end_date = leave.original_end_date or leave.end_date
            leave.end_date = keep_until
            leave.working_days = kept_days
            # Whatever is still held was taken; cancel and resubmit must not release it
            leave.consumed_allocations = (leave.consumed_allocations or []) + (consumed or [])
        leave.allocations = None
        await db.flush()

        await create_audit_entry(
            db,
            action=AuditAction.leave_recall,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=actor.id,
            old_values=before,
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "end_date": leave.end_date,
                "restored_days": restored,
                "consumed": consumed,
                "reason": reason,
            },
        )
        await notify_requester(db, leave, NotificationKind.leave_recalled, comment=reason)
        logger.info("Leave %s recalled by %s, %s day(s) restored", leave.id, actor.email, restored)
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Duty return
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def confirm_return(
        db: AsyncSession,
        leave_id: uuid.UUID,
        requester_id: uuid.UUID,
        *,
        fitness_certificate_url: Optional[str] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveRequest:
        """Report back to duty.

        Long medical leave needs a fitness certificate signed off by the
        duty-return chain; everything else is confirmed immediately.
        """
        leave = await LeaveService._load_leave(db, leave_id)
        LeaveService._require_requester(leave, requester_id)
        requester = await LeaveService._load_user(db, requester_id)
        old_status = leave.status

        if needs_fitness_certificate(policy, leave.leave_type, leave.working_days):
            if not fitness_certificate_url:
                raise PolicyViolationError(
                    "fitness_certificate_required",
                    details={
                        "threshold": policy.fitness_certificate_after_days,
                        "working_days": leave.working_days,
                    },
                    field="fitness_certificate_url",
                )
            new_status = next_status(leave.status, Action.REQUEST_DUTY_RETURN)
            if await LeaveService._pending_approval(db, leave.id) is not None:
                raise StateConflictError(
                    "invalid_status",
                    "A duty-return approval is already in progress.",
                    details={"current_status": leave.status.value},
                )
            await LeaveService._claim(
                db, leave, new_status, fitness_certificate_url=fitness_certificate_url,
            )
            chain = resolve_chain(leave.leave_type, requester.role, ApprovalFlow.duty_return)
            approval = await LeaveService._open_step(
                db, leave, ApprovalFlow.duty_return, chain, 0, requester,
            )
            await create_audit_entry(
                db,
                action=AuditAction.duty_return_requested,
                entity_type="leave_request",
                entity_id=leave.id,
                actor_id=requester.id,
                old_values={"status": old_status},
                new_values={
                    "leave_id": leave.id,
                    "status": leave.status,
                    "fitness_certificate_url": fitness_certificate_url,
                    "step": approval.step,
                },
            )
            await notify_approvers(db, leave, chain[0], requester=requester)
            return leave

        new_status = next_status(leave.status, Action.CONFIRM_RETURN)
        values: dict[str, Any] = {"return_confirmed": True}
        if fitness_certificate_url:
            values["fitness_certificate_url"] = fitness_certificate_url
        await LeaveService._claim(db, leave, new_status, **values)
        await create_audit_entry(
            db,
            action=AuditAction.return_confirmed,
            entity_type="leave_request",
            entity_id=leave.id,
            actor_id=requester.id,
            old_values={"status": old_status},
            new_values={"leave_id": leave.id, "status": leave.status},
        )
        return leave

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_leave(db: AsyncSession, leave_id: uuid.UUID) -> LeaveRequest:
        return await LeaveService._load_leave(db, leave_id)

    @staticmethod
    async def list_approvals(db: AsyncSession, leave_id: uuid.UUID) -> Sequence[Approval]:
        result = await db.execute(
            select(Approval).where(Approval.leave_id == leave_id).order_by(Approval.step)
        )
        return result.scalars().all()

    @staticmethod
    async def get_balances(
        db: AsyncSession, user_id: uuid.UUID, year: int,
    ) -> Sequence[LeaveBalance]:
        result = await db.execute(
            select(LeaveBalance)
            .where(LeaveBalance.user_id == user_id, LeaveBalance.year == year)
            .order_by(LeaveBalance.leave_type)
        )
        return result.scalars().all()
