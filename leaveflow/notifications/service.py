"""Notification service — writes notification intents for the leave engine.

Delivery happens elsewhere. Writing an intent must never undo the
transition that triggered it, so each write runs in a SAVEPOINT and a
failure is logged and dropped.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.models import User
from leaveflow.common.constants import DATE_FORMAT, NotificationKind, UserRole
from leaveflow.leave.models import LeaveRequest
from leaveflow.notifications.models import NotificationIntent

logger = logging.getLogger("leaveflow.notifications")


# ── Core service ────────────────────────────────────────────────────


class NotificationService:
    """Async notification-intent operations."""

    @staticmethod
    async def emit(
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        kind: NotificationKind,
        leave_id: uuid.UUID,
        title: str,
        message: str,
    ) -> Optional[NotificationIntent]:
        """Write one intent. Returns None if the write failed."""
        intent = NotificationIntent(
            id=uuid.uuid4(),
            recipient_id=recipient_id,
            kind=kind,
            leave_id=leave_id,
            title=title,
            message=message,
        )
        try:
            async with db.begin_nested():
                db.add(intent)
        except SQLAlchemyError:
            logger.warning(
                "Dropped %s notification for leave %s to %s",
                kind.value, leave_id, recipient_id, exc_info=True,
            )
            return None
        return intent

    @staticmethod
    async def recipients_for_role(
        db: AsyncSession,
        role: UserRole,
        *,
        department: Optional[str] = None,
    ) -> Sequence[User]:
        """Active holders of ``role``; department heads are scoped to one department."""
        query = select(User).where(User.role == role, User.is_active.is_(True))
        if role == UserRole.dept_head:
            query = query.where(User.department == department)
        result = await db.execute(query.order_by(User.email))
        return result.scalars().all()

    @staticmethod
    async def list_for_leave(
        db: AsyncSession, leave_id: uuid.UUID,
    ) -> Sequence[NotificationIntent]:
        result = await db.execute(
            select(NotificationIntent)
            .where(NotificationIntent.leave_id == leave_id)
            .order_by(NotificationIntent.created_at)
        )
        return result.scalars().all()


# ── Cross-module helpers ────────────────────────────────────────────


def _period(leave: LeaveRequest) -> str:
    return f"{leave.start_date.strftime(DATE_FORMAT)} to {leave.end_date.strftime(DATE_FORMAT)}"


async def notify_approvers(
    db: AsyncSession,
    leave: LeaveRequest,
    role: UserRole,
    *,
    requester: User,
    forwarded: bool = False,
) -> list[NotificationIntent]:
    """Tell every holder of ``role`` that a step is waiting for them."""
    recipients = await NotificationService.recipients_for_role(
        db, role, department=requester.department,
    )
    kind = NotificationKind.leave_forwarded if forwarded else NotificationKind.approval_required
    sent: list[NotificationIntent] = []
    for recipient in recipients:
        if recipient.id == requester.id:
            continue
        intent = await NotificationService.emit(
            db,
            recipient_id=recipient.id,
            kind=kind,
            leave_id=leave.id,
            title="Leave awaiting your approval",
            message=(
                f"{requester.full_name} requested {leave.working_days} day(s) of "
                f"{leave.leave_type.value} leave ({_period(leave)})."
            ),
        )
        if intent is not None:
            sent.append(intent)
    if not recipients:
        logger.warning("No active %s to notify for leave %s", role.value, leave.id)
    return sent


_REQUESTER_TITLES: dict[NotificationKind, str] = {
    NotificationKind.leave_approved: "Leave approved",
    NotificationKind.leave_rejected: "Leave rejected",
    NotificationKind.leave_returned: "Leave returned for changes",
    NotificationKind.leave_recalled: "Leave recalled",
    NotificationKind.leave_cancelled: "Leave cancelled",
    NotificationKind.overstay_flagged: "Return to duty overdue",
}


async def notify_requester(
    db: AsyncSession,
    leave: LeaveRequest,
    kind: NotificationKind,
    *,
    comment: Optional[str] = None,
) -> Optional[NotificationIntent]:
    message = f"Your {leave.leave_type.value} leave ({_period(leave)}) is now {leave.status.value}."
    if comment:
        message += f" Comment: {comment}"
    return await NotificationService.emit(
        db,
        recipient_id=leave.requester_id,
        kind=kind,
        leave_id=leave.id,
        title=_REQUESTER_TITLES.get(kind, "Leave update"),
        message=message,
    )
