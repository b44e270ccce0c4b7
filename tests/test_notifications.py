"""Notification intent tests — recipients, requester messages, failure isolation."""

from __future__ import annotations

import logging
import uuid
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import LeaveStatus, LeaveType, NotificationKind, UserRole
from leaveflow.leave.models import LeaveRequest
from leaveflow.notifications.models import NotificationIntent
from leaveflow.notifications.service import (
    NotificationService,
    notify_approvers,
    notify_requester,
)
from tests.conftest import _seed_user


async def _seed_leave(db: AsyncSession, requester_id: uuid.UUID) -> LeaveRequest:
    leave = LeaveRequest(
        id=uuid.uuid4(),
        requester_id=requester_id,
        leave_type=LeaveType.earned,
        start_date=date(2026, 11, 1),
        end_date=date(2026, 11, 5),
        working_days=5,
        status=LeaveStatus.submitted,
        policy_version="v2.0",
    )
    db.add(leave)
    await db.flush()
    return leave


class TestNotifyApprovers:

    async def test_dept_heads_scoped_to_requester_department(self, db: AsyncSession):
        requester = await _seed_user(db, department="ENG", full_name="Rahim Uddin")
        eng_head = await _seed_user(db, UserRole.dept_head, department="ENG")
        await _seed_user(db, UserRole.dept_head, department="OPS")
        leave = await _seed_leave(db, requester.id)

        sent = await notify_approvers(db, leave, UserRole.dept_head, requester=requester)

        assert [n.recipient_id for n in sent] == [eng_head.id]
        assert sent[0].kind == NotificationKind.approval_required
        assert "Rahim Uddin requested 5 day(s) of earned leave" in sent[0].message
        assert "01-Nov-2026 to 05-Nov-2026" in sent[0].message

    async def test_requester_never_notified_of_own_step(self, db: AsyncSession):
        requester = await _seed_user(db, UserRole.hr_admin)
        other_admin = await _seed_user(db, UserRole.hr_admin)
        leave = await _seed_leave(db, requester.id)

        sent = await notify_approvers(
            db, leave, UserRole.hr_admin, requester=requester, forwarded=True,
        )

        assert [n.recipient_id for n in sent] == [other_admin.id]
        assert sent[0].kind == NotificationKind.leave_forwarded

    async def test_missing_role_logs_warning(
        self, db: AsyncSession, caplog: pytest.LogCaptureFixture,
    ):
        requester = await _seed_user(db)
        leave = await _seed_leave(db, requester.id)

        with caplog.at_level(logging.WARNING, logger="leaveflow.notifications"):
            sent = await notify_approvers(db, leave, UserRole.ceo, requester=requester)

        assert sent == []
        assert "No active ceo" in caplog.text


class TestNotifyRequester:

    async def test_message_carries_status_and_comment(self, db: AsyncSession):
        requester = await _seed_user(db)
        leave = await _seed_leave(db, requester.id)

        intent = await notify_requester(
            db, leave, NotificationKind.leave_returned, comment="Add a handover note",
        )

        assert intent.recipient_id == requester.id
        assert intent.title == "Leave returned for changes"
        assert "is now submitted" in intent.message
        assert intent.message.endswith("Comment: Add a handover note")


class TestEmitIsolation:

    async def test_failed_write_does_not_poison_session(
        self, db: AsyncSession, monkeypatch: pytest.MonkeyPatch,
    ):
        requester = await _seed_user(db)
        leave = await _seed_leave(db, requester.id)
        fixed = uuid.uuid4()

        with monkeypatch.context() as m:
            m.setattr(uuid, "uuid4", lambda: fixed)
            first = await NotificationService.emit(
                db, recipient_id=requester.id, kind=NotificationKind.leave_approved,
                leave_id=leave.id, title="one", message="one",
            )
            # Same primary key: the second write fails inside its savepoint
            second = await NotificationService.emit(
                db, recipient_id=requester.id, kind=NotificationKind.leave_approved,
                leave_id=leave.id, title="two", message="two",
            )

        assert first is not None
        assert second is None
        leave.reason = "still writable"
        await db.flush()
        count = (
            await db.execute(select(func.count()).select_from(NotificationIntent))
        ).scalar_one()
        assert count == 1
