"""Periodic sweeps: monthly EL accrual, yearly grants, year-end rollover, overstay check.

Each sweep records one audit row per (action, entity, period) and checks
for it first, so re-running a sweep for the same period is a no-op. The
caller owns the transaction (see ``scripts/run_sweeps.py``).
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.models import User
from leaveflow.common.audit import audit_event_exists, create_audit_entry
from leaveflow.common.constants import (
    MONTH_PERIOD_FORMAT,
    AuditAction,
    LeaveStatus,
    LeaveType,
    NotificationKind,
    UserRole,
)
from leaveflow.leave.ledger import BalanceLedger
from leaveflow.leave.models import LeaveBalance, LeaveRequest
from leaveflow.leave.policy import DEFAULT_POLICY, LeavePolicy
from leaveflow.leave.transitions import Action, next_status
from leaveflow.leave.working_days import is_non_working_day, load_holidays
from leaveflow.notifications.service import NotificationService, notify_requester

logger = logging.getLogger("leaveflow.sweeps")

# Leaves that keep an employee away for the purposes of accrual
_ON_LEAVE_STATUSES = (LeaveStatus.approved, LeaveStatus.overstay_pending)


class SweepReport(BaseModel):
    processed: int = 0
    skipped: int = 0
    details: list[dict[str, Any]] = []


# ── EL accrual ──────────────────────────────────────────────────────


async def run_el_accrual(
    db: AsyncSession,
    month: date,
    *,
    policy: LeavePolicy = DEFAULT_POLICY,
) -> SweepReport:
    """Credit the monthly EARNED accrual to every active user.

    A user on approved leave for every working day of the month earns
    nothing that month.
    """
    period = month.strftime(MONTH_PERIOD_FORMAT)
    month_start = month.replace(day=1)
    month_end = month.replace(day=calendar.monthrange(month.year, month.month)[1])
    holidays = await load_holidays(db, month_start, month_end)
    working = {
        month_start + timedelta(days=i)
        for i in range((month_end - month_start).days + 1)
        if not is_non_working_day(month_start + timedelta(days=i), holidays)
    }

    report = SweepReport()
    users = (
        await db.execute(select(User).where(User.is_active.is_(True)).order_by(User.email))
    ).scalars().all()

    for user in users:
        if await audit_event_exists(
            db, action=AuditAction.el_accrued, entity_id=user.id, period=period,
        ):
            report.skipped += 1
            continue

        leaves = (
            await db.execute(
                select(LeaveRequest).where(
                    LeaveRequest.requester_id == user.id,
                    LeaveRequest.status.in_(_ON_LEAVE_STATUSES),
                    LeaveRequest.start_date <= month_end,
                    LeaveRequest.end_date >= month_start,
                )
            )
        ).scalars().all()
        covered = {
            day for day in working
            if any(lv.start_date <= day <= lv.end_date for lv in leaves)
        }
        if working and covered == working:
            report.skipped += 1
            report.details.append({"user_id": str(user.id), "reason": "on_leave_all_month"})
            continue

        balance = await BalanceLedger.accrue(
            db, user.id, LeaveType.earned, month.year, policy.el_accrual_per_month,
            reason=f"accrual {period}", policy=policy,
        )
        await create_audit_entry(
            db,
            action=AuditAction.el_accrued,
            entity_type="user",
            entity_id=user.id,
            period=period,
            new_values={
                "days": policy.el_accrual_per_month,
                "balance": balance.snapshot(),
            },
        )
        report.processed += 1

    logger.info(
        "EL accrual %s: %s credited, %s skipped", period, report.processed, report.skipped,
    )
    return report


# ── Annual entitlement ──────────────────────────────────────────────


async def run_entitlement_grant(
    db: AsyncSession,
    year: int,
    *,
    policy: LeavePolicy = DEFAULT_POLICY,
) -> SweepReport:
    """Open ``year`` for every active user with the policy's yearly grants.

    EARNED is left out; it builds up through the monthly accrual.
    """
    period = str(year)
    grants = {
        leave_type: days
        for leave_type, days in policy.annual_entitlement.items()
        if leave_type != LeaveType.earned
    }
    report = SweepReport()
    users = (
        await db.execute(select(User).where(User.is_active.is_(True)).order_by(User.email))
    ).scalars().all()

    for user in users:
        if await audit_event_exists(
            db, action=AuditAction.entitlement_granted, entity_id=user.id, period=period,
        ):
            report.skipped += 1
            continue

        opened = {}
        for leave_type, days in grants.items():
            balance = await BalanceLedger.set_opening(db, user.id, leave_type, year, days)
            opened[leave_type.value] = balance.snapshot()
        await create_audit_entry(
            db,
            action=AuditAction.entitlement_granted,
            entity_type="user",
            entity_id=user.id,
            period=period,
            new_values={"year": year, "balances": opened},
        )
        report.processed += 1

    logger.info(
        "Entitlement grant %s: %s users opened, %s skipped", year, report.processed, report.skipped,
    )
    return report


# ── Year-end rollover ───────────────────────────────────────────────


async def run_year_end_rollover(
    db: AsyncSession,
    year: int,
    *,
    policy: LeavePolicy = DEFAULT_POLICY,
) -> SweepReport:
    """Close ``year`` and open ``year + 1``.

    Next year's grants are issued first. Unused CASUAL then lapses, and
    EARNED carries forward up to its cap.
    """
    period = str(year)
    await run_entitlement_grant(db, year + 1, policy=policy)
    report = SweepReport()
    balances = (
        await db.execute(
            select(LeaveBalance)
            .where(
                LeaveBalance.year == year,
                LeaveBalance.leave_type.in_((LeaveType.casual, LeaveType.earned)),
            )
            .order_by(LeaveBalance.user_id, LeaveBalance.leave_type)
        )
    ).scalars().all()

    for balance in balances:
        if balance.leave_type == LeaveType.casual:
            action = AuditAction.cl_lapsed
        else:
            action = AuditAction.el_carried_forward
            opening = min(max(balance.closing, 0), policy.el_cap)

        if await audit_event_exists(db, action=action, entity_id=balance.user_id, period=period):
            report.skipped += 1
            continue

        if balance.leave_type == LeaveType.casual:
            # Nothing carries over; the new row holds only the yearly grant
            successor = await BalanceLedger.get_or_create(
                db, balance.user_id, LeaveType.casual, year + 1,
            )
        else:
            successor = await BalanceLedger.set_opening(
                db, balance.user_id, LeaveType.earned, year + 1, opening,
            )
        if balance.leave_type == LeaveType.earned:
            # January accruals may already sit on the new row
            await BalanceLedger.apply_el_overflow(
                db, balance.user_id, year + 1, reason=f"carry forward {year}", policy=policy,
            )
        if action == AuditAction.cl_lapsed:
            values = {"lapsed": max(balance.closing, 0), "year": year}
        else:
            values = {
                "carried": opening,
                "forfeited": max(balance.closing - opening, 0),
                "year": year,
            }
        await create_audit_entry(
            db,
            action=action,
            entity_type="user",
            entity_id=balance.user_id,
            period=period,
            old_values=balance.snapshot(),
            new_values={**values, "next_year": successor.snapshot()},
        )
        report.processed += 1
        report.details.append({"user_id": str(balance.user_id), "action": action.value, **values})

    logger.info(
        "Year-end rollover %s: %s rows opened, %s skipped", year, report.processed, report.skipped,
    )
    return report


# ── Overstay ────────────────────────────────────────────────────────


async def run_overstay_check(db: AsyncSession, today: date) -> SweepReport:
    """Flag approved leaves that ended without a confirmed return."""
    report = SweepReport()
    leaves = (
        await db.execute(
            select(LeaveRequest)
            .where(
                LeaveRequest.status == LeaveStatus.approved,
                LeaveRequest.end_date < today,
                LeaveRequest.return_confirmed.is_(False),
            )
            .order_by(LeaveRequest.end_date)
        )
    ).scalars().all()
    hr_admins = await NotificationService.recipients_for_role(db, UserRole.hr_admin)

    for leave in leaves:
        # A fitness certificate on medical leave counts as a confirmed return
        if leave.leave_type == LeaveType.medical and leave.fitness_certificate_url:
            report.skipped += 1
            continue

        period = leave.end_date.isoformat()
        if await audit_event_exists(
            db, action=AuditAction.overstay_flagged, entity_id=leave.id, period=period,
        ):
            report.skipped += 1
            continue

        new_status = next_status(leave.status, Action.FLAG_OVERSTAY)
        result = await db.execute(
            update(LeaveRequest)
            .where(LeaveRequest.id == leave.id, LeaveRequest.status == LeaveStatus.approved)
            .values(status=new_status, overstay_flagged_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Leave %s changed status during overstay check; skipped", leave.id)
            report.skipped += 1
            continue
        await db.refresh(leave)

        days_overstayed = (today - leave.end_date).days
        await create_audit_entry(
            db,
            action=AuditAction.overstay_flagged,
            entity_type="leave_request",
            entity_id=leave.id,
            period=period,
            old_values={"status": LeaveStatus.approved},
            new_values={
                "leave_id": leave.id,
                "status": leave.status,
                "leave_type": leave.leave_type,
                "days_overstayed": days_overstayed,
            },
        )
        await notify_requester(db, leave, NotificationKind.overstay_flagged)
        for admin in hr_admins:
            await NotificationService.emit(
                db,
                recipient_id=admin.id,
                kind=NotificationKind.overstay_flagged,
                leave_id=leave.id,
                title="Employee overdue from leave",
                message=(
                    f"{leave.leave_type.value} leave ended {period}; "
                    f"no return confirmed after {days_overstayed} day(s)."
                ),
            )
        report.processed += 1
        report.details.append({"leave_id": str(leave.id), "days_overstayed": days_overstayed})

    logger.info(
        "Overstay check %s: %s flagged, %s skipped", today, report.processed, report.skipped,
    )
    return report
