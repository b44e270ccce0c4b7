"""Balance ledger — debit, restore, accrual and EL→SPECIAL overflow.

All operations act on rows read inside the caller's transaction and
recompute ``closing`` after every mutation. ``used`` changes only through
``debit`` and ``restore``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.audit import create_audit_entry
from leaveflow.common.constants import AuditAction, LeaveType, RestoreReason
from leaveflow.common.exceptions import (
    InsufficientBalanceError,
    StateConflictError,
    ValidationError,
)
from leaveflow.leave.conversion import UNPAID_TYPES, Allocation
from leaveflow.leave.models import LeaveBalance
from leaveflow.leave.policy import DEFAULT_POLICY, LeavePolicy

logger = logging.getLogger("leaveflow.ledger")

# Order in which a partial restore releases days: unpaid first, the
# requested type last.
_RELEASE_ORDER: tuple[LeaveType, ...] = (
    LeaveType.extraordinary,
    LeaveType.special,
    LeaveType.earned,
    LeaveType.casual,
    LeaveType.medical,
)


class OverflowResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    overflow_applied: bool
    transferred: int = 0
    headroom: int = 0
    el_closing: int = 0
    special_closing: int = 0


def _recompute(balance: LeaveBalance) -> None:
    balance.closing = balance.opening + balance.accrued - balance.used
    balance.updated_at = datetime.now(timezone.utc)


class BalanceLedger:
    """Async ledger operations; every method takes the session first."""

    # ─────────────────────────────────────────────────────────────────
    # Row access
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_balance(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
    ) -> Optional[LeaveBalance]:
        result = await db.execute(
            select(LeaveBalance).where(
                LeaveBalance.user_id == user_id,
                LeaveBalance.leave_type == leave_type,
                LeaveBalance.year == year,
            )
        )
        return result.scalars().first()

    @staticmethod
    async def get_or_create(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
        *,
        opening: int = 0,
    ) -> LeaveBalance:
        """Return the (user, type, year) row, creating a zeroed one lazily."""
        balance = await BalanceLedger.get_balance(db, user_id, leave_type, year)
        if balance is not None:
            return balance

        balance = LeaveBalance(
            id=uuid.uuid4(),
            user_id=user_id,
            leave_type=leave_type,
            year=year,
            opening=opening,
            accrued=0,
            used=0,
            closing=opening,
        )
        db.add(balance)
        try:
            await db.flush()
        except IntegrityError as exc:
            # Another transaction created the same (user, type, year) row
            raise StateConflictError(
                "concurrent_update",
                details={"user_id": str(user_id), "leave_type": leave_type.value, "year": year},
            ) from exc
        return balance

    @staticmethod
    async def available_by_type(
        db: AsyncSession,
        user_id: uuid.UUID,
        year: int,
    ) -> dict[LeaveType, int]:
        """Available days per type for the year; missing rows are absent."""
        result = await db.execute(
            select(LeaveBalance).where(
                LeaveBalance.user_id == user_id,
                LeaveBalance.year == year,
            )
        )
        return {b.leave_type: b.available for b in result.scalars().all()}

    # ─────────────────────────────────────────────────────────────────
    # Debit / restore
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def debit(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
        days: int,
        *,
        actor_id: Optional[uuid.UUID] = None,
        leave_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """Consume ``days``; fails if used + days would exceed opening + accrued."""
        if days <= 0:
            raise ValidationError("invalid_days", details={"days": days}, field="days")

        balance = await BalanceLedger.get_or_create(db, user_id, leave_type, year)
        if balance.used + days > balance.opening + balance.accrued:
            raise InsufficientBalanceError(
                details={
                    "leave_type": leave_type.value,
                    "year": year,
                    "requested": days,
                    "available": balance.available,
                },
            )

        before = balance.snapshot()
        balance.used += days
        _recompute(balance)
        await db.flush()

        await create_audit_entry(
            db,
            action=AuditAction.balance_deducted,
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            old_values=before,
            new_values={**balance.snapshot(), "days": days, "leave_id": leave_id},
        )
        return balance

    @staticmethod
    async def restore(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
        days: int,
        *,
        reason: RestoreReason,
        actor_id: Optional[uuid.UUID] = None,
        leave_id: Optional[uuid.UUID] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveBalance:
        """Give back ``days`` (used floors at 0), then re-check EL overflow."""
        if days <= 0:
            raise ValidationError("invalid_days", details={"days": days}, field="days")

        balance = await BalanceLedger.get_or_create(db, user_id, leave_type, year)
        before = balance.snapshot()
        balance.used = max(0, balance.used - days)
        _recompute(balance)
        await db.flush()

        await create_audit_entry(
            db,
            action=AuditAction.balance_restored,
            entity_type="leave_balance",
            entity_id=balance.id,
            actor_id=actor_id,
            old_values=before,
            new_values={
                **balance.snapshot(),
                "days": days,
                "reason": reason.value,
                "leave_id": leave_id,
            },
        )

        if leave_type == LeaveType.earned:
            await BalanceLedger.apply_el_overflow(
                db, user_id, year, reason=reason.value, actor_id=actor_id, policy=policy,
            )
        return balance

    @staticmethod
    async def accrue(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
        days: int,
        *,
        reason: str,
        actor_id: Optional[uuid.UUID] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> LeaveBalance:
        if days <= 0:
            raise ValidationError("invalid_days", details={"days": days}, field="days")

        balance = await BalanceLedger.get_or_create(db, user_id, leave_type, year)
        balance.accrued += days
        _recompute(balance)
        await db.flush()

        if leave_type == LeaveType.earned:
            await BalanceLedger.apply_el_overflow(
                db, user_id, year, reason=reason, actor_id=actor_id, policy=policy,
            )
        return balance

    @staticmethod
    async def set_opening(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type: LeaveType,
        year: int,
        opening: int,
    ) -> LeaveBalance:
        """Fix the opening balance of a year's row (created if absent)."""
        if opening < 0:
            raise ValidationError("invalid_days", details={"opening": opening}, field="opening")

        balance = await BalanceLedger.get_or_create(db, user_id, leave_type, year)
        balance.opening = opening
        _recompute(balance)
        await db.flush()
        return balance

    # ─────────────────────────────────────────────────────────────────
    # Plans
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def debit_plan(
        db: AsyncSession,
        user_id: uuid.UUID,
        year: int,
        allocations: tuple[Allocation, ...],
        *,
        actor_id: Optional[uuid.UUID] = None,
        leave_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Debit each paid allocation. Unpaid buckets never touch a row."""
        for alloc in allocations:
            if alloc.leave_type in UNPAID_TYPES:
                continue
            await BalanceLedger.debit(
                db, user_id, alloc.leave_type, year, alloc.days,
                actor_id=actor_id, leave_id=leave_id,
            )

    @staticmethod
    async def restore_plan(
        db: AsyncSession,
        user_id: uuid.UUID,
        year: int,
        allocations: tuple[Allocation, ...],
        days: int,
        *,
        reason: RestoreReason,
        actor_id: Optional[uuid.UUID] = None,
        leave_id: Optional[uuid.UUID] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> tuple[Allocation, ...]:
        """Release ``days`` from a debited plan, lowest-priority bucket first.

        Returns the allocations that remain debited afterwards.
        """
        remaining_by_type: dict[LeaveType, int] = {}
        for alloc in allocations:
            remaining_by_type[alloc.leave_type] = remaining_by_type.get(alloc.leave_type, 0) + alloc.days

        to_release = min(days, sum(remaining_by_type.values()))
        for leave_type in _RELEASE_ORDER:
            if to_release == 0:
                break
            held = remaining_by_type.get(leave_type, 0)
            release = min(held, to_release)
            if release == 0:
                continue
            if leave_type not in UNPAID_TYPES:
                await BalanceLedger.restore(
                    db, user_id, leave_type, year, release,
                    reason=reason, actor_id=actor_id, leave_id=leave_id, policy=policy,
                )
            remaining_by_type[leave_type] = held - release
            to_release -= release

        # Preserve the original ordering of the plan
        kept: list[Allocation] = []
        for alloc in allocations:
            left = remaining_by_type.get(alloc.leave_type, 0)
            if left > 0:
                kept.append(Allocation(leave_type=alloc.leave_type, days=left))
                remaining_by_type[alloc.leave_type] = 0
        return tuple(kept)

    # ─────────────────────────────────────────────────────────────────
    # Overflow
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def apply_el_overflow(
        db: AsyncSession,
        user_id: uuid.UUID,
        year: int,
        *,
        reason: str,
        actor_id: Optional[uuid.UUID] = None,
        policy: LeavePolicy = DEFAULT_POLICY,
    ) -> OverflowResult:
        """Move EARNED days above the carry cap into SPECIAL, up to its headroom.

        If SPECIAL is full the excess stays in EARNED and nothing moves.
        """
        el = await BalanceLedger.get_balance(db, user_id, LeaveType.earned, year)
        if el is None:
            return OverflowResult(overflow_applied=False)

        _recompute(el)
        if el.closing <= policy.el_cap:
            return OverflowResult(overflow_applied=False, el_closing=el.closing)

        special = await BalanceLedger.get_balance(db, user_id, LeaveType.special, year)
        special_closing = special.closing if special is not None else 0
        headroom = max(0, policy.special_cap - special_closing)
        excess = el.closing - policy.el_cap
        transferred = min(excess, headroom)

        if transferred == 0:
            logger.warning(
                "EL overflow for user %s year %s blocked: SPECIAL at capacity (%s excess days kept)",
                user_id, year, excess,
            )
            return OverflowResult(
                overflow_applied=False,
                headroom=0,
                el_closing=el.closing,
                special_closing=special_closing,
            )

        if special is None:
            special = await BalanceLedger.get_or_create(db, user_id, LeaveType.special, year)

        before = {"earned": el.snapshot(), "special": special.snapshot()}
        el.accrued -= transferred
        special.accrued += transferred
        _recompute(el)
        _recompute(special)
        await db.flush()

        await create_audit_entry(
            db,
            action=AuditAction.el_overflow_to_special,
            entity_type="leave_balance",
            entity_id=el.id,
            actor_id=actor_id,
            old_values=before,
            new_values={
                "earned": el.snapshot(),
                "special": special.snapshot(),
                "transferred": transferred,
                "reason": reason,
            },
        )
        logger.info(
            "EL overflow: moved %s day(s) to SPECIAL for user %s (%s)",
            transferred, user_id, reason,
        )
        return OverflowResult(
            overflow_applied=True,
            transferred=transferred,
            headroom=headroom,
            el_closing=el.closing,
            special_closing=special.closing,
        )
