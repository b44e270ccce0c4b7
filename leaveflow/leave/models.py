"""Leave ORM models: LeaveRequest, Approval, LeaveBalance, Holiday."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from leaveflow.common.constants import (
    ApprovalDecision,
    ApprovalFlow,
    LeaveStatus,
    LeaveType,
    UserRole,
)
from leaveflow.database import Base


# ── Leave Request ───────────────────────────────────────────────────

class LeaveRequest(Base):
    """One leave application. Never deleted, only transitioned.

    Approval rows point back here by ``leave_id``; this row holds no
    reference to them.
    """

    __tablename__ = "leave_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    leave_type: Mapped[LeaveType] = mapped_column(
        sa.Enum(LeaveType, name="leave_type"), nullable=False,
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    working_days: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[LeaveStatus] = mapped_column(
        sa.Enum(LeaveStatus, name="leave_status"),
        nullable=False,
        default=LeaveStatus.submitted,
    )
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    policy_version: Mapped[str] = mapped_column(sa.String(20), nullable=False)

    # Certificates (opaque references)
    certificate_url: Mapped[Optional[str]] = mapped_column(sa.String(500))
    fitness_certificate_url: Mapped[Optional[str]] = mapped_column(sa.String(500))

    # Cancellation metadata
    cancellation_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    is_partial_cancellation: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False,
    )
    cancellation_end_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    original_end_date: Mapped[Optional[date]] = mapped_column(sa.Date)

    # Duty return / overstay
    return_confirmed: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False,
    )
    overstay_flagged_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )

    # Executed debit plan: [{"leave_type": "medical", "days": 14}, ...]
    allocations = sa.Column(JSONB, nullable=True)
    # Days taken before a recall; they stay debited for good
    consumed_allocations = sa.Column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.text("NOW()")
    )

    __table_args__ = (
        sa.CheckConstraint("end_date >= start_date", name="ck_leave_requests_dates"),
        sa.CheckConstraint("working_days > 0", name="ck_leave_requests_working_days"),
        sa.Index("ix_leave_requests_requester", "requester_id", "start_date"),
        sa.Index("ix_leave_requests_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<LeaveRequest {self.leave_type.value} {self.start_date}..{self.end_date}"
            f" {self.status.value}>"
        )


# ── Approval ────────────────────────────────────────────────────────

class Approval(Base):
    """One resolved chain step. Forwarding appends a row, never rewrites one."""

    __tablename__ = "approvals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    leave_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("leave_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    step: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    flow: Mapped[ApprovalFlow] = mapped_column(
        sa.Enum(ApprovalFlow, name="approval_flow"),
        nullable=False,
        default=ApprovalFlow.request,
    )
    chain_position: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    approver_role: Mapped[UserRole] = mapped_column(
        sa.Enum(UserRole, name="user_role"), nullable=False,
    )
    approver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"),
    )
    decision: Mapped[ApprovalDecision] = mapped_column(
        sa.Enum(ApprovalDecision, name="approval_decision"),
        nullable=False,
        default=ApprovalDecision.pending,
    )
    to_role: Mapped[Optional[UserRole]] = mapped_column(
        sa.Enum(UserRole, name="user_role"),
    )
    comment: Mapped[Optional[str]] = mapped_column(sa.Text)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"),
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.text("NOW()")
    )

    __table_args__ = (
        sa.UniqueConstraint("leave_id", "step", name="uq_approvals_leave_step"),
        sa.Index("ix_approvals_leave_decision", "leave_id", "decision"),
    )


# ── Balance ─────────────────────────────────────────────────────────

class LeaveBalance(Base):
    """Per (user, type, year) ledger row.

    ``closing`` is derived (opening + accrued − used) and rewritten by the
    ledger after every mutation; never read it as a source of truth.
    """

    __tablename__ = "leave_balances"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    leave_type: Mapped[LeaveType] = mapped_column(
        sa.Enum(LeaveType, name="leave_type"), nullable=False,
    )
    year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    opening: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    accrued: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    used: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    closing: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.text("NOW()")
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "user_id", "leave_type", "year", name="uq_leave_balances_user_type_year",
        ),
        sa.CheckConstraint("used >= 0", name="ck_leave_balances_used"),
    )

    @property
    def available(self) -> int:
        return self.opening + self.accrued - self.used

    def snapshot(self) -> dict:
        return {
            "leave_type": self.leave_type.value,
            "year": self.year,
            "opening": self.opening,
            "accrued": self.accrued,
            "used": self.used,
            "closing": self.closing,
        }


# ── Holiday ─────────────────────────────────────────────────────────

class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    date: Mapped[date] = mapped_column(sa.Date, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    is_optional: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False,
    )
