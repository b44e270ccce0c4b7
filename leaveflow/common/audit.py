"""Audit trail model and async helpers for recording engine actions.

The engine only produces audit rows; storage and retention are the
sink's concern. Sweeps additionally use the trail as their idempotence
ledger via the ``period`` column.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    String,
    UniqueConstraint,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from leaveflow.common.constants import AuditAction
from leaveflow.database import Base


# ── Immutable audit-trail table ─────────────────────────────────────

class AuditTrail(Base):
    """Immutable log of every state-affecting action."""

    __tablename__ = "audit_trail"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False,
    )
    # Sweep period ("2026-03", "2026", or an ISO date); NULL for ad-hoc actions
    period: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    old_values = Column(JSONB, nullable=True)
    new_values = Column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("NOW()"),
    )

    __table_args__ = (
        UniqueConstraint("action", "entity_id", "period", name="uq_audit_trail_period"),
        Index("ix_audit_trail_actor_id", "actor_id"),
        Index("ix_audit_trail_entity", "entity_type", "entity_id"),
        Index("ix_audit_trail_action", "action"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditTrail {self.action} {self.entity_type}"
            f"/{self.entity_id} by {self.actor_id}>"
        )


# ── Helpers ─────────────────────────────────────────────────────────

async def create_audit_entry(
    session: AsyncSession,
    *,
    action: AuditAction | str,
    entity_type: str,
    entity_id: uuid.UUID,
    actor_id: Optional[uuid.UUID] = None,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
    period: Optional[str] = None,
) -> AuditTrail:
    """
    Create and flush an audit-trail entry.

    Args:
        session: Async SQLAlchemy session.
        action: One of ``AuditAction``.
        entity_type: "leave_request", "leave_balance" or "user".
        entity_id: UUID of the affected entity.
        actor_id: UUID of the user performing the action (None for sweeps).
        old_values: Before-state snapshot.
        new_values: After-state snapshot plus action details.
        period: Sweep period key, used for idempotence.
    """
    entry = AuditTrail(
        actor_id=actor_id,
        action=action.value if isinstance(action, AuditAction) else action,
        entity_type=entity_type,
        entity_id=entity_id,
        period=period,
        old_values=_jsonable(old_values),
        new_values=_jsonable(new_values),
    )
    session.add(entry)
    await session.flush()
    return entry


async def audit_event_exists(
    session: AsyncSession,
    *,
    action: AuditAction,
    entity_id: uuid.UUID,
    period: str,
) -> bool:
    """True when ``action`` was already recorded for ``entity_id`` in ``period``."""
    result = await session.execute(
        select(AuditTrail.id).where(
            AuditTrail.action == action.value,
            AuditTrail.entity_id == entity_id,
            AuditTrail.period == period,
        ).limit(1)
    )
    return result.first() is not None


def _jsonable(values: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Coerce enums, dates, UUIDs and Decimals so the dict fits a JSON column."""
    if values is None:
        return None

    def _coerce(value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): _coerce(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_coerce(v) for v in value]
        if isinstance(value, (str, int, float, bool)) or value is None:
            if isinstance(value, str) and hasattr(value, "value"):
                return value.value
            return value
        if hasattr(value, "isoformat"):
            return value.isoformat()
        if hasattr(value, "value"):
            return value.value
        return str(value)

    return _coerce(values)
