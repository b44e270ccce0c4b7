"""Leave-type conversion engine.

Splits a request that exceeds a type's per-request cap across further
balance types in a fixed priority order. Pure: the returned plan is
executed atomically by the ledger, never here.
"""

from __future__ import annotations

from typing import Mapping

from pydantic import BaseModel, ConfigDict

from leaveflow.common.constants import LeaveType
from leaveflow.common.exceptions import InsufficientBalanceError, ValidationError
from leaveflow.leave.policy import LeavePolicy

# Buckets after the primary type, highest priority first. The primary
# bucket is capped by ``policy.per_request_cap``; the rest by balance.
CONVERSION_PRIORITY: dict[LeaveType, tuple[LeaveType, ...]] = {
    LeaveType.medical: (LeaveType.earned, LeaveType.special, LeaveType.extraordinary),
    LeaveType.casual: (LeaveType.earned,),
    LeaveType.earned: (),
    LeaveType.special: (),
    LeaveType.extraordinary: (),
}

assert set(CONVERSION_PRIORITY) == set(LeaveType), "conversion priority must cover every leave type"

# Unpaid and uncapped; never backed by a balance row
UNPAID_TYPES: frozenset[LeaveType] = frozenset({LeaveType.extraordinary})


class Allocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    leave_type: LeaveType
    days: int

    @property
    def is_paid(self) -> bool:
        return self.leave_type not in UNPAID_TYPES


class ConversionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    requested_type: LeaveType
    requested_days: int
    allocations: tuple[Allocation, ...]
    requires_conversion: bool
    breakdown: str

    def days_for(self, leave_type: LeaveType) -> int:
        return sum(a.days for a in self.allocations if a.leave_type == leave_type)

    def as_json(self) -> list[dict]:
        return [{"leave_type": a.leave_type.value, "days": a.days} for a in self.allocations]


def _describe(allocations: tuple[Allocation, ...]) -> str:
    parts = []
    for alloc in allocations:
        label = alloc.leave_type.value.upper()
        suffix = " (unpaid)" if not alloc.is_paid else ""
        parts.append(f"{label}: {alloc.days} day{'s' if alloc.days != 1 else ''}{suffix}")
    return ", ".join(parts)


def plan_conversion(
    policy: LeavePolicy,
    leave_type: LeaveType,
    days: int,
    balances: Mapping[LeaveType, int],
) -> ConversionPlan:
    """Greedy allocation of ``days`` across the type's priority buckets.

    ``balances`` maps each type to its currently available days (missing
    types count as zero).

    Raises:
        ValidationError: ``invalid_days`` when days <= 0.
        InsufficientBalanceError: when a type without an unpaid fallback
            cannot be covered.
    """
    if days <= 0:
        raise ValidationError("invalid_days", details={"days": days}, field="days")

    remaining = days
    allocations: list[Allocation] = []

    # Primary bucket
    if leave_type in UNPAID_TYPES:
        allocations.append(Allocation(leave_type=leave_type, days=days))
        remaining = 0
    else:
        available = max(0, balances.get(leave_type, 0))
        cap = policy.per_request_cap.get(leave_type, days)
        take = min(remaining, cap, available)
        if take > 0:
            allocations.append(Allocation(leave_type=leave_type, days=take))
            remaining -= take

    # Fallback buckets
    for fallback in CONVERSION_PRIORITY[leave_type]:
        if remaining == 0:
            break
        if fallback in UNPAID_TYPES:
            take = remaining
        else:
            take = min(remaining, max(0, balances.get(fallback, 0)))
        if take > 0:
            allocations.append(Allocation(leave_type=fallback, days=take))
            remaining -= take

    if remaining > 0:
        raise InsufficientBalanceError(
            details={
                "leave_type": leave_type.value,
                "requested": days,
                "shortfall": remaining,
                "plan": [{"leave_type": a.leave_type.value, "days": a.days} for a in allocations],
                "balances": {k.value: v for k, v in balances.items()},
            },
        )

    frozen = tuple(allocations)
    return ConversionPlan(
        requested_type=leave_type,
        requested_days=days,
        allocations=frozen,
        requires_conversion=len(frozen) > 1,
        breakdown=_describe(frozen),
    )


def allocations_from_json(raw: list[dict] | None) -> tuple[Allocation, ...]:
    """Rebuild the allocation tuple stored on a LeaveRequest."""
    if not raw:
        return ()
    return tuple(
        Allocation(leave_type=LeaveType(item["leave_type"]), days=int(item["days"]))
        for item in raw
    )
