"""Conversion engine tests — priority order, caps, unpaid fallback."""

from __future__ import annotations

import pytest

from leaveflow.common.constants import LeaveType
from leaveflow.common.exceptions import ErrorKind, InsufficientBalanceError, ValidationError
from leaveflow.leave.conversion import (
    CONVERSION_PRIORITY,
    Allocation,
    allocations_from_json,
    plan_conversion,
)
from leaveflow.leave.policy import DEFAULT_POLICY

ML = LeaveType.medical
EL = LeaveType.earned
CL = LeaveType.casual
SL = LeaveType.special
EX = LeaveType.extraordinary


def _pairs(plan) -> list[tuple[LeaveType, int]]:
    return [(a.leave_type, a.days) for a in plan.allocations]


class TestMedicalConversion:

    def test_twenty_days_with_short_balances(self):
        plan = plan_conversion(DEFAULT_POLICY, ML, 20, {ML: 14, EL: 4, SL: 0})

        assert _pairs(plan) == [(ML, 14), (EL, 4), (EX, 2)]
        assert plan.requires_conversion is True
        assert plan.days_for(EX) == 2
        assert plan.breakdown == "MEDICAL: 14 days, EARNED: 4 days, EXTRAORDINARY: 2 days (unpaid)"

    def test_exactly_at_cap_needs_no_conversion(self):
        plan = plan_conversion(DEFAULT_POLICY, ML, 14, {ML: 14})
        assert _pairs(plan) == [(ML, 14)]
        assert plan.requires_conversion is False

    def test_one_over_cap_uses_special_before_extraordinary(self):
        plan = plan_conversion(DEFAULT_POLICY, ML, 15, {ML: 20, EL: 0, SL: 5})
        assert _pairs(plan) == [(ML, 14), (SL, 1)]

    def test_cap_applies_even_with_large_balance(self):
        plan = plan_conversion(DEFAULT_POLICY, ML, 16, {ML: 30, EL: 30})
        assert _pairs(plan) == [(ML, 14), (EL, 2)]

    def test_empty_ledger_falls_through_to_unpaid(self):
        plan = plan_conversion(DEFAULT_POLICY, ML, 3, {})
        assert _pairs(plan) == [(EX, 3)]

    def test_allocations_sum_to_requested_days(self):
        plan = plan_conversion(DEFAULT_POLICY, ML, 40, {ML: 14, EL: 10, SL: 6})
        assert sum(a.days for a in plan.allocations) == 40
        assert plan.days_for(EX) == 10


class TestCasualConversion:

    def test_within_cap_single_bucket(self):
        plan = plan_conversion(DEFAULT_POLICY, CL, 2, {CL: 10})
        assert _pairs(plan) == [(CL, 2)]
        assert plan.requires_conversion is False

    def test_over_cap_spills_into_earned(self):
        plan = plan_conversion(DEFAULT_POLICY, CL, 5, {CL: 10, EL: 5})
        assert _pairs(plan) == [(CL, 3), (EL, 2)]

    def test_over_cap_without_earned_is_refused(self):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            plan_conversion(DEFAULT_POLICY, CL, 5, {CL: 3, EL: 0})

        exc = exc_info.value
        assert exc.kind == ErrorKind.INSUFFICIENT_BALANCE
        assert exc.details["shortfall"] == 2
        assert exc.details["plan"] == [{"leave_type": "casual", "days": 3}]

    def test_no_unpaid_fallback(self):
        assert EX not in CONVERSION_PRIORITY[CL]


class TestOtherTypes:

    def test_earned_has_no_fallback(self):
        with pytest.raises(InsufficientBalanceError):
            plan_conversion(DEFAULT_POLICY, EL, 5, {EL: 3})

    def test_extraordinary_needs_no_balance(self):
        plan = plan_conversion(DEFAULT_POLICY, EX, 10, {})
        assert _pairs(plan) == [(EX, 10)]
        assert plan.allocations[0].is_paid is False

    def test_negative_balance_counts_as_zero(self):
        plan = plan_conversion(DEFAULT_POLICY, ML, 2, {ML: -3, EL: 5})
        assert _pairs(plan) == [(EL, 2)]

    @pytest.mark.parametrize("days", [0, -1])
    def test_non_positive_days_rejected(self, days):
        with pytest.raises(ValidationError) as exc_info:
            plan_conversion(DEFAULT_POLICY, EL, days, {EL: 10})
        assert exc_info.value.code == "invalid_days"

    def test_every_type_has_a_priority_entry(self):
        assert set(CONVERSION_PRIORITY) == set(LeaveType)

    def test_stored_allocations_rebuild(self):
        plan = plan_conversion(DEFAULT_POLICY, CL, 4, {CL: 10, EL: 5})
        assert allocations_from_json(plan.as_json()) == plan.allocations
        assert allocations_from_json(None) == ()
        assert allocations_from_json([{"leave_type": "earned", "days": "2"}]) == (
            Allocation(leave_type=EL, days=2),
        )
