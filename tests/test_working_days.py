"""Working-days calculator tests — weekends, holidays, timezone normalisation."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.exceptions import ValidationError
from leaveflow.leave.working_days import (
    count_working_days,
    is_non_working_day,
    load_holidays,
    normalize_date,
    touches_non_working_day,
    working_days_between,
)
from tests.conftest import _seed_holiday

# 2026-11-01 is a Sunday; the default weekend is Friday + Saturday
SUN = date(2026, 11, 1)
MON = date(2026, 11, 2)
TUE = date(2026, 11, 3)
WED = date(2026, 11, 4)
FRI = date(2026, 11, 6)
SAT = date(2026, 11, 7)


class TestCountWorkingDays:

    def test_full_week_counts_sunday_to_thursday(self):
        assert count_working_days(SUN, SAT) == 5

    def test_single_working_day(self):
        assert count_working_days(MON, MON) == 1

    def test_weekend_only_range_is_zero(self):
        assert count_working_days(FRI, SAT) == 0

    def test_holiday_excluded(self):
        assert count_working_days(SUN, SAT, frozenset({TUE})) == 4

    def test_holiday_on_weekend_not_double_counted(self):
        assert count_working_days(SUN, SAT, frozenset({FRI})) == 5

    def test_custom_weekend(self):
        # Saturday + Sunday weekend: Mon 2 .. Sun 8 has five working days
        assert count_working_days(MON, date(2026, 11, 8), weekend=frozenset({6, 7})) == 5

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            count_working_days(WED, MON)
        assert exc_info.value.code == "invalid_dates"

    def test_spans_month_boundary(self):
        # Thu 29 Oct .. Tue 3 Nov: Thu, Sun, Mon, Tue
        assert count_working_days(date(2026, 10, 29), TUE) == 4


class TestNormalisation:

    def test_aware_datetime_uses_local_calendar_day(self):
        # 20:00 UTC on 1 Nov is 02:00 on 2 Nov in Dhaka
        stamp = datetime(2026, 11, 1, 20, 0, tzinfo=timezone.utc)
        assert normalize_date(stamp) == MON

    def test_naive_datetime_taken_as_local(self):
        assert normalize_date(datetime(2026, 11, 1, 23, 59)) == SUN

    def test_plain_date_unchanged(self):
        assert normalize_date(WED) == WED

    def test_utc_timestamp_counts_in_local_day(self):
        start = datetime(2026, 11, 1, 19, 0, tzinfo=timezone.utc)  # Mon 01:00 local
        assert count_working_days(start, TUE) == 2


class TestNoticeAndAdjacency:

    def test_working_days_between_excludes_start(self):
        # Mon 19 Oct → Mon 26 Oct: Tue, Wed, Thu, Sun, Mon
        assert working_days_between(date(2026, 10, 19), date(2026, 10, 26)) == 5

    def test_working_days_between_same_day_is_zero(self):
        assert working_days_between(MON, MON) == 0

    def test_working_days_between_reversed_is_zero(self):
        assert working_days_between(WED, MON) == 0

    def test_midweek_range_does_not_touch_weekend(self):
        assert touches_non_working_day(MON, TUE) is False

    def test_range_after_saturday_touches_weekend(self):
        assert touches_non_working_day(SUN, MON) is True

    def test_range_next_to_holiday_touches(self):
        assert touches_non_working_day(MON, TUE, frozenset({WED})) is True

    def test_is_non_working_day(self):
        assert is_non_working_day(FRI, frozenset()) is True
        assert is_non_working_day(MON, frozenset()) is False
        assert is_non_working_day(MON, frozenset({MON})) is True


class TestLoadHolidays:

    async def test_optional_holidays_stay_working_days(self, db: AsyncSession):
        await _seed_holiday(db, TUE, name="Mandatory")
        await _seed_holiday(db, WED, name="Optional", is_optional=True)
        await _seed_holiday(db, date(2026, 12, 16), name="Out of range")

        holidays = await load_holidays(db, SUN, SAT)

        assert holidays == frozenset({TUE})
        assert count_working_days(SUN, SAT, holidays) == 4
