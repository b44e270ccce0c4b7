"""Working-days calculator.

Every date the engine compares goes through ``normalize_date`` first so
that timestamps arriving in UTC never shift a leave across midnight in
the organisation's local timezone.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import AbstractSet, Iterable, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.exceptions import ValidationError
from leaveflow.config import settings
from leaveflow.leave.models import Holiday

DateLike = Union[date, datetime]


def _zone(tz: Optional[str]) -> ZoneInfo:
    return ZoneInfo(tz or settings.TIMEZONE)


def normalize_date(value: DateLike, tz: Optional[str] = None) -> date:
    """Collapse a date or datetime to the local calendar day.

    Naive datetimes are taken as already local; aware ones are converted.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(_zone(tz))
        return value.date()
    return value


def local_today(tz: Optional[str] = None) -> date:
    return datetime.now(_zone(tz)).date()


def default_weekend() -> frozenset[int]:
    return settings.weekend_days


def is_non_working_day(
    day: date,
    holidays: AbstractSet[date],
    weekend: Optional[AbstractSet[int]] = None,
) -> bool:
    weekend = default_weekend() if weekend is None else weekend
    return day.isoweekday() in weekend or day in holidays


def _iter_days(start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def count_working_days(
    start: DateLike,
    end: DateLike,
    holidays: AbstractSet[date] = frozenset(),
    weekend: Optional[AbstractSet[int]] = None,
) -> int:
    """Inclusive count of days in [start, end] that are neither weekend nor holiday.

    Raises:
        ValidationError: ``invalid_dates`` when end precedes start.
    """
    start_day = normalize_date(start)
    end_day = normalize_date(end)
    if end_day < start_day:
        raise ValidationError(
            "invalid_dates",
            details={"start_date": start_day.isoformat(), "end_date": end_day.isoformat()},
            field="end_date",
        )
    return sum(
        1
        for day in _iter_days(start_day, end_day)
        if not is_non_working_day(day, holidays, weekend)
    )


def working_days_between(
    earlier: DateLike,
    later: DateLike,
    holidays: AbstractSet[date] = frozenset(),
    weekend: Optional[AbstractSet[int]] = None,
) -> int:
    """Working days strictly after ``earlier`` up to and including ``later``.

    Used for notice periods; returns 0 when ``later`` is not after ``earlier``.
    """
    earlier_day = normalize_date(earlier)
    later_day = normalize_date(later)
    if later_day <= earlier_day:
        return 0
    return count_working_days(earlier_day + timedelta(days=1), later_day, holidays, weekend)


def touches_non_working_day(
    start: DateLike,
    end: DateLike,
    holidays: AbstractSet[date] = frozenset(),
    weekend: Optional[AbstractSet[int]] = None,
) -> bool:
    """True if the range, or the day either side of it, is a weekend or holiday."""
    start_day = normalize_date(start)
    end_day = normalize_date(end)
    window = _iter_days(start_day - timedelta(days=1), end_day + timedelta(days=1))
    return any(is_non_working_day(day, holidays, weekend) for day in window)


async def load_holidays(db: AsyncSession, start: date, end: date) -> frozenset[date]:
    """Mandatory holidays in [start, end]. Optional holidays stay working days."""
    result = await db.execute(
        select(Holiday.date).where(
            Holiday.date >= start,
            Holiday.date <= end,
            Holiday.is_optional.is_(False),
        )
    )
    return frozenset(result.scalars().all())
