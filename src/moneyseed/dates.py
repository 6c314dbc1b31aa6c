"""Calendar helpers pinned to Korea Standard Time.

Every "day" in MoneySeed (streaks, settlement windows, mission dates) is a KST
calendar date.  Timestamps are stored in UTC and bucketed into KST dates with
:func:`to_kst_date`.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from .exceptions import ValidationError

KST = timezone(timedelta(hours=9), name="KST")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(moment: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite drops tzinfo) and convert aware ones."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def to_kst_date(moment: datetime) -> date:
    return ensure_utc(moment).astimezone(KST).date()


def today_kst(clock: Clock = utc_now) -> date:
    return to_kst_date(clock())


def yesterday_kst(clock: Clock = utc_now) -> date:
    return add_days(today_kst(clock), -1)


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def days_between(start: date, end: date) -> int:
    """Number of calendar days from ``start`` to ``end`` (negative when reversed)."""

    return (end - start).days


def format_date(day: date) -> str:
    return day.isoformat()


def parse_date(value: str | date) -> date:
    """Parse a ``YYYY-MM-DD`` string."""

    if isinstance(value, datetime):
        return to_kst_date(value)
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError) as exc:
        raise ValidationError(f"Invalid date {value!r}; expected YYYY-MM-DD.") from exc


def is_weekday(day: date) -> bool:
    return day.weekday() < 5


def is_weekend(day: date) -> bool:
    return not is_weekday(day)


class RecurringPattern(str, Enum):
    """When a mission template fires."""

    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    WEEKLY_MON = "weekly_mon"
    WEEKLY_TUE = "weekly_tue"
    WEEKLY_WED = "weekly_wed"
    WEEKLY_THU = "weekly_thu"
    WEEKLY_FRI = "weekly_fri"
    WEEKLY_SAT = "weekly_sat"
    WEEKLY_SUN = "weekly_sun"


_WEEKLY = {
    RecurringPattern.WEEKLY_MON: 0,
    RecurringPattern.WEEKLY_TUE: 1,
    RecurringPattern.WEEKLY_WED: 2,
    RecurringPattern.WEEKLY_THU: 3,
    RecurringPattern.WEEKLY_FRI: 4,
    RecurringPattern.WEEKLY_SAT: 5,
    RecurringPattern.WEEKLY_SUN: 6,
}


def should_fire_on(day: date, pattern: RecurringPattern | str | None) -> bool:
    """Return ``True`` when a template with ``pattern`` produces a mission on ``day``."""

    if pattern is None:
        return True
    pattern = RecurringPattern(pattern)
    if pattern is RecurringPattern.DAILY:
        return True
    if pattern is RecurringPattern.WEEKDAYS:
        return is_weekday(day)
    if pattern is RecurringPattern.WEEKENDS:
        return is_weekend(day)
    return day.weekday() == _WEEKLY[pattern]


__all__ = [
    "KST",
    "Clock",
    "RecurringPattern",
    "add_days",
    "days_between",
    "ensure_utc",
    "format_date",
    "is_weekday",
    "is_weekend",
    "parse_date",
    "should_fire_on",
    "to_kst_date",
    "today_kst",
    "utc_now",
    "yesterday_kst",
]
