"""Calendar helpers shared by the recurrence, invoice and balance code.

Every day is handled as a naive ``datetime.date`` and serialized as
``YYYY-MM-DD``. "Today" is resolved in the configured local time zone so the
client never drifts a day against stored records.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings


DayLike = Union[date, str]

_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")


class InvalidDateError(ValueError):
    pass


def parse_iso(value: DayLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise InvalidDateError(f"Expected an ISO date, got {type(value).__name__}")
    match = _ISO_RE.match(value.strip())
    if not match:
        raise InvalidDateError(f"Malformed date: {value!r}")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidDateError(f"Malformed date: {value!r}") from exc


def to_iso(value: DayLike) -> str:
    return parse_iso(value).isoformat()


def local_today(timezone: Optional[str] = None) -> date:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).date()


def today_iso(timezone: Optional[str] = None) -> str:
    return local_today(timezone).isoformat()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    return date(year, month, days_in_month(year, month))


def add_days(value: DayLike, days: int) -> date:
    return parse_iso(value) + timedelta(days=days)


def shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total_months = month - 1 + months
    return year + total_months // 12, total_months % 12 + 1


def clamped_date(year: int, month: int, day: int) -> date:
    """Build a date, pulling days past the month's end back to its last day."""
    return date(year, month, min(day, days_in_month(year, month)))


def add_months(value: DayLike, months: int) -> date:
    base = parse_iso(value)
    year, month = shift_month(base.year, base.month, months)
    return clamped_date(year, month, base.day)


def add_years(value: DayLike, years: int) -> date:
    return add_months(value, 12 * years)


def months_between(start: DayLike, end: DayLike) -> int:
    a = parse_iso(start)
    b = parse_iso(end)
    return (b.year - a.year) * 12 + (b.month - a.month)


def is_same_day_of_month(base: DayLike, test: DayLike, month_interval: int) -> bool:
    base_day = parse_iso(base)
    test_day = parse_iso(test)
    if base_day.day != test_day.day:
        return False
    return months_between(base_day, test_day) % month_interval == 0


def is_last_day_of_month(value: DayLike) -> bool:
    day = parse_iso(value)
    return day.day == days_in_month(day.year, day.month)


@dataclass(frozen=True)
class DateRange:
    """Inclusive, restartable range of days."""

    start: date
    end: date

    @classmethod
    def of(cls, start: DayLike, end: DayLike) -> "DateRange":
        return cls(parse_iso(start), parse_iso(end))

    def __iter__(self) -> Iterator[date]:
        current = self.start
        step = timedelta(days=1)
        while current <= self.end:
            yield current
            current += step

    def __len__(self) -> int:
        return max(0, (self.end - self.start).days + 1)

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, (date, str)):
            return False
        day = parse_iso(value)
        return self.start <= day <= self.end

    def is_empty(self) -> bool:
        return self.end < self.start


def date_range(start: DayLike, end: DayLike) -> DateRange:
    return DateRange.of(start, end)
