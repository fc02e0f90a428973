from datetime import date, datetime

import pytest

from dates import (
    DateRange,
    InvalidDateError,
    add_months,
    days_in_month,
    is_last_day_of_month,
    months_between,
    parse_iso,
    shift_month,
)


def test_parse_iso_accepts_dates_and_timestamps():
    assert parse_iso("2025-03-12") == date(2025, 3, 12)
    assert parse_iso("2025-03-12T23:59:00Z") == date(2025, 3, 12)
    assert parse_iso(datetime(2025, 3, 12, 8, 30)) == date(2025, 3, 12)
    assert parse_iso(date(2025, 3, 12)) == date(2025, 3, 12)


@pytest.mark.parametrize("value", ["2025-02-30", "12/03/2025", "", "2025-3-1"])
def test_parse_iso_rejects_malformed(value):
    with pytest.raises(InvalidDateError):
        parse_iso(value)


def test_invalid_date_is_a_value_error():
    assert issubclass(InvalidDateError, ValueError)


def test_month_arithmetic_crosses_years():
    assert shift_month(2025, 12, 1) == (2026, 1)
    assert shift_month(2025, 1, -1) == (2024, 12)
    assert months_between(date(2024, 11, 30), date(2025, 2, 1)) == 3


def test_add_months_clamps_to_month_end():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert days_in_month(2024, 2) == 29
    assert is_last_day_of_month("2025-04-30")
    assert not is_last_day_of_month("2025-04-29")


def test_date_range_is_inclusive_and_restartable():
    days = DateRange.of("2025-01-30", "2025-02-02")

    assert list(days) == list(days)
    assert len(days) == 4
    assert "2025-02-01" in days
    assert date(2025, 2, 3) not in days


def test_empty_date_range():
    days = DateRange(date(2025, 1, 2), date(2025, 1, 1))
    assert days.is_empty()
    assert len(days) == 0
    assert list(days) == []
