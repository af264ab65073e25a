from datetime import date, datetime

import pytest

from periods import month_bounds, next_period, normalize_period, parse_period, previous_period


def test_normalize_period_drops_day_and_time() -> None:
    assert normalize_period(datetime(2025, 3, 17, 14, 30)) == date(2025, 3, 1)
    assert normalize_period(date(2025, 3, 31)) == date(2025, 3, 1)


def test_month_bounds_handle_year_end_and_leap_years() -> None:
    assert month_bounds(date(2025, 12, 9)).end == date(2025, 12, 31)
    assert month_bounds(date(2024, 2, 10)).end == date(2024, 2, 29)
    bounds = month_bounds(datetime(2025, 3, 17, 14, 30))
    assert (bounds.start, bounds.end) == (date(2025, 3, 1), date(2025, 3, 31))


def test_adjacent_periods_wrap_years() -> None:
    assert next_period(date(2025, 12, 20)) == date(2026, 1, 1)
    assert previous_period(date(2025, 1, 20)) == date(2024, 12, 1)


def test_parse_period_formats() -> None:
    today = date(2025, 7, 19)
    assert parse_period(None, today=today) == date(2025, 7, 1)
    assert parse_period("2025-03", today=today) == date(2025, 3, 1)
    assert parse_period("2025-03-17", today=today) == date(2025, 3, 1)
    assert parse_period("2025-03-17T14:30:00", today=today) == date(2025, 3, 1)
    with pytest.raises(ValueError):
        parse_period("2025-13", today=today)
