from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union


@dataclass(frozen=True)
class MonthBounds:
    start: date
    end: date


def normalize_period(value: Union[date, datetime]) -> date:
    """Truncate any date or datetime to the first day of its month."""
    if isinstance(value, datetime):
        value = value.date()
    return value.replace(day=1)


def next_period(period: date) -> date:
    first = normalize_period(period)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def previous_period(period: date) -> date:
    first = normalize_period(period)
    return normalize_period(first - date.resolution)


def month_bounds(period: Union[date, datetime]) -> MonthBounds:
    first = normalize_period(period)
    return MonthBounds(first, next_period(first) - date.resolution)


def parse_period(raw: Optional[str], *, today: Optional[date] = None) -> date:
    """Accept ``YYYY-MM``, ``YYYY-MM-DD`` or a full ISO timestamp."""
    today = today or date.today()
    if not raw:
        return normalize_period(today)
    raw = raw.strip()
    if len(raw) == 7:
        year_str, month_str = raw.split("-", 1)
        return date(int(year_str), int(month_str), 1)
    if len(raw) == 10:
        return normalize_period(date.fromisoformat(raw))
    return normalize_period(datetime.fromisoformat(raw))
