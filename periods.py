from datetime import date, datetime
from typing import Optional, Union

DateLike = Union[date, datetime]


def as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def month_start(value: DateLike) -> date:
    return as_date(value).replace(day=1)


def add_months(value: DateLike, count: int) -> date:
    d = as_date(value)
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def same_day(a: DateLike, b: DateLike) -> bool:
    return as_date(a) == as_date(b)


def same_month(a: DateLike, b: DateLike) -> bool:
    a_date, b_date = as_date(a), as_date(b)
    return (a_date.year, a_date.month) == (b_date.year, b_date.month)


def parse_month(value: Optional[str], *, today: Optional[date] = None) -> date:
    """Parse ``YYYY-MM`` (or a full ISO date) into the first day of that month."""
    if not value:
        return month_start(today or date.today())
    value = value.strip()
    try:
        if len(value) == 7:
            year, month = value.split("-")
            return date(int(year), int(month), 1)
        return month_start(date.fromisoformat(value))
    except ValueError as exc:
        raise ValueError(f"Invalid month: {value}") from exc


def parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid day: {value}") from exc
