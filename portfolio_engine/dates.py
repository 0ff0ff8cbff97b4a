"""Calendar helpers. All dates are naive ``datetime.date`` values in UTC."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Iterator

ONE_DAY = timedelta(days=1)


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day from ``start`` to ``end`` inclusive."""

    current = start
    while current <= end:
        yield current
        current += ONE_DAY


def years_between(start: date, end: date, days_per_year: float = 365.25) -> float:
    return (end - start).days / days_per_year


def coerce_date(value: date | datetime | str) -> date:
    """Normalize a date, datetime (converted to UTC) or ISO string to a date."""

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


__all__ = ["ONE_DAY", "coerce_date", "iter_days", "today_utc", "years_between"]
