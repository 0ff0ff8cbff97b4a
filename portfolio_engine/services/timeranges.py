"""Time-range filtering and bucketing of historical series for charting."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, timedelta
from enum import Enum

from portfolio_engine.dates import today_utc
from portfolio_engine.models import ASSET_TYPES
from portfolio_engine.schemas import HistoricalDataPoint

_ALLOCATION_TOLERANCE = 0.01


class TimeRange(str, Enum):
    FIVE_DAYS = "5d"
    ONE_MONTH = "1m"
    SIX_MONTHS = "6m"
    YEAR_TO_DATE = "ytd"
    ONE_YEAR = "1y"
    FIVE_YEARS = "5y"
    ALL = "all"


class Granularity(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


_GRANULARITY = {
    TimeRange.FIVE_DAYS: Granularity.DAY,
    TimeRange.ONE_MONTH: Granularity.WEEK,
    TimeRange.SIX_MONTHS: Granularity.MONTH,
    TimeRange.YEAR_TO_DATE: Granularity.MONTH,
    TimeRange.ONE_YEAR: Granularity.MONTH,
    TimeRange.FIVE_YEARS: Granularity.QUARTER,
    TimeRange.ALL: Granularity.YEAR,
}

_LOOKBACK_DAYS = {
    TimeRange.FIVE_DAYS: 5,
    TimeRange.ONE_MONTH: 30,
    TimeRange.SIX_MONTHS: 6 * 30,
    TimeRange.ONE_YEAR: 365,
    TimeRange.FIVE_YEARS: 5 * 365,
}


def range_start(time_range: TimeRange | str, today: date | None = None) -> date | None:
    """First date included by ``time_range``; ``None`` means unbounded."""

    time_range = TimeRange(time_range)
    today = today or today_utc()
    if time_range == TimeRange.ALL:
        return None
    if time_range == TimeRange.YEAR_TO_DATE:
        return date(today.year, 1, 1)
    return today - timedelta(days=_LOOKBACK_DAYS[time_range])


def filter_by_time_range(
    points: Sequence[HistoricalDataPoint],
    time_range: TimeRange | str,
    today: date | None = None,
) -> list[HistoricalDataPoint]:
    start = range_start(time_range, today)
    if start is None:
        return list(points)
    return [point for point in points if point.date >= start]


def bucket_start(day: date, granularity: Granularity) -> date:
    if granularity == Granularity.DAY:
        return day
    if granularity == Granularity.WEEK:
        # Weeks start on Sunday.
        return day - timedelta(days=(day.weekday() + 1) % 7)
    if granularity == Granularity.MONTH:
        return day.replace(day=1)
    if granularity == Granularity.QUARTER:
        return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)
    return date(day.year, 1, 1)


def _next_bucket(start: date, granularity: Granularity) -> date:
    if granularity == Granularity.DAY:
        return start + timedelta(days=1)
    if granularity == Granularity.WEEK:
        return start + timedelta(days=7)
    if granularity == Granularity.YEAR:
        return date(start.year + 1, 1, 1)
    months = 1 if granularity == Granularity.MONTH else 3
    month_index = start.month - 1 + months
    return date(start.year + month_index // 12, month_index % 12 + 1, 1)


def _average(points: Sequence[HistoricalDataPoint], attribute: str) -> dict[str, float]:
    return {
        asset_type: sum(getattr(point, attribute).get(asset_type, 0.0) for point in points) / len(points)
        for asset_type in ASSET_TYPES
    }


def _normalize(allocations: dict[str, float]) -> dict[str, float]:
    total = sum(allocations.values())
    if total > 0 and abs(total - 100) > _ALLOCATION_TOLERANCE:
        return {asset_type: value / total * 100 for asset_type, value in allocations.items()}
    return allocations


def aggregate_by_time_range(
    points: Sequence[HistoricalDataPoint],
    time_range: TimeRange | str,
) -> list[HistoricalDataPoint]:
    """Collapse ``points`` into one point per bucket for ``time_range``.

    A bucket with data yields its last point, with values and allocations
    averaged over the bucket. A gap between the first and last point repeats
    the last known values, dated at the bucket start with a zero cost basis.
    """

    if not points:
        return []

    granularity = _GRANULARITY[TimeRange(time_range)]
    ordered = sorted(points, key=lambda point: point.date)
    grouped: dict[date, list[HistoricalDataPoint]] = {}
    for point in ordered:
        grouped.setdefault(bucket_start(point.date, granularity), []).append(point)

    aggregated: list[HistoricalDataPoint] = []
    last_known: HistoricalDataPoint | None = None
    current = bucket_start(ordered[0].date, granularity)
    final = bucket_start(ordered[-1].date, granularity)
    while current <= final:
        members = grouped.get(current)
        if members:
            last_known = members[-1].model_copy(
                update={
                    "asset_type_values": _average(members, "asset_type_values"),
                    "asset_type_allocations": _normalize(_average(members, "asset_type_allocations")),
                }
            )
            aggregated.append(last_known)
        elif last_known is not None:
            aggregated.append(
                last_known.model_copy(
                    update={
                        "date": current,
                        "asset_type_values": dict(last_known.asset_type_values),
                        "asset_type_allocations": dict(last_known.asset_type_allocations),
                        "cost_basis": 0.0,
                    }
                )
            )
        current = _next_bucket(current, granularity)
    return aggregated


__all__ = [
    "Granularity",
    "TimeRange",
    "aggregate_by_time_range",
    "bucket_start",
    "filter_by_time_range",
    "range_start",
]
