from dataclasses import dataclass
from datetime import date
from typing import Optional

from parsing import parse_date


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def this_month(today: date) -> Period:
    first = today.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    end_this = next_month - date.resolution
    return Period("this_month", first, end_this)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: date,
) -> Period:
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        last_month_start = last_month_end.replace(day=1)
        return Period("last_month", last_month_start, last_month_end)
    if period == "custom" or (not period and (start or end)):
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = parse_date(start)
        end_date = parse_date(end)
        if start_date > end_date:
            raise ValueError("Start date must not be after end date")
        return Period("custom", start_date, end_date)

    return this_month(today)


def resolve_period_or_default(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: date,
) -> tuple[Period, Optional[str]]:
    """Like :func:`resolve_period`, but fall back to the current month.

    The second element is the warning to show when the requested range was
    unusable.
    """
    try:
        return resolve_period(period, start, end, today=today), None
    except ValueError as exc:
        return this_month(today), str(exc)
