from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

EPOCH = date(1970, 1, 1)

# Account chart ranges, in days back from today; None means all history.
CHART_RANGES: dict[str, Optional[int]] = {
    "7D": 7,
    "1M": 30,
    "3M": 90,
    "6M": 180,
    "ALL": None,
}


@dataclass(frozen=True)
class Period:
    """Half-open date range ``[start, end)``."""

    slug: str
    start: date
    end: date

    def __contains__(self, day: date) -> bool:
        return self.start <= day < self.end


def month_period(day: date) -> Period:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return Period("this_month", first, next_month)


def chart_period(range_key: str, *, today: Optional[date] = None) -> Period:
    today = today or date.today()
    key = (range_key or "1M").upper()
    if key not in CHART_RANGES:
        raise ValueError(f"Unknown chart range: {range_key}")
    days = CHART_RANGES[key]
    start = EPOCH if days is None else today - timedelta(days=days)
    return Period(key, start, today + timedelta(days=1))


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "all":
        return Period("all", EPOCH, today + timedelta(days=1))
    if period == "last_month":
        this_month = month_period(today)
        last_month = month_period(this_month.start - timedelta(days=1))
        return Period("last_month", last_month.start, last_month.end)
    if period == "custom" or (not period and (start or end)):
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date >= end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period.upper() in CHART_RANGES:
        return chart_period(period, today=today)
    return month_period(today)
