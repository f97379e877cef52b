from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationFailedError

EPOCH = date(1970, 1, 1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_bounds(value: date) -> tuple[date, date]:
    first = value.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return first, next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if period == "all":
        return Period("all", EPOCH, today)
    if period == "last_month":
        last_month_end = today.replace(day=1) - date.resolution
        first, last = month_bounds(last_month_end)
        return Period("last_month", first, last)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom":
        if not start or not end:
            raise ValidationFailedError("Custom period requires start and end dates")
        try:
            start_date = date.fromisoformat(start)
            end_date = date.fromisoformat(end)
        except ValueError as exc:
            raise ValidationFailedError("Dates must be ISO formatted") from exc
        if start_date > end_date:
            raise ValidationFailedError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period != "this_month":
        raise ValidationFailedError(f"Unknown period: {period}")

    first, last = month_bounds(today)
    return Period("this_month", first, last)
