"""Helpers for hour/day bucketing and query windows in a civil time zone."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Final

ONE_MILLISECOND: Final[timedelta] = timedelta(milliseconds=1)
RANGE_KEYS: Final[tuple[str, ...]] = ("1w", "1m", "3m", "1y")
DEFAULT_RANGE: Final[str] = "1m"

_RANGE_MONTHS: Final[dict[str, int]] = {"1m": 1, "3m": 3, "1y": 12}


@dataclass(frozen=True)
class DateRange:
    """Container representing a closed ``[start, end]`` instant range."""

    start: datetime
    end: datetime


def localise(instant: datetime, tz: tzinfo) -> datetime:
    """Attach ``tz`` to naive datetimes and convert aware ones into ``tz``."""

    if instant.tzinfo is None:
        return instant.replace(tzinfo=tz)
    return instant.astimezone(tz)


def bucket_to_hour(instant: datetime, tz: tzinfo) -> datetime:
    """Truncate ``instant`` to the start of its containing civil hour in ``tz``."""

    return localise(instant, tz).replace(minute=0, second=0, microsecond=0)


def civil_date(instant: datetime, tz: tzinfo) -> date:
    """Return the calendar day ``instant`` falls on in ``tz``."""

    return localise(instant, tz).date()


def day_window(day: date, tz: tzinfo) -> DateRange:
    """Return ``[00:00, 23:59:59.999]`` of ``day`` in ``tz``."""

    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    return DateRange(start=start, end=start + timedelta(hours=24) - ONE_MILLISECOND)


def range_window(range_key: str, now: datetime, tz: tzinfo) -> DateRange:
    """Return the history window for ``range_key`` ending at the close of today.

    ``1w`` goes back seven days; ``1m``/``3m``/``1y`` go back whole calendar
    months (clamped to month end). The start is aligned to midnight.
    """

    if range_key not in RANGE_KEYS:
        raise ValueError(f"range must be one of: {', '.join(RANGE_KEYS)}")
    today = civil_date(now, tz)
    if range_key == "1w":
        first_day = today - timedelta(days=7)
    else:
        first_day = _shift_months(today, -_RANGE_MONTHS[range_key])
    return DateRange(start=day_window(first_day, tz).start, end=day_window(today, tz).end)


def to_storage(instant: datetime) -> datetime:
    """Convert an aware datetime into the naive UTC form the backends persist."""

    if instant.tzinfo is None:
        raise ValueError("Refusing to store a naive datetime; bucket it first")
    return instant.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: datetime) -> datetime:
    """Re-attach UTC to a datetime read back from a backend."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _shift_months(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    last = _end_of_month(date(year, month + 1, 1))
    return date(year, month + 1, min(day.day, last.day))


def _end_of_month(day: date) -> date:
    """Return the last day of the month for ``day``."""

    if day.month == 12:
        return date(day.year, 12, 31)
    first_next_month = date(day.year, day.month + 1, 1)
    return first_next_month - timedelta(days=1)


__all__ = [
    "DEFAULT_RANGE",
    "RANGE_KEYS",
    "DateRange",
    "bucket_to_hour",
    "civil_date",
    "day_window",
    "from_storage",
    "localise",
    "range_window",
    "to_storage",
]
