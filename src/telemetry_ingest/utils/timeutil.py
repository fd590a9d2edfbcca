from __future__ import annotations
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def years_before(value: datetime, years: int) -> datetime:
    """Calendar-year subtraction; Feb 29 falls back to Feb 28."""
    try:
        return value.replace(year=value.year - years)
    except ValueError:
        return value.replace(year=value.year - years, day=28)


def month_start(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def add_months(value: datetime, months: int) -> datetime:
    """First day of the month ``months`` after the month of ``value``."""
    idx = value.year * 12 + (value.month - 1) + months
    return datetime(idx // 12, idx % 12 + 1, 1)
