"""UTC helpers shared by services and models."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> datetime | None:
    """Parse vendor ISO-8601 timestamps (``Z`` suffix included)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def quarter_of(month: int) -> int:
    return (month - 1) // 3 + 1


def quarter_months(today: date) -> tuple[str, str]:
    """First and last month (``YYYY-MM``) of the quarter containing ``today``."""
    start_month = (quarter_of(today.month) - 1) * 3 + 1
    return f"{today.year}-{start_month:02d}", f"{today.year}-{start_month + 2:02d}"


def previous_quarter_start(today: date) -> str:
    start_month = (quarter_of(today.month) - 1) * 3 + 1
    year, month = today.year, start_month - 3
    if month < 1:
        year, month = year - 1, month + 12
    return f"{year}-{month:02d}"


def month_range(start_month: str, end_month: str) -> list[tuple[int, int]]:
    """Inclusive list of (year, month) between two ``YYYY-MM`` strings."""
    start_year, start = (int(part) for part in start_month.split("-"))
    end_year, end = (int(part) for part in end_month.split("-"))
    months: list[tuple[int, int]] = []
    year, month = start_year, start
    while (year, month) <= (end_year, end):
        months.append((year, month))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return months


def month_bounds(start_month: str, end_month: str) -> tuple[date, date]:
    """First day of ``start_month`` and last day of ``end_month``."""
    months = month_range(start_month, end_month)
    if not months:
        raise ValueError(f"Empty month range {start_month}..{end_month}")
    first_year, first_month = months[0]
    last_year, last_month = months[-1]
    last_day = calendar.monthrange(last_year, last_month)[1]
    return date(first_year, first_month, 1), date(last_year, last_month, last_day)


def quarter_ranges(start_month: str, end_month: str) -> list[tuple[str, str]]:
    """Split an inclusive month range into (first, last) pairs, one per calendar quarter."""
    chunks: dict[tuple[int, int], list[tuple[int, int]]] = {}
    for year, month in month_range(start_month, end_month):
        chunks.setdefault((year, quarter_of(month)), []).append((year, month))
    return [
        (f"{months[0][0]}-{months[0][1]:02d}", f"{months[-1][0]}-{months[-1][1]:02d}")
        for months in chunks.values()
    ]
