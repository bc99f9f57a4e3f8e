"""Week-key helpers for calendar addressing.

Week boundaries are Monday-Sunday. Week keys look like "2025-W03" and are
counted from the first Monday strictly after January 1st of the Monday's year
(when January 1st is itself a Monday, the first Monday is January 8th and the
days before it belong to week 00). These keys are shared with existing stored
documents, so the anchor must not change.

Day indices are Monday=0 ... Sunday=6 everywhere in the content core.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta

WEEK_KEY_PATTERN = re.compile(r"^(\d{4})-W(\d{2,})$")


@dataclass(frozen=True)
class WeekRange:
    """Monday..Sunday range of a week key (both inclusive)."""

    start: date
    end: date

    def contains(self, d: date | datetime) -> bool:
        return self.start <= _as_date(d) <= self.end


def _as_date(d: date | datetime) -> date:
    return d.date() if isinstance(d, datetime) else d


def week_start(d: date | datetime) -> date:
    """Return Monday of the calendar week containing d."""
    d = _as_date(d)
    return d - timedelta(days=d.weekday())


def week_end(d: date | datetime) -> date:
    """Return Sunday of the calendar week containing d."""
    return week_start(d) + timedelta(days=6)


def first_monday(year: int) -> date:
    """Anchor Monday for week numbering in a year."""
    jan1 = date(year, 1, 1)
    weekday = jan1.weekday()
    days_to_first_monday = 1 if weekday == 6 else 7 - weekday
    return jan1 + timedelta(days=days_to_first_monday)


def monday_week(d: date | datetime | None = None) -> str:
    """Get the week key ("YYYY-Www") for a date (defaults to today)."""
    monday = week_start(d if d is not None else date.today())
    days_diff = (monday - first_monday(monday.year)).days
    week_number = days_diff // 7 + 1
    return f"{monday.year}-W{week_number:02d}"


def parse_week_key(week_key: str) -> tuple[int, int]:
    """Split a week key into (year, week number).

    Raises:
        ValueError: If the key is not of the form YYYY-Www
    """
    match = WEEK_KEY_PATTERN.match(week_key or "")
    if not match:
        raise ValueError(f"Invalid week key: {week_key!r}")
    return int(match.group(1)), int(match.group(2))


def week_dates(week_key: str) -> WeekRange:
    """Get the Monday..Sunday range for a week key."""
    year, week = parse_week_key(week_key)
    start = first_monday(year) + timedelta(days=(week - 1) * 7)
    return WeekRange(start=start, end=week_end(start))


def is_date_in_week(d: date | datetime, week_key: str) -> bool:
    return week_dates(week_key).contains(d)


def weeks_between(start: date | datetime, end: date | datetime) -> list[str]:
    """Ordered unique week keys from start to end, stepping one week at a time.

    The week containing `end` is always included when end >= start.
    """
    start_d, end_d = _as_date(start), _as_date(end)
    weeks: list[str] = []
    current = start_d
    while current <= end_d:
        key = monday_week(current)
        if key not in weeks:
            weeks.append(key)
        current += timedelta(days=7)
    if start_d <= end_d:
        last = monday_week(end_d)
        if last not in weeks:
            weeks.append(last)
    return weeks


def consecutive_week_keys(start_week_key: str, count: int) -> list[str]:
    """N consecutive week keys beginning at start_week_key (empty when count < 1)."""
    if count < 1:
        return []
    if count == 1:
        return [start_week_key]
    start = week_dates(start_week_key).start
    return weeks_between(start, start + timedelta(days=7 * count - 1))


def monday_index_from_sunday_first(native_day: int) -> int:
    """Convert a Sunday=0 weekday (JS/store convention) to Monday=0."""
    return (native_day + 6) % 7


def day_index(d: date | datetime) -> int:
    """Monday=0 ... Sunday=6."""
    return _as_date(d).weekday()


def date_for_day_index(week_key: str, index: int) -> date:
    """Calendar date of a day index within a week."""
    if not 0 <= index <= 6:
        raise ValueError(f"Day index must be 0..6, got {index}")
    return week_dates(week_key).start + timedelta(days=index)


def format_date_for_storage(d: date | datetime) -> str:
    """Format a date as YYYY-MM-DD (local calendar date)."""
    return _as_date(d).isoformat()


def parse_date_from_storage(date_str: str) -> date:
    return date.fromisoformat(date_str)
