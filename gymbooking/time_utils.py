from __future__ import annotations

from datetime import date as date_type
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from gymbooking.settings import settings


def parse_ymd(value: str) -> date_type:
    return datetime.strptime(value, "%Y-%m-%d").date()


def parse_hm(value: str) -> time:
    """Accepts ``HH:MM`` or ``HH:MM:SS``."""
    parts = value.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def time_to_hm(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def local_now() -> datetime:
    # Naive wall-clock time in the gym's timezone; schedules are stored the same way.
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def day_of_week(day: date_type) -> int:
    """Sunday=0 .. Saturday=6."""
    return (day.weekday() + 1) % 7


WEEKDAY_LABELS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def weekday_label(weekday: int) -> str:
    if 0 <= weekday <= 6:
        return WEEKDAY_LABELS[weekday]
    return str(weekday)


def month_start(day: date_type) -> date_type:
    return day.replace(day=1)


def next_month_start(day: date_type) -> date_type:
    first = month_start(day)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def week_start(day: date_type) -> datetime:
    """Midnight of the Monday starting the week that contains ``day``."""
    monday = day - timedelta(days=day.weekday())
    return datetime.combine(monday, time.min)
