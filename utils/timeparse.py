import re
from datetime import date, datetime, timedelta

from errors import ValidationError

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


def parse_hhmm(value, field="time") -> str:
    """Validate an "HH:mm" string and return it zero-padded ("9:30" -> "09:30")."""
    if not isinstance(value, str) or not _HHMM.match(value.strip()):
        raise ValidationError(f"Invalid {field}. Use HH:mm format (e.g., 09:30)")
    hours, minutes = value.strip().split(":")
    return f"{int(hours):02d}:{minutes}"


def parse_date(value, field="date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat((value or "").strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}. Use YYYY-MM-DD")


def to_minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def from_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def add_minutes(hhmm: str, minutes: int) -> str:
    return from_minutes(to_minutes(hhmm) + minutes)


def combine(day: date, hhmm: str) -> datetime:
    return datetime(day.year, day.month, day.day) + timedelta(minutes=to_minutes(hhmm))


def hourly_grid(open_time: str, close_time: str, step_minutes: int = 60):
    """
    Yields (start, end) HH:mm pairs covering [open_time, close_time).
    A trailing interval shorter than step_minutes is dropped.
    """
    start = to_minutes(open_time)
    close = to_minutes(close_time)
    while start + step_minutes <= close:
        yield from_minutes(start), from_minutes(start + step_minutes)
        start += step_minutes


def overlaps(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    # half-open intervals; zero-padded HH:mm compares correctly as text
    return start_a < end_b and end_a > start_b
