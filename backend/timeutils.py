"""
12-hour clock helpers shared by the resolver, executor and notifier.
All functions are pure; time objects may be TimeOfDay models or plain dicts.
"""
import re
from datetime import datetime, timedelta
from typing import Optional, Union

from pydantic import ValidationError

from models import Task, TaskStatus, TimeOfDay

TimeLike = Union[TimeOfDay, dict, None]


def today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def tomorrow() -> str:
    return (datetime.now() + timedelta(days=1)).strftime("%Y-%m-%d")


def to_minutes(hour, minute, period) -> int:
    """
    Convert a 12-hour clock reading to minutes since midnight.
    12 AM -> 0, 12 PM -> 720. Raises ValueError on unparsable input.
    """
    h = int(str(hour).strip())
    m = int(str(minute).strip() or "0")
    p = str(period).strip().upper()
    if p not in ("AM", "PM"):
        raise ValueError(f"Invalid period: {period!r}")
    if p == "AM" and h == 12:
        h = 0
    elif p == "PM" and h != 12:
        h += 12
    return h * 60 + m


def _get(t, field):
    if isinstance(t, dict):
        return t.get(field)
    return getattr(t, field, None)


def time_to_minutes(t: TimeLike) -> Optional[int]:
    """Minutes since midnight for a time object, or None if missing/unparsable."""
    if not t:
        return None
    hour, period = _get(t, "hour"), _get(t, "period")
    if not hour or not period:
        return None
    try:
        return to_minutes(hour, _get(t, "minute") or "0", period)
    except (TypeError, ValueError):
        return None


def is_range_valid(start: TimeLike, end: TimeLike) -> bool:
    """True if end is absent or strictly after start. False if start is unparsable."""
    start_mins = time_to_minutes(start)
    if start_mins is None:
        return False
    end_mins = time_to_minutes(end)
    if end_mins is None:
        return True
    return end_mins > start_mins


def ranges_overlap(a_start: TimeLike, a_end: TimeLike, b_start: TimeLike, b_end: TimeLike) -> bool:
    """
    Two same-day ranges overlap iff max(starts) < min(ends).
    A missing end is treated as a 1-minute point interval.
    """
    a_s = time_to_minutes(a_start)
    b_s = time_to_minutes(b_start)
    if a_s is None or b_s is None:
        return False
    a_e = time_to_minutes(a_end) if a_end else None
    b_e = time_to_minutes(b_end) if b_end else None
    if a_e is None:
        a_e = a_s + 1
    if b_e is None:
        b_e = b_s + 1
    return max(a_s, b_s) < min(a_e, b_e)


def format_time(t: TimeLike) -> str:
    hour, minute, period = _get(t, "hour"), _get(t, "minute"), _get(t, "period")
    if not t or not hour or minute is None or not period:
        return "No time set"
    return f"{hour}:{str(minute).zfill(2)} {period}"


def format_range(start: TimeLike, end: TimeLike = None) -> str:
    if end:
        return f"{format_time(start)} to {format_time(end)}"
    return format_time(start)


# Fallback extraction for "6pm", "10:30 am", "10am-11am", "at 10:00 AM to 11:00 AM"
_HHMM = r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b"
_SINGLE_RE = re.compile(_HHMM, re.IGNORECASE)
_RANGE_RE = re.compile(_HHMM + r"\s*(?:to|-|–)\s*" + _HHMM, re.IGNORECASE)


def _time_or_none(hour, minute, period) -> Optional[TimeOfDay]:
    try:
        return TimeOfDay(hour=hour, minute=minute or "0", period=period)
    except ValidationError:
        return None


def parse_times_from_text(text: str) -> tuple[Optional[TimeOfDay], Optional[TimeOfDay]]:
    """
    Pull a start (and optional end) time out of free text.
    Returns (start, end); either may be None.
    """
    s = str(text or "")
    m = _RANGE_RE.search(s)
    if m:
        h1, m1, p1, h2, m2, p2 = m.groups()
        start = _time_or_none(h1, m1, p1)
        if start:
            return start, _time_or_none(h2, m2, p2)
    m = _SINGLE_RE.search(s)
    if m:
        h, mm, p = m.groups()
        return _time_or_none(h, mm, p), None
    return None, None


def display_status(task: Task, now: Optional[datetime] = None) -> TaskStatus:
    """
    Derived status for display. Only Deleted is stored; InProgress and Complete
    follow from the task's date and time range relative to now.
    """
    if task.is_archived:
        return TaskStatus.DELETED
    now = now or datetime.now()
    current_day = now.strftime("%Y-%m-%d")
    if task.date < current_day:
        return TaskStatus.COMPLETE
    if task.date > current_day:
        return TaskStatus.PENDING

    start = time_to_minutes(task.start_time)
    if start is None:
        return TaskStatus.PENDING
    current = now.hour * 60 + now.minute
    if current < start:
        return TaskStatus.PENDING
    end = time_to_minutes(task.end_time)
    if end is not None and end > start and current < end:
        return TaskStatus.IN_PROGRESS
    return TaskStatus.COMPLETE
