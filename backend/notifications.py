"""
"Starts in 1 hour" reminders pushed over websockets.

Tasks store a local wall-clock start time with no timezone, so the scanner
evaluates every task against every UTC offset (or only the offsets of
connected users, when any are known). Each (task, day, type, offset) key is
sent at most once; the notifications table enforces it.
"""
import asyncio
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import WebSocket
from pydantic import BaseModel

import database
from models import Task
from timeutils import format_time, time_to_minutes

logger = logging.getLogger(__name__)

REMINDER_TYPE = "1hour"
WINDOW_MIN_MINUTES = 59
WINDOW_MAX_MINUTES = 61
IMMEDIATE_LOOKAHEAD_MINUTES = 65
COMMON_OFFSETS = (-8, -7, -6, -5, -4, 0, 1, 2, 5.5, 8, 9)
HALF_HOUR_OFFSETS = (-9.5, -4.5, 3.5, 4.5, 5.5, 6.5, 9.5, 10.5, 12.75)


def all_utc_offsets() -> list[float]:
    """UTC-12 .. UTC+14 plus the fractional offsets in use."""
    return sorted({*range(-12, 15), *HALF_HOUR_OFFSETS})


def local_now(utc_offset: float, now_utc: Optional[datetime] = None) -> datetime:
    """Naive wall-clock time at the given UTC offset."""
    now_utc = now_utc or datetime.now(timezone.utc)
    return now_utc.replace(tzinfo=None) + timedelta(hours=utc_offset)


def task_start_in_offset(task: Task, current: datetime) -> Optional[datetime]:
    """The task's start on current's calendar day, or None if its time is unusable."""
    minutes = time_to_minutes(task.start_time)
    if minutes is None:
        return None
    return current.replace(hour=minutes // 60, minute=minutes % 60, second=0, microsecond=0)


class ReminderCheck(BaseModel):
    should_notify: bool
    minutes_until_start: Optional[int] = None
    notification_type: str = "reminder"
    utc_offset: float = 0


def should_notify_for_task(task: Task, current: datetime, utc_offset: float) -> ReminderCheck:
    start = task_start_in_offset(task, current)
    if start is None:
        return ReminderCheck(should_notify=False, utc_offset=utc_offset)
    minutes = math.floor((start - current).total_seconds() / 60)
    in_window = WINDOW_MIN_MINUTES <= minutes <= WINDOW_MAX_MINUTES
    return ReminderCheck(
        should_notify=in_window,
        minutes_until_start=minutes,
        notification_type=REMINDER_TYPE if in_window else "reminder",
        utc_offset=utc_offset,
    )


def notification_key(task_id: str, day: str, notification_type: str, utc_offset: float) -> str:
    sign = "+" if utc_offset >= 0 else ""
    return f"{task_id}_{day}_{notification_type}_UTC{sign}{utc_offset:g}"


class ConnectionManager:
    """Websocket connections grouped into one room per user email."""

    def __init__(self):
        self.rooms: dict[str, set[WebSocket]] = {}

    def join(self, email: str, websocket: WebSocket) -> None:
        self.rooms.setdefault(email, set()).add(websocket)

    def leave(self, websocket: WebSocket) -> None:
        for email in list(self.rooms):
            self.rooms[email].discard(websocket)
            if not self.rooms[email]:
                del self.rooms[email]

    async def send(self, email: str, event: str, payload: dict) -> int:
        """Send to every socket in the room; returns how many received it."""
        delivered = 0
        for websocket in list(self.rooms.get(email, ())):
            try:
                await websocket.send_json({"event": event, "data": payload})
                delivered += 1
            except (RuntimeError, ConnectionError) as e:
                logger.warning("Dropping dead websocket for %s: %s", email, e)
                self.leave(websocket)
        return delivered


class NotificationService:
    def __init__(self, manager: ConnectionManager, clock: Callable[[], float] = time.time):
        self.manager = manager
        self._clock = clock
        # email -> {"timezone": str | None, "offset": float, "last_seen": float}
        self.user_timezones: dict[str, dict] = {}

    def register_user_timezone(self, email: str, tz_name: Optional[str], offset: Optional[float]) -> None:
        if offset is None:
            return
        self.user_timezones[email] = {"timezone": tz_name, "offset": float(offset), "last_seen": self._clock()}

    def _same_offset_or_unknown(self, email: str, utc_offset: float) -> bool:
        data = self.user_timezones.get(email)
        return data is None or abs(data["offset"] - utc_offset) < 0.1

    def offsets_to_check(self) -> list[float]:
        known = sorted({data["offset"] for data in self.user_timezones.values()})
        return known or all_utc_offsets()

    async def check_upcoming_tasks(self, now_utc: Optional[datetime] = None) -> int:
        """One scanner pass. Returns the number of reminders recorded."""
        sent = 0
        for utc_offset in self.offsets_to_check():
            current = local_now(utc_offset, now_utc)
            for task in database.get_tasks_for_date_db(current.strftime("%Y-%m-%d")):
                check = should_notify_for_task(task, current, utc_offset)
                if check.should_notify and await self.send_task_notification(task, check, current):
                    sent += 1
        return sent

    async def send_task_notification(self, task: Task, check: ReminderCheck, current: datetime) -> bool:
        key = notification_key(task.id, current.strftime("%Y-%m-%d"), check.notification_type, check.utc_offset)
        if not database.record_notification_db(key, task.id, check.utc_offset, check.notification_type):
            return False

        start = format_time(task.start_time)
        payload = {
            "id": task.id,
            "title": task.title,
            "startTime": start,
            "message": f'"{task.title}" starts in 1 hour at {start}',
            "type": "reminder",
            "notificationType": check.notification_type,
            "utcOffset": check.utc_offset,
        }
        for email in dict.fromkeys([task.created_by, *task.collaborators]):
            if self._same_offset_or_unknown(email, check.utc_offset):
                await self.manager.send(email, "task-reminder", payload)
        logger.info("Sent %s reminder %s", check.notification_type, key)
        return True

    async def check_immediate_notification(self, task: Task, email: str, now_utc: Optional[datetime] = None) -> bool:
        """
        After a create, edit or restore: remind right away if the task starts
        within the next 65 minutes in the user's (known or guessed) offset.
        """
        known = self.user_timezones.get(email)
        offsets = [known["offset"]] if known else list(COMMON_OFFSETS)
        for utc_offset in offsets:
            current = local_now(utc_offset, now_utc)
            if task.date != current.strftime("%Y-%m-%d"):
                continue
            check = should_notify_for_task(task, current, utc_offset)
            if check.minutes_until_start is not None and 0 < check.minutes_until_start <= IMMEDIATE_LOOKAHEAD_MINUTES:
                await self.send_immediate_notification(task, email, check)
                return True
        return False

    async def send_immediate_notification(self, task: Task, email: str, check: ReminderCheck) -> None:
        start = format_time(task.start_time)
        if check.minutes_until_start == 60:
            message = f'"{task.title}" starts in exactly 1 hour at {start}'
        elif WINDOW_MIN_MINUTES <= check.minutes_until_start <= WINDOW_MAX_MINUTES:
            message = f'"{task.title}" starts in 1 hour at {start}'
        else:
            message = f'"{task.title}" starts in {check.minutes_until_start} minutes at {start}'
        payload = {
            "id": task.id,
            "title": task.title,
            "startTime": start,
            "message": message,
            "type": "immediate",
            "utcOffset": check.utc_offset,
        }
        await self.manager.send(email, "task-reminder", payload)
        for collaborator in task.collaborators:
            if collaborator != email and self._same_offset_or_unknown(collaborator, check.utc_offset):
                await self.manager.send(collaborator, "task-reminder", payload)

    def cleanup_old_user_data(self, retention_seconds: float, now: Optional[float] = None) -> int:
        cutoff = (self._clock() if now is None else now) - retention_seconds
        stale = [email for email, data in self.user_timezones.items() if data["last_seen"] < cutoff]
        for email in stale:
            del self.user_timezones[email]
        return len(stale)

    async def run(self, interval_seconds: float, retention_seconds: float) -> None:
        """Periodic scanner; runs until cancelled."""
        while True:
            try:
                await self.check_upcoming_tasks()
                self.cleanup_old_user_data(retention_seconds)
            except Exception:
                logger.exception("Notification pass failed")
            await asyncio.sleep(interval_seconds)
