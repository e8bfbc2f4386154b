"""
Propose / confirm / cancel for mutating chat commands.

Per-user state machine: Idle, or AwaitingConfirmation(kind, payload) held in
Session.pending_confirmation. Staging never touches the store; confirm()
clears the pending action before running it, so a second confirm finds
nothing and answers neutrally.
"""
import logging
import re
from typing import Optional, Union

from executor import TaskExecutor
from intents import DeleteData, EditData, RestoreData, TaskData
from models import ChatReply, CurrentUser
from sessions import ConfirmationKind, PendingConfirmation, SessionStore
from timeutils import format_range

logger = logging.getLogger(__name__)

AFFIRMATIVE_RE = re.compile(
    r"^\s*(yes|yeah|yep|sure|confirm|do it|ok|okay|create it|update it|restore it|delete it)\b", re.IGNORECASE
)
NEGATIVE_RE = re.compile(r"^\s*(no|nope|cancel|stop|never\s?mind|don'?t)\b", re.IGNORECASE)
BARE_REPLY_RE = re.compile(
    r"^\s*(yes|yeah|yep|sure|confirm|ok|okay|no|nope|cancel|stop|never\s?mind)\s*[.!]*\s*$", re.IGNORECASE
)

STAGE_SUGGESTIONS = {
    ConfirmationKind.CREATE: ["Yes, create it", "No, cancel", "Edit the time", "Add collaborators"],
    ConfirmationKind.EDIT: ["Yes, update it", "No, cancel"],
    ConfirmationKind.DELETE: ["Yes, delete it", "No, cancel"],
    ConfirmationKind.RESTORE: ["Yes, restore it", "No, cancel"],
}

Payload = Union[TaskData, EditData, DeleteData, RestoreData]


def is_affirmative(text: str) -> bool:
    return bool(AFFIRMATIVE_RE.match(text or ""))


def is_negative(text: str) -> bool:
    return bool(NEGATIVE_RE.match(text or ""))


def is_bare_reply(text: str) -> bool:
    """True when the whole message is a single yes/no word, e.g. "yes" or "Nope!"."""
    return bool(BARE_REPLY_RE.match(text or ""))


def preview_create(data: TaskData) -> str:
    section = data.section.value if data.section else "personal"
    text = f'Create "{data.title}" in {section} on {data.date} at {format_range(data.start_time, data.end_time)}'
    extras = []
    if data.priority:
        extras.append(f"Priority: {data.priority.value}")
    if data.recurring:
        extras.append(f"Recurring: {data.recurring.value}")
    if data.collaborators:
        extras.append(f"With: {', '.join(data.collaborators)}")
    if extras:
        text += "\n" + " • ".join(extras)
    return text + "\n\nConfirm to create this task?"


class ConfirmationOrchestrator:
    def __init__(self, store: SessionStore, executor: TaskExecutor):
        self.store = store
        self.executor = executor

    def has_pending(self, user_id: str) -> bool:
        session = self.store.get(user_id)
        return session is not None and session.pending_confirmation is not None

    def stage(
        self,
        user_id: str,
        kind: ConfirmationKind,
        payload: Payload,
        preview: str,
        suggestions: Optional[list[str]] = None,
    ) -> ChatReply:
        session = self.store.get_or_create(user_id)
        session.pending_confirmation = PendingConfirmation(kind=kind, payload=payload)
        logger.info("Staged %s confirmation for %s", kind.value, user_id)
        return ChatReply(
            success=True,
            reply=preview,
            suggestions=suggestions or STAGE_SUGGESTIONS[kind],
            awaiting_confirmation=True,
        )

    async def confirm(self, user: CurrentUser) -> ChatReply:
        session = self.store.get_or_create(user.email)
        pending = session.pending_confirmation
        if pending is None:
            return ChatReply(
                success=True,
                reply="There's nothing waiting for confirmation.",
                suggestions=["Show my tasks", "Create a task", "What's my schedule today?"],
            )
        session.pending_confirmation = None
        logger.info("Executing confirmed %s for %s", pending.kind.value, user.email)

        if pending.kind == ConfirmationKind.CREATE:
            return await self.executor.create_task(user, pending.payload, bypass_overlap=True)
        if pending.kind == ConfirmationKind.EDIT:
            return await self.executor.edit_task(user, pending.payload)
        if pending.kind == ConfirmationKind.DELETE:
            return await self.executor.delete_tasks(user, pending.payload)
        if pending.kind == ConfirmationKind.RESTORE:
            return await self.executor.restore_tasks(user, pending.payload)
        raise ValueError(f"Unhandled confirmation kind: {pending.kind}")

    def cancel(self, user_id: str) -> ChatReply:
        kind = self.discard_stale(user_id)
        return ChatReply(
            success=True,
            reply="Okay, cancelled." if kind else "Okay, nothing to cancel.",
            suggestions=["Show my tasks", "Create a task", "What's my schedule today?"],
        )

    def discard_stale(self, user_id: str) -> Optional[ConfirmationKind]:
        """Drop any pending action; returns its kind, or None if there was none."""
        session = self.store.get(user_id)
        if session is None or session.pending_confirmation is None:
            return None
        kind = session.pending_confirmation.kind
        session.pending_confirmation = None
        logger.info("Dropped pending %s confirmation for %s", kind.value, user_id)
        return kind
