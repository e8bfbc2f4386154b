"""
Per-user conversational state.

SessionStore is the one intentional in-process cache: sessions, conversation
history and the last shown task list, all keyed by user email. Nothing here is
persisted; a restart starts everyone from a fresh session. Sessions are created
lazily by get_or_create() and dropped by evict_idle(), which the app runs from
run_session_sweeper() every SESSION_SWEEP_SECONDS.
"""
import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

from pydantic import BaseModel

from intents import DeleteData, EditData, RestoreData, TaskData
from models import Task, TaskRef

logger = logging.getLogger(__name__)

MAX_CONVERSATION_EVENTS = 50


class Focus(str, Enum):
    TASKS = "tasks"
    ARCHIVED_TASKS = "archived_tasks"


class ViewType(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class ContextSource(str, Enum):
    ACTIVE = "active"
    ARCHIVE = "archive"


class ConfirmationKind(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    RESTORE = "restore"


class PendingConfirmation(BaseModel):
    kind: ConfirmationKind
    payload: Union[TaskData, EditData, DeleteData, RestoreData]


class Session(BaseModel):
    session_id: str
    last_activity: float
    current_focus: Focus = Focus.TASKS
    last_viewed_type: ViewType = ViewType.ACTIVE
    pending_confirmation: Optional[PendingConfirmation] = None
    last_mentioned_tasks: list[TaskRef] = []
    last_focus_task: Optional[TaskRef] = None
    contextual_references: dict[str, Any] = {}

    @property
    def viewing_archive(self) -> bool:
        return self.current_focus == Focus.ARCHIVED_TASKS and self.last_viewed_type == ViewType.ARCHIVED

    @property
    def context_source(self) -> ContextSource:
        return ContextSource.ARCHIVE if self.viewing_archive else ContextSource.ACTIVE

    def archived_refs(self) -> list[TaskRef]:
        return [t for t in self.last_mentioned_tasks if t.source == ContextSource.ARCHIVE.value]

    def active_refs(self) -> list[TaskRef]:
        return [t for t in self.last_mentioned_tasks if t.source == ContextSource.ACTIVE.value]


class TaskContext(BaseModel):
    tasks: list[TaskRef] = []
    primary: Optional[TaskRef] = None
    source: ContextSource = ContextSource.ACTIVE


def _as_ref(task: Union[Task, TaskRef, dict]) -> TaskRef:
    if isinstance(task, TaskRef):
        return task
    if isinstance(task, Task):
        return TaskRef.from_task(task)
    return TaskRef.model_validate(task)


class SessionStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._conversations: dict[str, list[dict]] = {}
        self._task_contexts: dict[str, TaskContext] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def conversation_count(self) -> int:
        return len(self._conversations)

    def get(self, user_id: str) -> Optional[Session]:
        return self._sessions.get(user_id)

    def get_or_create(self, user_id: str) -> Session:
        """Return the user's session, refreshing last_activity, or start a new one."""
        session = self._sessions.get(user_id)
        if session is None:
            session = Session(session_id=f"sess_{uuid.uuid4().hex[:8]}", last_activity=self._clock())
            self._sessions[user_id] = session
            logger.info("Started session %s for %s", session.session_id, user_id)
        else:
            session.last_activity = self._clock()
        return session

    def set_focus(self, user_id: str, source: ContextSource) -> Session:
        """Point the session at the active list or the archive."""
        session = self.get_or_create(user_id)
        if source == ContextSource.ARCHIVE:
            session.current_focus = Focus.ARCHIVED_TASKS
            session.last_viewed_type = ViewType.ARCHIVED
        else:
            session.current_focus = Focus.TASKS
            session.last_viewed_type = ViewType.ACTIVE
        return session

    def set_task_context(
        self,
        user_id: str,
        tasks: Sequence[Union[Task, TaskRef, dict]],
        primary: Optional[Union[Task, TaskRef, dict]] = None,
        source: Optional[ContextSource] = None,
    ) -> TaskContext:
        """
        Record the list last shown to the user and re-index it from 1.

        The source tag is inferred from the tasks themselves: one archived-looking
        task (deleted_at, is_archived, status Deleted, or an archive tag) marks the
        whole batch as archive. A caller-supplied ARCHIVE hint can only add to
        that, never turn archived tasks into active ones. An empty batch takes the
        hint, or keeps the current focus when there is none.
        """
        session = self.get_or_create(user_id)
        refs = [_as_ref(t) for t in tasks]

        if refs:
            looks_archived = source == ContextSource.ARCHIVE or any(
                ref.looks_archived() or ref.source == ContextSource.ARCHIVE.value for ref in refs
            )
            resolved = ContextSource.ARCHIVE if looks_archived else ContextSource.ACTIVE
        else:
            resolved = source or session.context_source

        is_archive = resolved == ContextSource.ARCHIVE
        enriched = [
            ref.model_copy(update={"index": i, "source": resolved.value, "is_archived": is_archive})
            for i, ref in enumerate(refs, start=1)
        ]
        primary_ref = None
        if primary is not None:
            primary_ref = _as_ref(primary).model_copy(update={"source": resolved.value, "is_archived": is_archive})
        elif enriched:
            primary_ref = enriched[0]

        self.set_focus(user_id, resolved)
        session.last_mentioned_tasks = enriched
        session.last_focus_task = primary_ref
        session.contextual_references["last_tasks"] = self._clock()
        session.contextual_references["last_source"] = resolved.value

        context = TaskContext(tasks=enriched, primary=primary_ref, source=resolved)
        self._task_contexts[user_id] = context

        logger.info(
            "Context set for %s: %d task(s), source=%s, focus=%s",
            user_id, len(enriched), resolved.value, session.current_focus.value
        )
        return context

    def get_task_context(self, user_id: str) -> TaskContext:
        return self._task_contexts.get(user_id) or TaskContext()

    def add_conversation_event(self, user_id: str, key: str, value: Any) -> None:
        events = self._conversations.setdefault(user_id, [])
        events.append({"ts": self._clock(), "key": key, "value": value})
        if len(events) > MAX_CONVERSATION_EVENTS:
            del events[0]

    def get_conversation(self, user_id: str) -> list[dict]:
        return self._conversations.get(user_id, [])

    def evict_idle(self, threshold_seconds: float, now: Optional[float] = None) -> int:
        """Drop sessions idle for longer than threshold_seconds, with their caches."""
        now = self._clock() if now is None else now
        stale = [
            user_id for user_id, session in list(self._sessions.items())
            if now - session.last_activity > threshold_seconds
        ]
        for user_id in stale:
            self._sessions.pop(user_id, None)
            self._task_contexts.pop(user_id, None)
            self._conversations.pop(user_id, None)
        if stale:
            logger.info("Evicted %d idle session(s)", len(stale))
        return len(stale)

    def clear(self) -> None:
        self._sessions.clear()
        self._task_contexts.clear()
        self._conversations.clear()


async def run_session_sweeper(store: SessionStore, interval_seconds: float, threshold_seconds: float) -> None:
    """Periodic idle eviction; runs until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        store.evict_idle(threshold_seconds)
