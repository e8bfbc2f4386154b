"""
Lexical fallback used when the oracle cannot be reached.

An ordered list of (pattern, handler) rules; the first pattern that matches
decides the intent. Nothing here touches the store or the session, so the
whole policy can be swapped out without affecting the resolver's main path.
"""
import re
from typing import Callable, Optional

from intents import Intent, IntentType, TaskData
from sessions import Session
from timeutils import parse_times_from_text, today, tomorrow

_CREATE_TITLE_RES = (
    re.compile(
        r"(?:create|add|make)\s+(?:a\s+)?(?:task\s+)?(?:called\s+)?([^\"'\n]+?)"
        r"(?:\s+(?:for|in|at|on|tomorrow|today))",
        re.IGNORECASE,
    ),
    re.compile(r"(?:create|add|make)\s+(?:a\s+)?(?:task\s+)?(?:called\s+)?([^\"'\n]+?)$", re.IGNORECASE),
)
_SECTION_RE = re.compile(r"(?:for|in)\s+(work|school|personal)\b", re.IGNORECASE)
_LEADING_VERB_RE = re.compile(r"^(create|add|make|task)\s+", re.IGNORECASE)

DEFAULT_SUGGESTIONS = [
    "What is my schedule today?",
    "Create homework task for school at 6pm",
    "Show my tasks",
    "Edit the first task",
    "Delete both tasks",
]
ARCHIVE_FIRST_SUGGESTIONS = ["What tasks do I have in archive?", "Show archived tasks", "List archive"]


def clean_task_name(raw: Optional[str]) -> str:
    """Strip a leading verb word ("create", "add", "make", "task") from a title."""
    if not raw:
        return ""
    return _LEADING_VERB_RE.sub("", str(raw).strip()).strip()


def archive_first_error() -> Intent:
    return Intent.validation_error(
        "To restore tasks, please show your archive first.", ARCHIVE_FIRST_SUGGESTIONS
    )


def _restore(text: str, session: Session) -> Intent:
    if not session.viewing_archive:
        return archive_first_error()
    return Intent.validation_error(
        "Which task would you like to restore?",
        ["Restore the first task", "Show my archived tasks first"],
    )


def _show_archive(text: str, session: Session) -> Intent:
    return Intent(type=IntentType.SHOW_ARCHIVED_TASKS)


def _show_tasks(text: str, session: Session) -> Intent:
    return Intent(type=IntentType.SHOW_TASKS, date=today(), section="all")


def _collaborators(text: str, session: Session) -> Intent:
    return Intent(type=IntentType.LIST_COLLABORATORS)


def _create(text: str, session: Session) -> Intent:
    start, end = parse_times_from_text(text)
    if start is not None:
        match = None
        for pattern in _CREATE_TITLE_RES:
            match = pattern.search(text)
            if match:
                break
        if match:
            section = _SECTION_RE.search(text)
            task_data = TaskData(
                title=clean_task_name(match.group(1)),
                section=section.group(1) if section else "personal",
                date=tomorrow() if re.search(r"tomorrow", text, re.IGNORECASE) else today(),
                start_time=start,
            )
            if end is not None:
                task_data.end_time = end
            return Intent(
                type=IntentType.CREATE_TASK_DIRECT,
                task_data=task_data,
                message=f'Creating "{task_data.title}" for {task_data.section.value}...',
                suggestions=["Create another task", "Show my tasks", "Edit the details"],
            )
    return Intent.validation_error(
        "I need more details to create a task. Please specify the title, section, and time.",
        ["Create homework task for school at 6pm", "Add meeting to work at 3pm"],
    )


def _edit(text: str, session: Session) -> Intent:
    return Intent.validation_error(
        "Which task would you like to edit?", ["Edit the first task", "Show my tasks first"]
    )


# Order matters: the archive rule must precede the generic "show ... tasks" rule
FALLBACK_RULES: list[tuple[re.Pattern, Callable[[str, Session], Intent]]] = [
    (re.compile(r"restore", re.IGNORECASE), _restore),
    (re.compile(r"show.*archive|what.*archive|list.*archive|archived?\s+tasks", re.IGNORECASE), _show_archive),
    (re.compile(r"schedule|what.*tasks.*today|tasks.*today|show.*tasks", re.IGNORECASE), _show_tasks),
    (re.compile(r"collaborators.*add|(?:who|what|list|show).*collaborat", re.IGNORECASE), _collaborators),
    (re.compile(r"create|add|make", re.IGNORECASE), _create),
    (re.compile(r"edit", re.IGNORECASE), _edit),
]


def fallback_parse(text: str, session: Session) -> Intent:
    """Best-effort intent from keywords alone."""
    for pattern, handler in FALLBACK_RULES:
        if pattern.search(text):
            return handler(text, session)
    return Intent(
        type=IntentType.UNKNOWN,
        message="I didn't understand that. Here's what I can help with:",
        suggestions=list(DEFAULT_SUGGESTIONS),
    )
