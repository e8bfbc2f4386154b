"""
Task mutations and listings behind the chat surface.

Every public coroutine returns a ChatReply. Rule violations are raised inside
as InvalidRequest / ConflictError / NotFoundError and become success=False
replies; sqlite errors are logged and become a "please try again" reply.
"""
import functools
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Optional

import database
from fallback import clean_task_name
from intents import RECURRING_NONE, DeleteData, EditData, ReferenceType, RestoreData, TaskData
from models import (
    ChatReply,
    ConflictError,
    CurrentUser,
    InvalidRequest,
    NotFoundError,
    Section,
    Task,
    TaskChatError,
)
from sessions import ConfirmationKind, ContextSource, PendingConfirmation, SessionStore
from timeutils import format_range, format_time, is_range_valid, ranges_overlap, time_to_minutes, today

logger = logging.getLogger(__name__)

GENERAL_SUGGESTIONS = ["Show my tasks", "Create a task"]
AFTER_CHANGE_SUGGESTIONS = ["Show my tasks", "Create another task", "What's my schedule today?"]
SECTION_ORDER = (Section.WORK, Section.SCHOOL, Section.PERSONAL)


def _handles_errors(failure_text: str, suggestions: list[str]):
    """Turn rule violations and store failures into ChatReply(success=False)."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs) -> ChatReply:
            try:
                return await func(self, *args, **kwargs)
            except TaskChatError as e:
                return ChatReply(success=False, reply=e.message, suggestions=e.suggestions or suggestions)
            except sqlite3.Error:
                logger.exception("Store error in %s", func.__name__)
                return ChatReply(success=False, reply=failure_text, suggestions=suggestions)
        return wrapper
    return decorator


def _section_filter(section: Optional[str]) -> Optional[str]:
    if not section or section == "all":
        return None
    try:
        return Section(section.strip().lower()).value
    except ValueError:
        raise InvalidRequest(
            f'Unknown section "{section}". Use work, school or personal.', ["Show my work tasks", "Show my tasks"]
        )


def _time_text(task: Task) -> str:
    text = format_time(task.start_time)
    if task.end_time:
        text += f" - {format_time(task.end_time)}"
    return text


def resolve_collaborators(tokens: Optional[list[str]]) -> list[str]:
    """
    Map names to directory emails. Matches username, full name or email
    case-insensitively; unmatched tokens containing "@" pass through as
    emails, anything else is dropped.
    """
    if not tokens:
        return []
    directory = database.get_all_users_db()
    resolved = []
    for token in tokens:
        name = str(token).strip().lower()
        if not name:
            continue
        found = next(
            (
                user for user in directory
                if name in (user.username.lower(), (user.name or "").lower(), user.email.lower())
            ),
            None,
        )
        if found:
            resolved.append(found.email)
        elif "@" in name:
            resolved.append(str(token).strip())
    return list(dict.fromkeys(resolved))


class TaskExecutor:
    def __init__(self, store: SessionStore, notifier=None):
        self.store = store
        self.notifier = notifier

    async def _notify_soon(self, task: Task, email: str) -> None:
        if self.notifier is not None:
            await self.notifier.check_immediate_notification(task, email)

    # Create
    @_handles_errors("Failed to create task. Please try again.", ["Create homework task for school tomorrow at 6pm"])
    async def create_task(
        self, user: CurrentUser, data: TaskData, bypass_overlap: bool = False, direct: bool = False
    ) -> ChatReply:
        owner = user.email
        title = clean_task_name(data.title)
        if not title or data.section is None or not data.date or data.start_time is None:
            raise InvalidRequest(
                "Missing required fields for task creation.",
                [
                    "Create homework task for school tomorrow at 6pm",
                    "Add meeting to work at 3pm",
                    "Schedule workout for personal at 7am",
                ],
            )
        if not is_range_valid(data.start_time, data.end_time):
            raise InvalidRequest(
                "The end time must be after the start time. Please adjust your times (e.g., 1:30 PM to 2:30 PM).",
                ["Set end time to 2:30 PM", "Create it without an end time"],
            )
        collaborators = resolve_collaborators(data.collaborators)
        time_range = format_range(data.start_time, data.end_time)

        duplicate = database.find_duplicate_task_db(
            owner, title, data.section, data.date, data.start_time, data.end_time
        )
        if duplicate:
            raise ConflictError(
                f'⚠️ A task "{title}" already exists on {data.date} at {time_range}.',
                [
                    f'Create "{title} 2" at {format_time(data.start_time)}',
                    "Create at a different time",
                    "Show my existing tasks",
                ],
            )

        if not bypass_overlap:
            overlaps = [
                t for t in database.get_active_tasks_db(owner, date=data.date)
                if ranges_overlap(data.start_time, data.end_time, t.start_time, t.end_time)
            ]
            if overlaps:
                staged = data.model_copy(update={"title": title, "collaborators": collaborators})
                session = self.store.get_or_create(owner)
                session.pending_confirmation = PendingConfirmation(kind=ConfirmationKind.CREATE, payload=staged)
                logger.info("Create for %s overlaps %d task(s); awaiting confirmation", owner, len(overlaps))
                lines = "\n".join(f"• {t.title} ({t.section.value}) {_time_text(t)}" for t in overlaps)
                return ChatReply(
                    success=False,
                    reply=(
                        f'⚠️ The task "{title}" ({data.section.value}) at {time_range} overlaps with:\n\n'
                        f"{lines}\n\nProceed anyway?"
                    ),
                    suggestions=["Yes, create anyway", "No, cancel"],
                    awaiting_confirmation=True,
                )

        task = database.create_task_db(
            str(uuid.uuid4()),
            owner,
            title,
            data.section,
            data.date,
            data.start_time,
            end_time=data.end_time,
            priority=data.priority,
            recurring=data.recurring,
            collaborators=collaborators,
            user_id=user.id,
        )
        self.store.add_conversation_event(owner, "task_created", {"task_id": task.id, "title": task.title})
        logger.info("Created task %s for %s", task.id, owner)
        await self._notify_soon(task, owner)

        extras = []
        if task.priority:
            extras.append(f"{task.priority.value} priority")
        if task.recurring:
            extras.append(f"{task.recurring.value} recurring")
        if task.collaborators:
            extras.append(f"collaborators: {', '.join(task.collaborators)}")
        extras_text = f" ({', '.join(extras)})" if extras else ""
        verb = "successfully created" if direct else "created"
        return ChatReply(
            success=True,
            action="task_created",
            task_id=task.id,
            reply=(
                f'✅ Task "{task.title}" {verb} for {task.section.value} on {task.date} '
                f"at {format_range(task.start_time, task.end_time)}{extras_text}!"
            ),
            suggestions=["Create another task", "Show my tasks", "What's my schedule today?"],
        )

    # Listings
    @_handles_errors("Failed to retrieve tasks. Please try again.", GENERAL_SUGGESTIONS)
    async def show_tasks(self, user: CurrentUser, date: Optional[str] = None, section: Optional[str] = None) -> ChatReply:
        day = date or today()
        section_value = _section_filter(section)
        tasks = database.get_active_tasks_db(user.email, date=day, section=section_value)
        self.store.set_task_context(user.email, tasks, source=ContextSource.ACTIVE)

        section_text = f" {section_value}" if section_value else ""
        if not tasks:
            return ChatReply(
                success=True,
                reply=f"No{section_text} tasks found for {day}.",
                suggestions=["Create a new task", "Show all tasks", "Show tomorrow's schedule"],
            )

        lines = []
        for i, task in enumerate(tasks, start=1):
            priority = f" [{task.priority.value}]" if task.priority else ""
            recurring = f" ({task.recurring.value})" if task.recurring else ""
            lines.append(f"{i}. {task.title} ({task.section.value}) - {_time_text(task)}{priority}{recurring}")

        if len(tasks) == 1:
            suggestions = ["Delete that task", "Edit that task", "Create another task"]
        elif len(tasks) == 2:
            suggestions = ["Delete both tasks", "Delete those tasks", "Edit the first task", "Create another task"]
        else:
            suggestions = ["Delete all those tasks", "Delete those tasks", "Edit a specific task", "Create another task"]
        return ChatReply(
            success=True,
            reply=f"Here are your{section_text} tasks for {day} (newest first):\n\n" + "\n".join(lines),
            suggestions=suggestions,
        )

    @_handles_errors("Failed to retrieve your schedule. Please try again.", ["What's my schedule today?", "Show my tasks"])
    async def schedule_query(self, user: CurrentUser, date: Optional[str] = None, section: Optional[str] = None) -> ChatReply:
        day = date or today()
        section_value = _section_filter(section)
        tasks = database.get_active_tasks_db(user.email, date=day, section=section_value)
        tasks.sort(key=lambda t: time_to_minutes(t.start_time) or 0)
        self.store.set_task_context(user.email, tasks, source=ContextSource.ACTIVE)

        if not tasks:
            section_text = f" {section_value}" if section_value else ""
            return ChatReply(
                success=True,
                reply=f"No{section_text} tasks found for {day}.",
                suggestions=["Create a task for today", "Show all my tasks", "What's my schedule tomorrow?"],
            )

        def line(task: Task) -> str:
            priority = f" [{task.priority.value}]" if task.priority else ""
            return f"• {task.title} at {_time_text(task)}{priority}"

        if section_value:
            text = f"Your {section_value} tasks for {day}:\n\n" + "\n".join(line(t) for t in tasks)
        else:
            blocks = []
            for sec in SECTION_ORDER:
                in_section = [t for t in tasks if t.section == sec]
                if in_section:
                    blocks.append(f"**{sec.value.upper()}:**\n" + "\n".join(line(t) for t in in_section))
            text = f"Your schedule for {day}:\n\n" + "\n\n".join(blocks)

        return ChatReply(
            success=True,
            reply=text,
            suggestions=(
                ["Edit that task", "Delete that task", "Create another task"]
                if len(tasks) == 1
                else ["Edit a task", "Delete some tasks", "Create another task", "Show tomorrow's schedule"]
            ),
        )

    @_handles_errors("Failed to retrieve archived tasks. Please try again.", GENERAL_SUGGESTIONS)
    async def show_archived_tasks(
        self, user: CurrentUser, date: Optional[str] = None, section: Optional[str] = None
    ) -> ChatReply:
        section_value = _section_filter(section)
        tasks = database.get_archived_tasks_db(user.email, date=date, section=section_value)
        # An empty archive still moves focus to the archive
        self.store.set_task_context(user.email, tasks, source=ContextSource.ARCHIVE)

        section_text = f" {section_value}" if section_value else ""
        date_text = f" for {date}" if date else ""
        if not tasks:
            return ChatReply(
                success=True,
                reply=f"No{section_text} archived tasks found{date_text}.",
                suggestions=["Show my active tasks", "Create a new task", "What's my schedule today?"],
            )

        lines = []
        for i, task in enumerate(tasks, start=1):
            priority = f" [{task.priority.value}]" if task.priority else ""
            recurring = f" ({task.recurring.value})" if task.recurring else ""
            collaborators = ""
            if task.collaborators:
                collaborators = f" [with: {', '.join(email.split('@')[0] for email in task.collaborators)}]"
            deleted = f" (deleted: {datetime.fromisoformat(task.deleted_at).strftime('%m/%d/%Y')})"
            lines.append(
                f"{i}. {task.title} ({task.section.value}) - {_time_text(task)} on {task.date}"
                f"{priority}{recurring}{collaborators}{deleted}"
            )

        if len(tasks) == 1:
            suggestions = ["Restore that task", "Restore the first task", "Show active tasks"]
        elif len(tasks) == 2:
            suggestions = ["Restore both tasks", "Restore the first task", "Restore the second task", "Show active tasks"]
        elif len(tasks) <= 5:
            suggestions = ["Restore the first task", "Restore the first two tasks", "Restore all tasks", "Show active tasks"]
        else:
            suggestions = ["Restore the first task", "Restore tasks 1-3", "Restore the first 5 tasks", "Show active tasks"]
        return ChatReply(
            success=True,
            reply=(
                f"Here are your{section_text} archived tasks{date_text} ({len(tasks)} total):\n\n"
                + "\n".join(lines)
                + '\n\nYou can restore by saying "restore the first task", "restore tasks 1-3", or "restore [task name]".'
            ),
            suggestions=suggestions,
        )

    # Delete
    @_handles_errors("Failed to delete task(s). Please try again.", GENERAL_SUGGESTIONS)
    async def delete_tasks(self, user: CurrentUser, data: DeleteData) -> ChatReply:
        owner = user.email
        not_found = ["Show my tasks", "Create a new task"]

        if data.type == ReferenceType.BY_SECTION:
            if data.section is None:
                raise InvalidRequest("Which section should I clear?", not_found)
            targets = database.get_active_tasks_db(owner, section=data.section.value)
            if not targets:
                raise NotFoundError(f"No active {data.section.value} tasks to delete.", not_found)
            count = database.soft_delete_tasks_db(t.id for t in targets)
            logger.info("Archived %d %s task(s) for %s", count, data.section.value, owner)
            return ChatReply(
                success=True,
                action="multiple_tasks_deleted",
                reply=f"✅ Deleted {count} {data.section.value} task(s).",
                suggestions=["Show my remaining tasks", "What's my schedule today?"],
            )

        multiple = data.type in (ReferenceType.MULTIPLE_CONTEXTUAL_TASKS, ReferenceType.MULTIPLE_SIMILAR_TASKS)
        if data.task_ids or data.task_identifiers or multiple:
            targets = database.get_tasks_by_ids_db(owner, data.task_ids, archived=False)
            names = list(data.task_identifiers)
            if data.type == ReferenceType.MULTIPLE_SIMILAR_TASKS and data.task_identifier:
                names.append(data.task_identifier)
            for name in names:
                targets.extend(database.find_tasks_by_title_db(owner, name))
            targets = list({t.id: t for t in targets}.values())
            if not targets:
                if not (data.task_ids or names):
                    raise InvalidRequest("Invalid task references. Please show your tasks again.", not_found)
                raise NotFoundError("No matching tasks found to delete.", not_found)
        elif data.task_id:
            targets = database.get_tasks_by_ids_db(owner, [data.task_id], archived=False)
            if not targets:
                raise NotFoundError("Task not found or already deleted.", not_found)
        elif data.task_identifier:
            targets = database.find_tasks_by_title_db(owner, data.task_identifier)[:1]
            if not targets:
                raise NotFoundError(f'Task "{data.task_identifier}" not found.', not_found)
        else:
            raise InvalidRequest("No task reference found.", not_found)

        count = database.soft_delete_tasks_db(t.id for t in targets)
        logger.info("Archived %d task(s) for %s", count, owner)
        after = ["Create a new task", "Show my remaining tasks", "What's my schedule today?"]
        if len(targets) == 1:
            return ChatReply(
                success=True,
                action="task_deleted",
                task_id=targets[0].id,
                reply=f'✅ Task "{targets[0].title}" has been deleted!',
                suggestions=after,
            )
        return ChatReply(
            success=True,
            action="multiple_tasks_deleted",
            reply=f"✅ Deleted {count} tasks: {', '.join(t.title for t in targets)}!",
            suggestions=after,
        )

    # Edit
    def _find_edit_target(self, owner: str, data: EditData) -> Task:
        not_found = ["Show my tasks", "Create a new task"]
        if data.task_id:
            matches = database.get_tasks_by_ids_db(owner, [data.task_id], archived=False)
            if not matches:
                raise NotFoundError("Task not found.", not_found)
        elif data.task_identifier:
            matches = database.find_tasks_by_title_db(owner, data.task_identifier)
            if not matches:
                raise NotFoundError(f'Task "{data.task_identifier}" not found.', not_found)
        else:
            raise InvalidRequest("No task reference found.", not_found)
        return matches[0]

    @_handles_errors("Failed to edit task. Please try again.", GENERAL_SUGGESTIONS)
    async def edit_task(self, user: CurrentUser, data: EditData) -> ChatReply:
        owner = user.email
        task = self._find_edit_target(owner, data)

        updates = {}
        changed = []
        if data.new_title:
            updates["title"] = clean_task_name(data.new_title)
            changed.append(f'name to "{updates["title"]}"')
        if data.new_time:
            updates["start_time"] = data.new_time
            changed.append(f"time to {format_time(data.new_time)}")
        if data.new_end_time:
            updates["end_time"] = data.new_end_time
            changed.append(f"end time to {format_time(data.new_end_time)}")
        elif data.removes_end_time and task.end_time:
            updates["end_time"] = None
            changed.append("removed end time")
        if data.new_date:
            updates["date"] = data.new_date
            changed.append(f"date to {data.new_date}")
        if data.new_section:
            updates["section"] = data.new_section
            changed.append(f"section to {data.new_section.value}")
        if data.new_priority:
            updates["priority"] = data.new_priority
            changed.append(f"priority to {data.new_priority.value}")
        if data.new_recurring == RECURRING_NONE:
            updates["recurring"] = None
            changed.append("recurring to none")
        elif data.new_recurring:
            updates["recurring"] = data.new_recurring
            changed.append(f"recurring to {data.new_recurring}")

        collaborators = list(task.collaborators)
        if data.collaborators_set is not None:
            collaborators = resolve_collaborators(data.collaborators_set)
            changed.append(f"collaborators to {', '.join(collaborators) or 'none'}")
        if data.collaborators_add:
            added = resolve_collaborators(data.collaborators_add)
            collaborators += [email for email in added if email not in collaborators]
            changed.append(f"added collaborators: {', '.join(data.collaborators_add)}")
        if data.collaborators_remove:
            removed = set(resolve_collaborators(data.collaborators_remove))
            collaborators = [email for email in collaborators if email not in removed]
            changed.append(f"removed collaborators: {', '.join(data.collaborators_remove)}")
        if collaborators != task.collaborators:
            updates["collaborators"] = collaborators

        start = updates.get("start_time", task.start_time)
        end = updates["end_time"] if "end_time" in updates else task.end_time
        if not is_range_valid(start, end):
            raise InvalidRequest("End time must be after start time.", ["Set end time to 6:00 PM", "Change start time"])

        title = updates.get("title", task.title)
        section = updates.get("section", task.section)
        date = updates.get("date", task.date)
        significant = (
            title != task.title or start != task.start_time or end != task.end_time
            or date != task.date or section != task.section
        )
        if significant:
            duplicate = database.find_duplicate_task_db(owner, title, section, date, start, end, exclude_id=task.id)
            if duplicate:
                raise ConflictError(
                    f'⚠️ A task "{title}" already exists on {date} at {format_range(start, end)}.',
                    ["Choose a different time", "Edit the title to make it unique", "Show my existing tasks"],
                )

        effective = {field: value for field, value in updates.items() if getattr(task, field) != value}
        if not effective:
            raise InvalidRequest("No changes were applied.", ["Show my tasks", "Create a new task"])

        updated = database.update_task_db(task.id, **effective)
        logger.info("Edited task %s for %s: %s", task.id, owner, ", ".join(effective))
        await self._notify_soon(updated, owner)
        return ChatReply(
            success=True,
            action="task_edited",
            task_id=task.id,
            reply=f'✅ Task "{task.title}" updated successfully! Changed: {", ".join(changed)}.',
            suggestions=AFTER_CHANGE_SUGGESTIONS,
        )

    # Restore
    @_handles_errors("Failed to restore task(s). Please try again.", ["Show my archived tasks", "Create a task"])
    async def restore_tasks(self, user: CurrentUser, data: RestoreData) -> ChatReply:
        owner = user.email
        archive_suggestions = ["Show my archived tasks", "What tasks do I have in archive?"]
        ids = data.referenced_ids()
        if ids:
            targets = database.get_tasks_by_ids_db(owner, ids, archived=True)
        elif data.task_identifier:
            targets = database.find_tasks_by_title_db(owner, data.task_identifier, archived=True)[:1]
        else:
            raise InvalidRequest("No task reference found.", archive_suggestions)
        if not targets:
            if data.task_identifier and not ids:
                raise NotFoundError(f'Archived task "{data.task_identifier}" not found.', archive_suggestions)
            raise NotFoundError("No matching archived tasks found to restore.", archive_suggestions)

        count = database.restore_tasks_db(t.id for t in targets)
        logger.info("Restored %d task(s) for %s", count, owner)
        for target in targets:
            restored = database.get_task_db(target.id)
            if restored:
                await self._notify_soon(restored, owner)

        if len(targets) == 1:
            return ChatReply(
                success=True,
                action="task_restored",
                task_id=targets[0].id,
                reply=f'✅ Task "{targets[0].title}" has been restored!',
                suggestions=AFTER_CHANGE_SUGGESTIONS,
            )
        return ChatReply(
            success=True,
            action="multiple_tasks_restored",
            reply=f"✅ Restored {count} tasks: {', '.join(t.title for t in targets)}!",
            suggestions=AFTER_CHANGE_SUGGESTIONS,
        )

    # Collaborators
    @_handles_errors("Failed to retrieve collaborators. Please try again.", GENERAL_SUGGESTIONS)
    async def list_collaborators(self, user: CurrentUser) -> ChatReply:
        users = database.get_all_users_db()
        if not users:
            return ChatReply(
                success=True, reply="No collaborators found in the system.", suggestions=["Create a task", "Show my tasks"]
            )
        in_use = {email for task in database.get_active_tasks_db(user.email) for email in task.collaborators}
        lines = [
            f"{i}. {u.username}{' (currently in use)' if u.email in in_use else ''}"
            for i, u in enumerate(users, start=1)
        ]
        return ChatReply(
            success=True,
            reply="Available collaborators (use their username):\n\n" + "\n".join(lines),
            suggestions=["Create task with a collaborator", "Show my tasks"],
        )
