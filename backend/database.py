import sqlite3
import json
from datetime import datetime
from typing import Iterable, Optional
from contextlib import contextmanager

from models import Task, TimeOfDay, User, TaskStatus

DATABASE_PATH = "taskchat.db"

UPDATABLE_COLUMNS = (
    "title", "section", "date", "start_time", "end_time", "priority",
    "recurring", "collaborators", "status", "deleted_at",
)


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize database by running Alembic migrations."""
    import subprocess
    import os

    # Run alembic upgrade from the backend directory
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    env = {**os.environ, "TASKCHAT_DATABASE_URL": f"sqlite:///{os.path.abspath(DATABASE_PATH)}"}
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        env=env,
        check=True
    )


def _now() -> str:
    return datetime.now().isoformat()


def _to_column(field: str, value):
    """Serialize a model value into its sqlite representation."""
    if value is None:
        return None
    if field in ("start_time", "end_time"):
        if isinstance(value, TimeOfDay):
            value = value.model_dump()
        return json.dumps(value)
    if field == "collaborators":
        return json.dumps(list(value))
    if hasattr(value, "value"):  # enums
        return value.value
    return value


def _row_to_task(row) -> Task:
    """Convert a database row to a Task model."""
    end_time = json.loads(row["end_time"]) if row["end_time"] else None
    return Task(
        id=row["id"],
        title=row["title"],
        section=row["section"],
        date=row["date"],
        start_time=json.loads(row["start_time"]),
        end_time=end_time,
        priority=row["priority"] or None,
        recurring=row["recurring"] or None,
        collaborators=json.loads(row["collaborators"] or "[]"),
        status=row["status"],
        created_by=row["created_by"],
        deleted_at=row["deleted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_task_db(
    task_id: str,
    owner: str,
    title: str,
    section: str,
    date: str,
    start_time: TimeOfDay,
    end_time: Optional[TimeOfDay] = None,
    priority: Optional[str] = None,
    recurring: Optional[str] = None,
    collaborators: Optional[list[str]] = None,
    user_id: Optional[str] = None,
) -> Task:
    """Insert a task. Optional attributes stay NULL unless explicitly supplied."""
    now = _now()
    with get_db() as conn:
        conn.execute(
            """INSERT INTO tasks
               (id, title, section, date, start_time, end_time, priority, recurring,
                collaborators, status, created_by, user_id, deleted_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)""",
            (
                task_id, title, _to_column("section", section), date,
                _to_column("start_time", start_time), _to_column("end_time", end_time),
                _to_column("priority", priority), _to_column("recurring", recurring),
                _to_column("collaborators", collaborators or []),
                TaskStatus.PENDING.value, owner, user_id, now, now,
            )
        )
        conn.commit()
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row)


def get_task_db(task_id: str) -> Optional[Task]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None


def get_active_tasks_db(owner: str, date: Optional[str] = None, section: Optional[str] = None) -> list[Task]:
    """Non-archived tasks for an owner, newest first."""
    query = "SELECT * FROM tasks WHERE created_by = ? AND deleted_at IS NULL"
    params: list = [owner]
    if date:
        query += " AND date = ?"
        params.append(date)
    if section:
        query += " AND section = ?"
        params.append(section)
    query += " ORDER BY created_at DESC"
    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
        return [_row_to_task(row) for row in rows]


def get_archived_tasks_db(owner: str, date: Optional[str] = None, section: Optional[str] = None) -> list[Task]:
    """Soft-deleted tasks for an owner, most recently deleted first."""
    query = "SELECT * FROM tasks WHERE created_by = ? AND deleted_at IS NOT NULL"
    params: list = [owner]
    if date:
        query += " AND date = ?"
        params.append(date)
    if section:
        query += " AND section = ?"
        params.append(section)
    query += " ORDER BY deleted_at DESC"
    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
        return [_row_to_task(row) for row in rows]


def get_tasks_by_ids_db(owner: str, task_ids: Iterable[str], archived: bool) -> list[Task]:
    """Owned tasks among task_ids, restricted to archived or non-archived rows."""
    ids = [str(i) for i in task_ids if i]
    if not ids:
        return []
    placeholders = ", ".join("?" for _ in ids)
    archived_clause = "deleted_at IS NOT NULL" if archived else "deleted_at IS NULL"
    with get_db() as conn:
        rows = conn.execute(
            f"SELECT * FROM tasks WHERE id IN ({placeholders}) AND created_by = ? AND {archived_clause}",
            (*ids, owner)
        ).fetchall()
        return [_row_to_task(row) for row in rows]


def find_tasks_by_title_db(owner: str, fragment: str, archived: bool = False) -> list[Task]:
    """Owned tasks whose title contains fragment (case-insensitive)."""
    fragment_lower = fragment.lower().strip()
    if not fragment_lower:
        return []
    tasks = get_archived_tasks_db(owner) if archived else get_active_tasks_db(owner)
    return [task for task in tasks if fragment_lower in task.title.lower()]


def find_duplicate_task_db(
    owner: str,
    title: str,
    section: str,
    date: str,
    start_time: TimeOfDay,
    end_time: Optional[TimeOfDay] = None,
    exclude_id: Optional[str] = None,
) -> Optional[Task]:
    """
    Find a non-archived task with the same title, section, date and start time.
    The end time only takes part in the comparison when one is given.
    """
    for task in get_active_tasks_db(owner, date=date, section=_to_column("section", section)):
        if task.id == exclude_id or task.title != title:
            continue
        if task.start_time != start_time:
            continue
        if end_time is not None and task.end_time != end_time:
            continue
        return task
    return None


def update_task_db(task_id: str, **updates) -> Optional[Task]:
    """
    Update a task with any fields provided.
    Only updates fields that differ from current values.

    Args:
        task_id: Task ID to update
        **updates: Column names and values (None clears a nullable column)
    """
    with get_db() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None

        changes = {}
        for field, new_value in updates.items():
            if field not in UPDATABLE_COLUMNS:
                continue
            stored = _to_column(field, new_value)
            if stored != row[field]:
                changes[field] = stored

        if changes:
            changes["updated_at"] = _now()
            set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
            values = list(changes.values()) + [task_id]
            conn.execute(f"UPDATE tasks SET {set_clause} WHERE id = ?", values)
            conn.commit()

        updated_row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(updated_row)


def soft_delete_tasks_db(task_ids: Iterable[str]) -> int:
    """Archive tasks: status Deleted, deleted_at now. Returns rows changed."""
    ids = [str(i) for i in task_ids]
    if not ids:
        return 0
    now = _now()
    placeholders = ", ".join("?" for _ in ids)
    with get_db() as conn:
        cursor = conn.execute(
            f"""UPDATE tasks SET status = ?, deleted_at = ?, updated_at = ?
                WHERE id IN ({placeholders}) AND deleted_at IS NULL""",
            (TaskStatus.DELETED.value, now, now, *ids)
        )
        conn.commit()
        return cursor.rowcount


def restore_tasks_db(task_ids: Iterable[str]) -> int:
    """Un-archive tasks: deleted_at cleared, status Pending. Returns rows changed."""
    ids = [str(i) for i in task_ids]
    if not ids:
        return 0
    placeholders = ", ".join("?" for _ in ids)
    with get_db() as conn:
        cursor = conn.execute(
            f"""UPDATE tasks SET status = ?, deleted_at = NULL, updated_at = ?
                WHERE id IN ({placeholders}) AND deleted_at IS NOT NULL""",
            (TaskStatus.PENDING.value, _now(), *ids)
        )
        conn.commit()
        return cursor.rowcount


def get_tasks_for_date_db(date: str) -> list[Task]:
    """All owners' tasks on a date that can still produce reminders."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM tasks WHERE date = ? AND deleted_at IS NULL AND status NOT IN (?, ?)",
            (date, TaskStatus.DELETED.value, TaskStatus.COMPLETE.value)
        ).fetchall()
        return [_row_to_task(row) for row in rows]


# Collaborator directory
def get_all_users_db() -> list[User]:
    with get_db() as conn:
        rows = conn.execute("SELECT email, name FROM users ORDER BY created_at").fetchall()
        return [User(email=row["email"], name=row["name"]) for row in rows]


def create_user_db(email: str, name: Optional[str] = None) -> User:
    with get_db() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO users (email, name, created_at) VALUES (?, ?, ?)",
            (email, name, _now())
        )
        conn.commit()
    return User(email=email, name=name)


# Notification log
def record_notification_db(notification_id: str, task_id: str, utc_offset: float, notification_type: str) -> bool:
    """Record a sent reminder. Returns False if this key was already recorded."""
    with get_db() as conn:
        cursor = conn.execute(
            """INSERT OR IGNORE INTO notifications
               (notification_id, task_id, utc_offset, notification_type, sent_at)
               VALUES (?, ?, ?, ?, ?)""",
            (notification_id, task_id, utc_offset, notification_type, _now())
        )
        conn.commit()
        return cursor.rowcount > 0


def get_notification_history_db(email: str, limit: int = 50) -> list[dict]:
    """Reminders sent for tasks the user owns or collaborates on, newest first."""
    with get_db() as conn:
        rows = conn.execute("SELECT id, created_by, collaborators FROM tasks").fetchall()
        task_ids = [
            row["id"] for row in rows
            if row["created_by"] == email or email in json.loads(row["collaborators"] or "[]")
        ]
        if not task_ids:
            return []
        placeholders = ", ".join("?" for _ in task_ids)
        history = conn.execute(
            f"""SELECT notification_id, task_id, utc_offset, notification_type, sent_at
                FROM notifications WHERE task_id IN ({placeholders})
                ORDER BY sent_at DESC LIMIT ?""",
            (*task_ids, limit)
        ).fetchall()
        return [dict(row) for row in history]
