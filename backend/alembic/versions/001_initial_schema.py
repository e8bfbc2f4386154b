"""Initial schema - tasks and the collaborator directory

Revision ID: 001
Revises: None
Create Date: 2026-09-14

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    # start_time / end_time hold {"hour", "minute", "period"} as JSON
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            section TEXT NOT NULL DEFAULT 'personal',
            date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            priority TEXT,
            recurring TEXT,
            collaborators TEXT DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'Pending',
            created_by TEXT NOT NULL,
            user_id TEXT,
            deleted_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.execute(text("CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks (created_by, deleted_at)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS idx_tasks_date ON tasks (date)"))

    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            created_at TEXT NOT NULL
        )
    """))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP TABLE IF EXISTS users"))
    conn.execute(text("DROP INDEX IF EXISTS idx_tasks_date"))
    conn.execute(text("DROP INDEX IF EXISTS idx_tasks_owner"))
    conn.execute(text("DROP TABLE IF EXISTS tasks"))
