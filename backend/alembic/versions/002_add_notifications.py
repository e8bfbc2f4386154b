"""Add notifications log for reminder idempotency

Revision ID: 002
Revises: 001
Create Date: 2026-09-28

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()

    # notification_id is "{task_id}_{day}_{type}_UTC{offset}"; one row per reminder sent
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY,
            notification_id TEXT NOT NULL UNIQUE,
            task_id TEXT NOT NULL,
            utc_offset REAL NOT NULL,
            notification_type TEXT NOT NULL,
            sent_at TEXT NOT NULL
        )
    """))
    conn.execute(text("CREATE INDEX IF NOT EXISTS idx_notifications_task ON notifications (task_id)"))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP INDEX IF EXISTS idx_notifications_task"))
    conn.execute(text("DROP TABLE IF EXISTS notifications"))
