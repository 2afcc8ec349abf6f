"""Ad-hoc database migrations for Taskflow."""

from __future__ import annotations

from sqlalchemy import text

from core.settings import SYNC
from models.tag import DEFAULT_TAG_COLOR


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_task_columns(conn) -> None:
    columns = {
        "recurring_frequency": "TEXT",
        "recurring_custom_days": "TEXT",
        "recurring_end_date": "TEXT",
        "recurring_end_after": "INTEGER",
        "recurring_occurrence_index": "INTEGER NOT NULL DEFAULT 0",
        "google_calendar_event_id": "TEXT",
        "google_calendar_id": "TEXT",
        "sync_source": "TEXT",
        "last_synced_at": "TEXT",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "task", name):
            conn.execute(text(f"ALTER TABLE task ADD COLUMN {name} {ddl_type}"))

    # early builds tagged imported rows with a bare "calendar"
    conn.execute(
        text(
            """
            UPDATE task
            SET sync_source = 'google_calendar'
            WHERE sync_source = 'calendar'
            """
        )
    )


def migrate_named_task_tags(conn) -> None:
    """Move task_tags rows keyed by tag name onto the tags table."""

    if not _column_exists(conn, "task_tags", "tag") or _column_exists(conn, "task_tags", "tag_id"):
        return
    conn.execute(
        text(
            """
            INSERT OR IGNORE INTO tags (user_id, name, color_hex, created_at, updated_at)
            SELECT DISTINCT t.user_id, tt.tag, :color, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP
            FROM task_tags tt JOIN task t ON t.id = tt.task_id
            """
        ),
        {"color": DEFAULT_TAG_COLOR},
    )
    conn.execute(text("ALTER TABLE task_tags RENAME TO task_tags_named"))
    conn.execute(
        text(
            """
            CREATE TABLE task_tags (
                task_id TEXT NOT NULL REFERENCES task(id),
                tag_id INTEGER NOT NULL REFERENCES tags(id),
                PRIMARY KEY (task_id, tag_id)
            )
            """
        )
    )
    conn.execute(
        text(
            """
            INSERT INTO task_tags (task_id, tag_id)
            SELECT tt.task_id, g.id
            FROM task_tags_named tt
            JOIN task t ON t.id = tt.task_id
            JOIN tags g ON g.user_id = t.user_id AND g.name = tt.tag
            """
        )
    )
    conn.execute(text("DROP TABLE task_tags_named"))


def ensure_task_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_task_calendar_event
            ON task (google_calendar_id, google_calendar_event_id)
            """
        )
    )
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_task_tags_task ON task_tags(task_id)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_task_tags_tag ON task_tags(tag_id)"))
    conn.execute(
        text("CREATE INDEX IF NOT EXISTS ix_task_history_task ON task_history(user_id, task_id)")
    )


def ensure_integration_columns(conn) -> None:
    columns = {
        "days_past": f"INTEGER NOT NULL DEFAULT {SYNC.lookback_days}",
        "days_future": f"INTEGER NOT NULL DEFAULT {SYNC.lookahead_days}",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "user_integration", name):
            conn.execute(text(f"ALTER TABLE user_integration ADD COLUMN {name} {ddl_type}"))


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_task_columns(conn)
        migrate_named_task_tags(conn)
        ensure_integration_columns(conn)
        ensure_task_indexes(conn)


__all__ = ["run_all"]
