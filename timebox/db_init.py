from __future__ import annotations

import logging

from sqlalchemy import text as sql_text

from timebox.db import get_engine

logger = logging.getLogger(__name__)

TASKS_TABLE = "tasks"
BLOCKS_TABLE = "schedule_blocks"
HABITS_TABLE = "habits"
WEIGHTS_TABLE = "weight_entries"
NOTES_TABLE = "daily_notes"
SETTINGS_TABLE = "settings"
GOOGLE_TOKENS_TABLE = "google_calendar_tokens"
SYNC_OUTBOX_TABLE = "sync_outbox"


async def init_db():
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {TASKS_TABLE} (
                    id TEXT PRIMARY KEY,
                    user_email TEXT NOT NULL,
                    title TEXT NOT NULL,
                    tag TEXT,
                    tag_color TEXT,
                    assigned_date TEXT,
                    time TEXT,
                    completed INTEGER DEFAULT 0,
                    completed_at TEXT,
                    list_type TEXT NOT NULL DEFAULT 'active',
                    is_recurring INTEGER DEFAULT 0,
                    recurrence_pattern TEXT,
                    parent_task_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {BLOCKS_TABLE} (
                    id TEXT PRIMARY KEY,
                    user_email TEXT NOT NULL,
                    day TEXT NOT NULL,
                    title TEXT NOT NULL,
                    start_hour REAL NOT NULL,
                    duration_hour REAL NOT NULL,
                    tag TEXT,
                    color TEXT,
                    owner_kind TEXT NOT NULL DEFAULT 'free',
                    owner_id TEXT,
                    remote_id TEXT,
                    calendar_id TEXT,
                    completed INTEGER DEFAULT 0,
                    updated_at TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {HABITS_TABLE} (
                    id TEXT PRIMARY KEY,
                    user_email TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {WEIGHTS_TABLE} (
                    user_email TEXT NOT NULL,
                    date TEXT NOT NULL,
                    weight REAL NOT NULL,
                    updated_at TEXT,
                    PRIMARY KEY (user_email, date)
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {NOTES_TABLE} (
                    user_email TEXT NOT NULL,
                    date TEXT NOT NULL,
                    content TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (user_email, date)
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {SETTINGS_TABLE} (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {GOOGLE_TOKENS_TABLE} (
                    user_email TEXT PRIMARY KEY,
                    refresh_token_enc TEXT NOT NULL,
                    access_token TEXT,
                    expires_at TEXT,
                    scope TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {SYNC_OUTBOX_TABLE} (
                    id TEXT PRIMARY KEY,
                    user_email TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    payload_json TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER DEFAULT 0,
                    next_retry_at TEXT,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
        )

    async def ensure_column(table_name: str, column_name: str, column_ddl: str) -> None:
        try:
            async with engine.begin() as conn:
                await conn.execute(
                    sql_text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_ddl}")
                )
        except Exception:
            logger.debug("Column %s.%s already present", table_name, column_name)

    async def ensure_index(index_sql: str) -> None:
        try:
            async with engine.begin() as conn:
                await conn.execute(sql_text(index_sql))
        except Exception:
            logger.warning("Index statement failed: %s", index_sql, exc_info=True)

    await ensure_column(BLOCKS_TABLE, "calendar_name", "TEXT")

    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{TASKS_TABLE}_user_date "
        f"ON {TASKS_TABLE} (user_email, assigned_date, list_type)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{BLOCKS_TABLE}_user_day "
        f"ON {BLOCKS_TABLE} (user_email, day)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{BLOCKS_TABLE}_remote "
        f"ON {BLOCKS_TABLE} (user_email, remote_id)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{SYNC_OUTBOX_TABLE}_status "
        f"ON {SYNC_OUTBOX_TABLE} (user_email, status, next_retry_at)"
    )
