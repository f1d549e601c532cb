from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import text as sql_text

from timebox.db import get_sessionmaker
from timebox.db_init import (
    BLOCKS_TABLE,
    GOOGLE_TOKENS_TABLE,
    HABITS_TABLE,
    NOTES_TABLE,
    SETTINGS_TABLE,
    SYNC_OUTBOX_TABLE,
    TASKS_TABLE,
    WEIGHTS_TABLE,
)
from timebox.schemas import DailyNote, Habit, Origin, Task, TimedEntry, WeightEntry

logger = logging.getLogger(__name__)

TASK_COLUMNS = [
    "id",
    "user_email",
    "title",
    "tag",
    "tag_color",
    "assigned_date",
    "time",
    "completed",
    "completed_at",
    "list_type",
    "is_recurring",
    "recurrence_pattern",
    "parent_task_id",
    "created_at",
    "updated_at",
]

BLOCK_COLUMNS = [
    "id",
    "user_email",
    "day",
    "title",
    "start_hour",
    "duration_hour",
    "tag",
    "color",
    "owner_kind",
    "owner_id",
    "remote_id",
    "calendar_id",
    "calendar_name",
    "completed",
    "updated_at",
]


def _new_id() -> str:
    return uuid4().hex


def _iso(value):
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _upsert_sql(table: str, columns: list[str], key_columns: list[str]) -> str:
    placeholders = ", ".join(f":{col}" for col in columns)
    updates = ", ".join(f"{col}=EXCLUDED.{col}" for col in columns if col not in key_columns)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT({', '.join(key_columns)}) DO UPDATE SET {updates}"
    )


def _task_record(user_email: str, task: dict) -> dict:
    record = {col: task.get(col) for col in TASK_COLUMNS}
    record["user_email"] = user_email
    record["id"] = task.get("id") or _new_id()
    record["title"] = (task.get("title") or "").strip() or "Untitled task"
    record["assigned_date"] = _iso(task.get("assigned_date"))
    record["completed_at"] = _iso(task.get("completed_at"))
    record["completed"] = int(bool(task.get("completed")))
    record["is_recurring"] = int(bool(task.get("is_recurring")))
    record["list_type"] = getattr(task.get("list_type"), "value", task.get("list_type")) or "active"
    record["created_at"] = _iso(task.get("created_at")) or datetime.now(timezone.utc).isoformat()
    record["updated_at"] = datetime.now(timezone.utc).isoformat()
    return record


def _normalize_task_row(row) -> dict:
    if not row:
        return {}
    payload = dict(row)
    payload["completed"] = bool(payload.get("completed"))
    payload["is_recurring"] = bool(payload.get("is_recurring"))
    payload.pop("user_email", None)
    payload.pop("updated_at", None)
    return payload


def _block_record(user_email: str, block: dict) -> dict:
    record = {col: block.get(col) for col in BLOCK_COLUMNS}
    record["user_email"] = user_email
    record["day"] = _iso(block.get("day"))
    record["owner_kind"] = getattr(block.get("owner_kind"), "value", block.get("owner_kind")) or "free"
    record["completed"] = int(bool(block.get("completed")))
    record["updated_at"] = datetime.now(timezone.utc).isoformat()
    return record


def _normalize_block_row(row) -> dict:
    payload = dict(row)
    payload["completed"] = bool(payload.get("completed"))
    payload.pop("user_email", None)
    payload.pop("updated_at", None)
    return payload


async def list_tasks_for_day(user_email: str, day_iso: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(TASK_COLUMNS)}
                FROM {TASKS_TABLE}
                WHERE user_email = :user_email
                  AND assigned_date = :day
                  AND is_recurring = 0
                ORDER BY created_at
                """
            ),
            {"user_email": user_email, "day": day_iso},
        )).mappings().all()
    return [_normalize_task_row(row) for row in rows]


async def list_tasks_by_list(user_email: str, list_type: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(TASK_COLUMNS)}
                FROM {TASKS_TABLE}
                WHERE user_email = :user_email
                  AND list_type = :list_type
                  AND is_recurring = 0
                ORDER BY created_at
                """
            ),
            {"user_email": user_email, "list_type": list_type},
        )).mappings().all()
    return [_normalize_task_row(row) for row in rows]


async def list_recurring_templates(user_email: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE} "
                "WHERE user_email = :user_email AND is_recurring = 1 ORDER BY created_at"
            ),
            {"user_email": user_email},
        )).mappings().all()
    return [_normalize_task_row(row) for row in rows]


async def list_overdue_tasks(user_email: str, before_iso: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(TASK_COLUMNS)}
                FROM {TASKS_TABLE}
                WHERE user_email = :user_email
                  AND assigned_date < :before
                  AND completed = 0
                  AND list_type = 'active'
                  AND is_recurring = 0
                  AND parent_task_id IS NULL
                """
            ),
            {"user_email": user_email, "before": before_iso},
        )).mappings().all()
    return [_normalize_task_row(row) for row in rows]


async def get_task(user_email: str, task_id: str) -> dict:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(
                f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE} "
                "WHERE id = :id AND user_email = :user_email"
            ),
            {"id": task_id, "user_email": user_email},
        )).mappings().fetchone()
    return _normalize_task_row(row) if row else {}


async def upsert_task(user_email: str, task: dict) -> dict:
    record = _task_record(user_email, task)
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(sql_text(_upsert_sql(TASKS_TABLE, TASK_COLUMNS, ["id"])), record)
        await session.commit()
    return record


async def delete_task(user_email: str, task_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {BLOCKS_TABLE} WHERE user_email = :user_email AND owner_id = :task_id"),
            {"user_email": user_email, "task_id": task_id},
        )
        await session.execute(
            sql_text(f"DELETE FROM {TASKS_TABLE} WHERE user_email = :user_email AND id = :task_id"),
            {"user_email": user_email, "task_id": task_id},
        )
        await session.commit()


async def list_blocks(user_email: str, day_iso: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(BLOCK_COLUMNS)}
                FROM {BLOCKS_TABLE}
                WHERE user_email = :user_email AND day = :day
                ORDER BY start_hour
                """
            ),
            {"user_email": user_email, "day": day_iso},
        )).mappings().all()
    return [_normalize_block_row(row) for row in rows]


async def list_blocks_for_owner(user_email: str, owner_id: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"SELECT {', '.join(BLOCK_COLUMNS)} FROM {BLOCKS_TABLE} "
                "WHERE user_email = :user_email AND owner_id = :owner_id ORDER BY day"
            ),
            {"user_email": user_email, "owner_id": owner_id},
        )).mappings().all()
    return [_normalize_block_row(row) for row in rows]


async def get_block(user_email: str, block_id: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(
                f"SELECT {', '.join(BLOCK_COLUMNS)} FROM {BLOCKS_TABLE} "
                "WHERE user_email = :user_email AND id = :id"
            ),
            {"user_email": user_email, "id": block_id},
        )).mappings().fetchone()
    return _normalize_block_row(row) if row else None


async def upsert_block(user_email: str, block: dict) -> None:
    record = _block_record(user_email, block)
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(sql_text(_upsert_sql(BLOCKS_TABLE, BLOCK_COLUMNS, ["id"])), record)
        await session.commit()


async def delete_block(user_email: str, block_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {BLOCKS_TABLE} WHERE user_email = :user_email AND id = :id"),
            {"user_email": user_email, "id": block_id},
        )
        await session.commit()


async def list_habits(user_email: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(f"SELECT id, payload_json FROM {HABITS_TABLE} WHERE user_email = :user_email"),
            {"user_email": user_email},
        )).mappings().all()
    habits = []
    for row in rows:
        try:
            habits.append(json.loads(row["payload_json"] or "{}"))
        except ValueError:
            logger.warning("Skipping habit %s with unreadable payload", row["id"])
    return habits


async def upsert_habit(user_email: str, habit: dict) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(_upsert_sql(HABITS_TABLE, ["id", "user_email", "payload_json", "updated_at"], ["id"])),
            {
                "id": habit["id"],
                "user_email": user_email,
                "payload_json": json.dumps(habit, ensure_ascii=False, default=str),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await session.commit()


async def delete_habit(user_email: str, habit_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {HABITS_TABLE} WHERE user_email = :user_email AND id = :id"),
            {"user_email": user_email, "id": habit_id},
        )
        await session.commit()


async def list_weight_entries(user_email: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"SELECT date, weight FROM {WEIGHTS_TABLE} WHERE user_email = :user_email ORDER BY date"
            ),
            {"user_email": user_email},
        )).mappings().all()
    return [dict(row) for row in rows]


async def replace_weight_entries(user_email: str, entries: list[dict]) -> None:
    session_factory = get_sessionmaker()
    now = datetime.now(timezone.utc).isoformat()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {WEIGHTS_TABLE} WHERE user_email = :user_email"),
            {"user_email": user_email},
        )
        for entry in entries:
            await session.execute(
                sql_text(
                    f"INSERT INTO {WEIGHTS_TABLE} (user_email, date, weight, updated_at) "
                    "VALUES (:user_email, :date, :weight, :updated_at)"
                ),
                {"user_email": user_email, "date": _iso(entry["date"]), "weight": entry["weight"], "updated_at": now},
            )
        await session.commit()


async def get_daily_note(user_email: str, day_iso: str) -> str | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(f"SELECT content FROM {NOTES_TABLE} WHERE user_email = :user_email AND date = :date"),
            {"user_email": user_email, "date": day_iso},
        )).fetchone()
    return row[0] if row else None


async def save_daily_note(user_email: str, day_iso: str, content: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(_upsert_sql(NOTES_TABLE, ["user_email", "date", "content", "updated_at"], ["user_email", "date"])),
            {
                "user_email": user_email,
                "date": day_iso,
                "content": content,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await session.commit()


async def get_setting(user_email: str, key: str) -> str | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(f"SELECT value FROM {SETTINGS_TABLE} WHERE key = :key"),
            {"key": f"{user_email}::{key}"},
        )).fetchone()
    return row[0] if row else None


async def set_setting(user_email: str, key: str, value: str | None) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(_upsert_sql(SETTINGS_TABLE, ["key", "value"], ["key"])),
            {"key": f"{user_email}::{key}", "value": value},
        )
        await session.commit()


async def enqueue_outbox(user_email: str, entity_type: str, entity_id: str, action: str, payload: dict | None = None) -> None:
    session_factory = get_sessionmaker()
    now = datetime.now(timezone.utc).isoformat()
    row = {
        "id": _new_id(),
        "user_email": user_email,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "payload_json": json.dumps(payload or {}, ensure_ascii=False, default=str),
        "status": "pending",
        "attempts": 0,
        "next_retry_at": None,
        "last_error": None,
        "created_at": now,
        "updated_at": now,
    }
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {SYNC_OUTBOX_TABLE}
                (id, user_email, entity_type, entity_id, action, payload_json, status, attempts, next_retry_at, last_error, created_at, updated_at)
                VALUES (:id, :user_email, :entity_type, :entity_id, :action, :payload_json, :status, :attempts, :next_retry_at, :last_error, :created_at, :updated_at)
                """
            ),
            row,
        )
        await session.commit()


async def list_pending_outbox(limit: int = 25, now: datetime | None = None) -> list[dict]:
    session_factory = get_sessionmaker()
    now_iso = (now or datetime.now(timezone.utc)).isoformat()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT id, user_email, entity_type, entity_id, action, payload_json,
                       status, attempts, next_retry_at, last_error, created_at, updated_at
                FROM {SYNC_OUTBOX_TABLE}
                WHERE status = 'pending'
                  AND (next_retry_at IS NULL OR next_retry_at <= :now)
                ORDER BY created_at ASC
                LIMIT :limit
                """
            ),
            {"now": now_iso, "limit": limit},
        )).mappings().all()
    return [dict(row) for row in rows]


async def mark_outbox_done(outbox_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                UPDATE {SYNC_OUTBOX_TABLE}
                SET status = 'done', updated_at = :updated_at
                WHERE id = :id
                """
            ),
            {"id": outbox_id, "updated_at": datetime.now(timezone.utc).isoformat()},
        )
        await session.commit()


async def mark_outbox_error(outbox_id: str, attempts: int, next_retry_at: str, error: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                UPDATE {SYNC_OUTBOX_TABLE}
                SET status = 'pending',
                    attempts = :attempts,
                    next_retry_at = :next_retry_at,
                    last_error = :last_error,
                    updated_at = :updated_at
                WHERE id = :id
                """
            ),
            {
                "id": outbox_id,
                "attempts": attempts,
                "next_retry_at": next_retry_at,
                "last_error": error[:500],
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await session.commit()


async def get_google_tokens(user_email: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(
                f"SELECT user_email, refresh_token_enc, access_token, expires_at, scope, updated_at FROM {GOOGLE_TOKENS_TABLE} WHERE user_email = :user_email"
            ),
            {"user_email": user_email},
        )).mappings().fetchone()
    return dict(row) if row else None


async def store_google_tokens(
    user_email: str,
    refresh_token_enc: str,
    access_token: str | None = None,
    expires_at: str | None = None,
    scope: str | None = None,
) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {GOOGLE_TOKENS_TABLE}
                    (user_email, refresh_token_enc, access_token, expires_at, scope, updated_at)
                VALUES
                    (:user_email, :refresh_token_enc, :access_token, :expires_at, :scope, :updated_at)
                ON CONFLICT(user_email) DO UPDATE SET
                    refresh_token_enc = EXCLUDED.refresh_token_enc,
                    access_token = COALESCE(EXCLUDED.access_token, {GOOGLE_TOKENS_TABLE}.access_token),
                    expires_at = COALESCE(EXCLUDED.expires_at, {GOOGLE_TOKENS_TABLE}.expires_at),
                    scope = COALESCE(EXCLUDED.scope, {GOOGLE_TOKENS_TABLE}.scope),
                    updated_at = EXCLUDED.updated_at
                """
            ),
            {
                "user_email": user_email,
                "refresh_token_enc": refresh_token_enc,
                "access_token": access_token,
                "expires_at": expires_at,
                "scope": scope,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await session.commit()


async def update_google_access_token(user_email: str, access_token: str, expires_at: str, scope: str | None = None) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                UPDATE {GOOGLE_TOKENS_TABLE}
                SET access_token = :access_token,
                    expires_at = :expires_at,
                    scope = COALESCE(:scope, scope),
                    updated_at = :updated_at
                WHERE user_email = :user_email
                """
            ),
            {
                "user_email": user_email,
                "access_token": access_token,
                "expires_at": expires_at,
                "scope": scope,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await session.commit()


class UserRepository:
    """Typed view over the module-level queries for a single user.

    This is the persistence port the schedule store, habit book and
    workspace depend on; tests substitute an in-memory double.
    """

    def __init__(self, user_email: str):
        self.user_email = user_email

    async def list_tasks_for_day(self, day: date) -> list[Task]:
        rows = await list_tasks_for_day(self.user_email, day.isoformat())
        return [Task.model_validate(row) for row in rows]

    async def list_tasks_by_list(self, list_type: str) -> list[Task]:
        rows = await list_tasks_by_list(self.user_email, list_type)
        return [Task.model_validate(row) for row in rows]

    async def list_recurring_templates(self) -> list[Task]:
        rows = await list_recurring_templates(self.user_email)
        return [Task.model_validate(row) for row in rows]

    async def list_overdue_tasks(self, today: date) -> list[Task]:
        rows = await list_overdue_tasks(self.user_email, today.isoformat())
        return [Task.model_validate(row) for row in rows]

    async def get_task(self, task_id: str) -> Task | None:
        row = await get_task(self.user_email, task_id)
        return Task.model_validate(row) if row else None

    async def save_task(self, task: Task) -> None:
        await upsert_task(self.user_email, task.model_dump())

    async def delete_task(self, task_id: str) -> None:
        await delete_task(self.user_email, task_id)

    async def list_blocks(self, day: date) -> list[TimedEntry]:
        rows = await list_blocks(self.user_email, day.isoformat())
        return [TimedEntry.model_validate({**row, "origin": Origin.LOCAL}) for row in rows]

    async def list_blocks_for_owner(self, owner_id: str) -> list[TimedEntry]:
        rows = await list_blocks_for_owner(self.user_email, owner_id)
        return [TimedEntry.model_validate({**row, "origin": Origin.LOCAL}) for row in rows]

    async def save_block(self, entry: TimedEntry) -> None:
        await upsert_block(self.user_email, entry.model_dump())

    async def delete_block(self, entry_id: str) -> None:
        await delete_block(self.user_email, entry_id)

    async def list_habits(self) -> list[Habit]:
        return [Habit.model_validate(row) for row in await list_habits(self.user_email)]

    async def save_habit(self, habit: Habit) -> None:
        await upsert_habit(self.user_email, habit.model_dump(mode="json"))

    async def delete_habit(self, habit_id: str) -> None:
        await delete_habit(self.user_email, habit_id)

    async def list_weights(self) -> list[WeightEntry]:
        return [WeightEntry.model_validate(row) for row in await list_weight_entries(self.user_email)]

    async def save_weights(self, entries: list[WeightEntry]) -> None:
        await replace_weight_entries(self.user_email, [entry.model_dump() for entry in entries])

    async def get_note(self, day: date) -> DailyNote:
        content = await get_daily_note(self.user_email, day.isoformat())
        return DailyNote(date=day, content=content or "")

    async def save_note(self, note: DailyNote) -> None:
        await save_daily_note(self.user_email, note.date.isoformat(), note.content)

    async def get_setting(self, key: str) -> str | None:
        return await get_setting(self.user_email, key)

    async def set_setting(self, key: str, value: str | None) -> None:
        await set_setting(self.user_email, key, value)

    async def enqueue_push(self, action: str, entry_id: str, payload: dict | None = None) -> None:
        await enqueue_outbox(self.user_email, "block", entry_id, action, payload)
