from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from timebox import repositories
from timebox.errors import AuthExpired
from timebox.schemas import Origin, TimedEntry
from timebox.services.google_calendar_service import GoogleCalendarClient
from timebox.settings import get_settings

logger = logging.getLogger(__name__)


def retry_delay(attempts: int) -> int:
    return min(300, 2 ** min(attempts, 8))


async def _handle_block_outbox(row: dict, client) -> None:
    user_email = row["user_email"]
    action = row["action"]
    payload = json.loads(row.get("payload_json") or "{}")
    entry = TimedEntry.model_validate(payload["entry"]) if payload.get("entry") else None
    calendar_id = payload.get("calendar_id")
    remote_id = payload.get("remote_id")

    if action == "create":
        if entry is None or entry.day is None:
            return
        if entry.origin == Origin.LOCAL:
            current = await repositories.get_block(user_email, entry.id)
            if not current or current.get("remote_id"):
                return
            entry = TimedEntry.model_validate({**current, "origin": Origin.LOCAL})
        calendar_id, remote_id = await client.create_event(entry, entry.day)
        await repositories.upsert_block(
            user_email,
            {**entry.model_dump(), "remote_id": remote_id, "calendar_id": calendar_id},
        )
        return

    if action == "update":
        if entry is None or entry.day is None or not (calendar_id and remote_id):
            return
        await client.update_event(calendar_id, remote_id, entry, entry.day)
        return

    if action == "delete":
        if calendar_id and remote_id:
            await client.delete_event(calendar_id, remote_id)


async def process_outbox_once(
    limit: int = 25,
    client_factory: Callable[[str], object] | None = None,
) -> int:
    rows = await repositories.list_pending_outbox(limit=limit)
    if not rows:
        return 0
    client_factory = client_factory or GoogleCalendarClient
    clients: dict[str, object] = {}
    for row in rows:
        user_email = row["user_email"]
        client = clients.get(user_email)
        if client is None:
            client = clients[user_email] = client_factory(user_email)
        try:
            if row.get("entity_type") == "block":
                await _handle_block_outbox(row, client)
            await repositories.mark_outbox_done(row["id"])
        except Exception as exc:
            attempts = int(row.get("attempts") or 0) + 1
            delay = retry_delay(attempts)
            if isinstance(exc, AuthExpired):
                delay = 300
            next_retry_at = (datetime.now(timezone.utc) + timedelta(seconds=delay)).isoformat()
            logger.warning("Outbox %s %s failed (attempt %s): %s", row["action"], row["entity_id"], attempts, exc)
            await repositories.mark_outbox_error(row["id"], attempts, next_retry_at, str(exc))
    return len(rows)


async def run_forever(workspace=None, poll_seconds: float = 5, iterations: int | None = None) -> None:
    """Drain the push outbox and refresh the calendar cache on a fixed interval."""
    settings = get_settings()
    last_refresh: float | None = None
    count = 0
    while iterations is None or count < iterations:
        count += 1
        try:
            await process_outbox_once(limit=25)
        except Exception:
            logger.exception("Outbox pass failed")
        now = time.monotonic()
        if workspace is not None and (last_refresh is None or now - last_refresh >= settings.sync_interval_seconds):
            await workspace.refresh_calendar()
            last_refresh = now
        await asyncio.sleep(poll_seconds)


async def _main() -> None:
    from timebox.db_init import init_db
    from timebox.workspace import Workspace

    await init_db()
    workspace = Workspace.from_settings()
    await workspace.start()
    await run_forever(workspace)


if __name__ == "__main__":
    from timebox.logging_config import configure_logging

    configure_logging()
    asyncio.run(_main())
