import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import FakeCalendarClient, utc_event
from timebox import repositories
from timebox.db import dispose_engine
from timebox.db_init import init_db
from timebox.errors import AuthExpired, TransientNetworkFailure
from timebox.repositories import UserRepository
from timebox.schemas import TimedEntry
from timebox.settings import reset_settings
from timebox.workers import sync_worker

DAY = date(2024, 5, 10)
USER = "me@example.com"


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'timebox.db'}")
    reset_settings()


def run_db(scenario):
    async def main():
        await init_db()
        try:
            return await scenario()
        finally:
            await dispose_engine()

    return asyncio.run(main())


def _payload(entry):
    return {"entry": entry.model_dump(mode="json"), "calendar_id": entry.calendar_id, "remote_id": entry.remote_id}


def test_retry_delay_is_capped():
    assert sync_worker.retry_delay(1) == 2
    assert sync_worker.retry_delay(5) == 32
    assert sync_worker.retry_delay(20) == 256
    assert sync_worker.retry_delay(8) <= 300


def test_queued_create_links_the_stored_block(database):
    repo = UserRepository(USER)
    client = FakeCalendarClient()
    entry = TimedEntry(title="Focus", start_hour=9, day=DAY)

    async def scenario():
        await repo.save_block(entry)
        await repo.enqueue_push("create", entry.id, _payload(entry))
        handled = await sync_worker.process_outbox_once(client_factory=lambda email: client)
        return handled, await repo.list_blocks(DAY), await repositories.list_pending_outbox()

    handled, blocks, pending = run_db(scenario)
    assert handled == 1
    assert client.created == ["remote-1"]
    assert blocks[0].remote_id == "remote-1"
    assert blocks[0].calendar_id == "app-calendar"
    assert pending == []


def test_queued_create_skips_blocks_deleted_meanwhile(database):
    repo = UserRepository(USER)
    client = FakeCalendarClient()
    entry = TimedEntry(title="Gone", start_hour=9, day=DAY)

    async def scenario():
        await repo.enqueue_push("create", entry.id, _payload(entry))
        await sync_worker.process_outbox_once(client_factory=lambda email: client)

    run_db(scenario)
    assert client.created == []


def test_queued_update_and_delete_reach_the_calendar(database):
    repo = UserRepository(USER)
    client = FakeCalendarClient()
    linked = TimedEntry(title="Sync", start_hour=14, day=DAY, remote_id="evt-9", calendar_id="app-calendar")

    async def scenario():
        await repo.enqueue_push("update", linked.id, _payload(linked))
        handled = await sync_worker.process_outbox_once(client_factory=lambda email: client)
        await repo.enqueue_push("delete", linked.id, _payload(linked))
        return handled + await sync_worker.process_outbox_once(client_factory=lambda email: client)

    client.add(utc_event("evt-9", DAY, 13, calendar_id="app-calendar", can_edit=True))
    assert run_db(scenario) == 2
    assert client.updated == ["evt-9"]
    assert client.deleted == ["evt-9"]


@pytest.mark.parametrize(
    "failure, minimum_delay",
    [(TransientNetworkFailure("reset"), 2), (AuthExpired("revoked"), 299)],
)
def test_failures_are_rescheduled(database, failure, minimum_delay):
    repo = UserRepository(USER)
    client = FakeCalendarClient()
    client.push_fail_with = failure
    entry = TimedEntry(title="Focus", start_hour=9, day=DAY)

    async def scenario():
        await repo.save_block(entry)
        await repo.enqueue_push("create", entry.id, _payload(entry))
        before = datetime.now(timezone.utc)
        await sync_worker.process_outbox_once(client_factory=lambda email: client)
        now_pending = await repositories.list_pending_outbox()
        later = await repositories.list_pending_outbox(now=before + timedelta(seconds=301))
        return before, now_pending, later

    before, now_pending, later = run_db(scenario)
    assert now_pending == []
    assert later[0]["attempts"] == 1
    retry_at = datetime.fromisoformat(later[0]["next_retry_at"])
    assert retry_at - before >= timedelta(seconds=minimum_delay)
