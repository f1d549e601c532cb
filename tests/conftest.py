from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest

from timebox.errors import TransientNetworkFailure
from timebox.local_cache import LocalCache
from timebox.schemas import DailyNote, ListType, RemoteCalendarEvent
from timebox.settings import Settings, reset_settings


class FakeRepository:
    """In-memory stand-in for ``UserRepository`` with switchable write failures."""

    def __init__(self):
        self.tasks = {}
        self.blocks = {}
        self.habits = {}
        self.weights = []
        self.notes = {}
        self.settings = {}
        self.outbox = []
        self.fail_writes = False
        self.writes = 0

    def _write(self):
        self.writes += 1
        if self.fail_writes:
            raise RuntimeError("database is down")

    async def list_tasks_for_day(self, day):
        return [
            task
            for task in self.tasks.values()
            if task.assigned_date == day and not task.is_recurring
        ]

    async def list_tasks_by_list(self, list_type):
        return [task for task in self.tasks.values() if task.list_type == list_type and not task.is_recurring]

    async def list_recurring_templates(self):
        return [task for task in self.tasks.values() if task.is_recurring]

    async def list_overdue_tasks(self, today):
        return [
            task
            for task in self.tasks.values()
            if task.assigned_date is not None
            and task.assigned_date < today
            and not task.completed
            and task.list_type == ListType.ACTIVE
            and not task.is_recurring
            and task.parent_task_id is None
        ]

    async def get_task(self, task_id):
        return self.tasks.get(task_id)

    async def save_task(self, task):
        self._write()
        self.tasks[task.id] = task

    async def delete_task(self, task_id):
        self._write()
        self.tasks.pop(task_id, None)
        for block_id in [key for key, block in self.blocks.items() if block.owner_id == task_id]:
            del self.blocks[block_id]

    async def list_blocks(self, day):
        return [block for block in self.blocks.values() if block.day == day]

    async def list_blocks_for_owner(self, owner_id):
        return [block for block in self.blocks.values() if block.owner_id == owner_id]

    async def save_block(self, entry):
        self._write()
        self.blocks[entry.id] = entry

    async def delete_block(self, entry_id):
        self._write()
        self.blocks.pop(entry_id, None)

    async def list_habits(self):
        return list(self.habits.values())

    async def save_habit(self, habit):
        self._write()
        self.habits[habit.id] = habit

    async def delete_habit(self, habit_id):
        self._write()
        self.habits.pop(habit_id, None)

    async def list_weights(self):
        return list(self.weights)

    async def save_weights(self, entries):
        self._write()
        self.weights = list(entries)

    async def get_note(self, day):
        return self.notes.get(day, DailyNote(date=day))

    async def save_note(self, note):
        self._write()
        self.notes[note.date] = note

    async def get_setting(self, key):
        return self.settings.get(key)

    async def set_setting(self, key, value):
        self._write()
        self.settings[key] = value

    async def enqueue_push(self, action, entry_id, payload=None):
        self._write()
        self.outbox.append((action, entry_id, payload))


def utc_event(remote_id, day, start_hour, duration_hour=1.0, title="Event", calendar_id="primary", can_edit=False, **extra):
    start = datetime.combine(day, time(0, 0), tzinfo=timezone.utc) + timedelta(hours=start_hour)
    return RemoteCalendarEvent(
        remote_id=remote_id,
        title=title,
        start=start,
        end=start + timedelta(hours=duration_hour),
        calendar_id=calendar_id,
        can_edit=can_edit,
        **extra,
    )


class FakeCalendarClient:
    """Provider double keeping events in a dict keyed by remote id."""

    def __init__(self):
        self.events = {}
        self.app_calendar_id = "app-calendar"
        self.fail_with = None
        self.push_fail_with = None
        self.fetch_calls = []
        self.created = []
        self.updated = []
        self.deleted = []
        self._counter = 0

    def add(self, event):
        self.events[event.remote_id] = event
        return event

    async def fetch_events(self, time_min, time_max):
        self.fetch_calls.append((time_min, time_max))
        if self.fail_with is not None:
            raise self.fail_with
        return [event for event in self.events.values() if time_min <= event.start < time_max]

    async def create_event(self, entry, day):
        if self.push_fail_with is not None:
            raise self.push_fail_with
        self._counter += 1
        remote_id = f"remote-{self._counter}"
        self.add(
            utc_event(
                remote_id,
                day,
                entry.start_hour,
                entry.duration_hour,
                title=entry.title,
                calendar_id=self.app_calendar_id,
                can_edit=True,
            )
        )
        self.created.append(remote_id)
        return self.app_calendar_id, remote_id

    async def update_event(self, calendar_id, event_id, entry, day):
        if self.push_fail_with is not None:
            raise self.push_fail_with
        self.updated.append(event_id)
        old = self.events[event_id]
        self.add(
            utc_event(
                event_id,
                day,
                entry.start_hour,
                entry.duration_hour,
                title=entry.title,
                calendar_id=calendar_id,
                can_edit=old.can_edit,
            )
        )
        return {"id": event_id}

    async def delete_event(self, calendar_id, event_id):
        if self.push_fail_with is not None:
            raise self.push_fail_with
        self.deleted.append(event_id)
        self.events.pop(event_id, None)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    for name in ("DATABASE_URL", "CALENDAR_TIMEZONE", "TIMEBOX_SYNC_WINDOW_DAYS", "CALENDAR_CLIENT_ID"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def calendar():
    return FakeCalendarClient()


@pytest.fixture
def local_cache(tmp_path):
    return LocalCache(tmp_path / "cache")


@pytest.fixture
def day():
    return date(2024, 5, 10)


@pytest.fixture
def network_down():
    return TransientNetworkFailure("connection reset")
