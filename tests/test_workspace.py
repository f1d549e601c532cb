import asyncio
from datetime import date

import pytest

from conftest import utc_event
from timebox.errors import AuthExpired, ReadOnlyEntry, ValidationFailure
from timebox.interaction import Commit, Preview, Reject, Target
from timebox.local_cache import SELECTED_DATE_KEY, WEIGHT_ENTRIES_KEY, ZOOM_STATE_KEY
from timebox.reconcile import SyncStatus
from timebox.settings import Settings
from timebox.workspace import Workspace

DAY = date(2024, 5, 10)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def workspace(repo, local_cache, calendar, settings):
    ws = Workspace(repo, local_cache, calendar, settings, clock=lambda: DAY)
    run(ws.start())
    return ws


def drag(ws, entry_id, dy, target=Target.BODY):
    effects = run(ws.pointer_down(entry_id, target, 100, 0))
    effects += run(ws.pointer_move(100 + dy, 250))
    return effects + run(ws.pointer_up(100 + dy, 300))


def test_start_restores_selected_day_and_app_calendar(repo, local_cache, calendar, settings):
    local_cache.set(SELECTED_DATE_KEY, "2024-05-09")
    repo.settings["app_calendar_id"] = "stored-cal"
    calendar.app_calendar_id = None

    ws = Workspace(repo, local_cache, calendar, settings, clock=lambda: DAY)
    run(ws.start())

    assert ws.selected_date == date(2024, 5, 9)
    assert calendar.app_calendar_id == "stored-cal"


def test_drag_persists_once_and_pushes(workspace, repo, calendar):
    entry = run(workspace.add_block("Focus", 9))
    assert entry.remote_id == "remote-1"
    writes_before = repo.writes

    effects = drag(workspace, entry.id, 144)

    assert [type(effect) for effect in effects] == [Preview, Commit]
    assert workspace.store.get(entry.id).start_hour == 10.5
    assert repo.blocks[entry.id].start_hour == 10.5
    assert repo.writes == writes_before + 1
    assert calendar.updated == ["remote-1"]


def test_click_toggles_completion(workspace, repo):
    entry = run(workspace.add_block("Call mom", 18))
    run(workspace.pointer_down(entry.id, Target.BODY, 100, 0))
    run(workspace.pointer_up(100, 120))
    assert repo.blocks[entry.id].completed is True


def test_clicking_habit_block_checks_off_the_habit(workspace):
    habit = run(workspace.habits.add("Stretch", scheduled_start_time="07:00"))
    run(workspace.load_day(DAY))
    block_id = f"habit-{habit.id}-{DAY.isoformat()}"

    run(workspace.pointer_down(block_id, Target.BODY, 0, 0))
    run(workspace.pointer_up(0, 50))

    assert workspace.habits.get(habit.id).completed_dates == {DAY}
    assert workspace.habits.get(habit.id).current_streak == 1
    assert workspace.store.get(block_id).completed is True


def test_read_only_remote_event_cannot_move(workspace, calendar):
    calendar.add(utc_event("shared", DAY, 13, title="Standup", can_edit=False))
    run(workspace.refresh_calendar())
    workspace.notices.drain()

    effects = drag(workspace, "gcal-shared", 96)

    assert any(isinstance(effect, Reject) for effect in effects)
    assert workspace.cache.find("shared").start_hour == 13
    assert [notice.kind for notice in workspace.notices.drain()] == ["error"]
    with pytest.raises(ReadOnlyEntry):
        run(workspace.delete_entry("gcal-shared"))


def test_editable_remote_event_moves_in_cache_and_calendar(workspace, calendar):
    calendar.add(utc_event("mine", DAY, 13, title="Review", calendar_id="primary", can_edit=True))
    run(workspace.refresh_calendar())

    drag(workspace, "gcal-mine", 96)

    assert workspace.cache.find("mine").start_hour == 14
    assert calendar.updated == ["mine"]
    assert calendar.events["mine"].start.hour == 14


def test_merged_schedule_shows_pushed_entries_once(workspace):
    entry = run(workspace.add_block("Focus", 9))
    run(workspace.refresh_calendar())

    merged = workspace.merged_schedule(DAY)

    assert [item.id for item in merged] == [entry.id]


def test_zoom_is_persisted_and_ignored_mid_gesture(workspace, repo, local_cache, calendar, settings):
    entry = run(workspace.add_block("Focus", 9))
    assert workspace.toggle_zoom() is True
    assert local_cache.get(ZOOM_STATE_KEY) is True

    run(workspace.pointer_down(entry.id, Target.BODY, 100, 0))
    run(workspace.pointer_move(160, 250))
    assert workspace.toggle_zoom() is True
    run(workspace.cancel_gesture())

    reopened = Workspace(repo, local_cache, calendar, settings, clock=lambda: DAY)
    assert reopened.controller.viewport.zoomed is True


def test_sync_reports_and_merges(workspace, calendar):
    calendar.add(utc_event("evt", DAY, 15, title="Dentist"))

    report = run(workspace.sync())

    assert report.status == SyncStatus.OK
    assert report.stats.added == 1
    assert "gcal-evt" in [entry.id for entry in workspace.merged_schedule()]
    assert workspace.notices.drain()[-1].kind == "success"


def test_sync_without_calendar(repo, local_cache, settings):
    ws = Workspace(repo, local_cache, None, settings, clock=lambda: DAY)
    run(ws.start())
    assert run(ws.sync()).status == SyncStatus.API_ERROR


def test_refresh_failure_keeps_cached_events(workspace, calendar, network_down):
    calendar.add(utc_event("evt", DAY, 15))
    assert run(workspace.refresh_calendar()) == 1
    calendar.fail_with = network_down

    assert run(workspace.refresh_calendar()) is None
    assert workspace.cache.find("evt") is not None
    assert workspace.notices.drain()[-1].kind == "info"


def test_weights_are_logged_locally_and_in_repository(workspace, repo, local_cache):
    run(workspace.log_weight("70.4"))
    run(workspace.log_weight(70.1))

    assert [entry.weight for entry in repo.weights] == [70.1]
    assert local_cache.get(WEIGHT_ENTRIES_KEY) == [{"date": "2024-05-10", "weight": 70.1}]
    with pytest.raises(ValidationFailure):
        run(workspace.log_weight(-3))


def test_failed_note_save_keeps_content_and_warns(workspace, repo):
    repo.fail_writes = True
    note = run(workspace.save_note("Remember the milk"))
    assert note.content == "Remember the milk"
    assert workspace.notices.drain()[-1].kind == "error"


def test_store_and_habit_notices_reach_the_workspace_board(workspace, repo, calendar):
    assert workspace.store.notices is workspace.notices
    assert workspace.habits.notices is workspace.notices

    repo.fail_writes = True
    run(workspace.add_block("Focus", 9))
    run(workspace.habits.add("Stretch"))
    kinds = [notice.kind for notice in workspace.notices.drain()]
    assert kinds.count("error") >= 2

    repo.fail_writes = False
    calendar.push_fail_with = AuthExpired("revoked")
    run(workspace.add_block("Review", 14))
    notices = workspace.notices.drain()
    assert [(notice.kind, notice.recoverable) for notice in notices] == [("error", False)]


def test_hours_follow_configured_clock(repo, local_cache):
    twelve = Settings(_env_file=None, TIMEBOX_TIME_FORMAT="12h")
    ws = Workspace(repo, local_cache, None, twelve, clock=lambda: DAY)
    assert ws.format_hour(13.5) == "1:30 PM"
    assert Workspace(repo, local_cache, None, Settings(_env_file=None)).format_hour(13.5) == "13:30"
