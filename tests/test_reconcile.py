import asyncio
from datetime import date, timedelta

from conftest import utc_event

from timebox.calendar_cache import CalendarCache, project_event
from timebox.errors import AuthExpired
from timebox.reconcile import SyncStatus, plan_reconciliation, reconcile
from timebox.schedule_store import ScheduleStore
from timebox.schemas import TimedEntry

DAY = date(2024, 5, 10)


def run(coro):
    return asyncio.run(coro)


def remote(remote_id, start_hour=9.0, duration_hour=1.0, title="Event", day=DAY):
    return project_event(utc_event(remote_id, day, start_hour, duration_hour, title=title), "UTC")


def setup(repo, calendar, local_cache):
    store = ScheduleStore(repo, calendar_client=calendar)
    run(store.load(DAY))
    return store, CalendarCache(local_cache)


def test_plan_adds_unknown_remote_entries():
    plan = plan_reconciliation([], [remote("a"), remote("b")])
    assert [entry.remote_id for entry in plan.to_add] == ["a", "b"]
    assert plan.stats.added == 2


def test_plan_updates_changed_title_or_time():
    plan = plan_reconciliation(
        [remote("a", title="Old"), remote("b", start_hour=9)],
        [remote("a", title="New"), remote("b", start_hour=10)],
    )
    assert sorted(local.remote_id for local, _ in plan.to_update) == ["a", "b"]


def test_plan_ignores_differences_within_tolerance():
    local = remote("a", start_hour=9.0)
    nudged = local.patched(start_hour=9.005)
    assert plan_reconciliation([local], [nudged]).empty


def test_plan_detects_day_change():
    plan = plan_reconciliation([remote("a")], [remote("a", day=DAY + timedelta(days=1))])
    assert plan.stats.updated == 1


def test_plan_removes_local_entries_missing_remotely():
    plan = plan_reconciliation([remote("a"), remote("gone")], [remote("a")])
    assert [entry.remote_id for entry in plan.to_remove] == ["gone"]


def test_plan_skips_entries_without_remote_id():
    local_only = TimedEntry(title="Local", start_hour=3)
    assert plan_reconciliation([local_only], []).empty


def test_sync_is_idempotent(repo, calendar, local_cache):
    calendar.add(utc_event("a", DAY, 9, title="Standup"))
    calendar.add(utc_event("b", DAY, 13, 2, title="Workshop"))
    store, cache = setup(repo, calendar, local_cache)

    first = run(reconcile(store, cache, calendar, DAY))
    second = run(reconcile(store, cache, calendar, DAY))

    assert first.status == SyncStatus.OK
    assert (first.stats.added, first.stats.updated, first.stats.removed) == (2, 0, 0)
    assert (second.stats.added, second.stats.updated, second.stats.removed) == (0, 0, 0)


def test_sync_leaves_exactly_the_remote_set(repo, calendar, local_cache):
    store, cache = setup(repo, calendar, local_cache)
    cache.insert(remote("stale"))
    cache.insert(remote("keep", title="Old title"))
    calendar.add(utc_event("keep", DAY, 9, title="New title"))
    calendar.add(utc_event("fresh", DAY, 15))

    report = run(reconcile(store, cache, calendar, DAY))

    assert (report.stats.added, report.stats.updated, report.stats.removed) == (1, 1, 1)
    remote_ids = {entry.remote_id for entry in cache.entries_for(DAY)} | {
        entry.remote_id for entry in store.remote_linked()
    }
    assert remote_ids == {"keep", "fresh"}
    assert cache.find("keep").title == "New title"


def test_pushed_entries_are_not_duplicated(repo, calendar, local_cache):
    store, cache = setup(repo, calendar, local_cache)
    entry = run(store.create(TimedEntry(title="Focus", start_hour=8)))
    cache.insert(remote(entry.remote_id, start_hour=8, title="Focus"))

    report = run(reconcile(store, cache, calendar, DAY))

    assert report.stats.total == 0
    assert cache.find(entry.remote_id) is None


def test_remote_move_updates_linked_task(repo, calendar, local_cache):
    store, cache = setup(repo, calendar, local_cache)
    task = run(store.create_task("Write", assigned_date=DAY))
    entry = run(store.schedule_task(task.id, 9))
    calendar.add(utc_event(entry.remote_id, DAY, 11.5, title="Write"))

    report = run(reconcile(store, cache, calendar, DAY))

    assert report.stats.updated == 1
    assert store.get(entry.id).start_hour == 11.5
    assert store.get_task(task.id).time == "11:30"
    assert calendar.updated == []


def test_remote_delete_unschedules_linked_task(repo, calendar, local_cache):
    store, cache = setup(repo, calendar, local_cache)
    task = run(store.create_task("Write", assigned_date=DAY))
    entry = run(store.schedule_task(task.id, 9))
    calendar.events.clear()

    report = run(reconcile(store, cache, calendar, DAY))

    assert report.stats.removed == 1
    assert store.get(entry.id) is None
    assert store.get_task(task.id).time is None
    assert calendar.deleted == []


def test_failed_fetch_changes_nothing(repo, calendar, local_cache, network_down):
    store, cache = setup(repo, calendar, local_cache)
    cache.insert(remote("a"))
    calendar.fail_with = network_down

    report = run(reconcile(store, cache, calendar, DAY))

    assert report.status == SyncStatus.NETWORK_ERROR
    assert cache.find("a") is not None


def test_expired_credentials_are_reported_distinctly(repo, calendar, local_cache):
    store, cache = setup(repo, calendar, local_cache)
    calendar.fail_with = AuthExpired("401")
    report = run(reconcile(store, cache, calendar, DAY))
    assert report.status == SyncStatus.AUTH_EXPIRED
    assert not report.ok
