"""Three-way diff between what we hold for a day range and a fresh remote fetch.

The local side is every entry carrying a ``remote_id``: store entries that were
pushed from here and cache entries pulled from the provider. Matching is by
``remote_id`` only, so applying a plan and planning again against the same
remote data yields an empty plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable
from zoneinfo import ZoneInfo

from timebox.calendar_cache import CalendarCache, project_event
from timebox.errors import AuthExpired, CalendarApiError, PersistenceWriteFailure, TransientNetworkFailure
from timebox.schedule_store import ScheduleStore
from timebox.schemas import Origin, SyncStats, TimedEntry

logger = logging.getLogger(__name__)

TOLERANCE_HOURS = 0.01


class SyncStatus(str, Enum):
    OK = "ok"
    AUTH_EXPIRED = "auth_expired"
    NETWORK_ERROR = "network_error"
    API_ERROR = "api_error"


@dataclass(frozen=True)
class SyncReport:
    status: SyncStatus
    stats: SyncStats = field(default_factory=SyncStats)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.OK


@dataclass
class ReconcilePlan:
    to_add: list[TimedEntry] = field(default_factory=list)
    to_update: list[tuple[TimedEntry, TimedEntry]] = field(default_factory=list)
    to_remove: list[TimedEntry] = field(default_factory=list)

    @property
    def stats(self) -> SyncStats:
        return SyncStats(added=len(self.to_add), updated=len(self.to_update), removed=len(self.to_remove))

    @property
    def empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_remove)


def differs(local: TimedEntry, remote: TimedEntry) -> bool:
    return (
        local.title != remote.title
        or abs(local.start_hour - remote.start_hour) > TOLERANCE_HOURS
        or abs(local.duration_hour - remote.duration_hour) > TOLERANCE_HOURS
        or local.day != remote.day
    )


def plan_reconciliation(local: Iterable[TimedEntry], remote: Iterable[TimedEntry]) -> ReconcilePlan:
    local_by_id: dict[str, TimedEntry] = {}
    for entry in local:
        if entry.remote_id:
            local_by_id.setdefault(entry.remote_id, entry)
    remote_by_id = {entry.remote_id: entry for entry in remote if entry.remote_id}

    plan = ReconcilePlan()
    for remote_id, remote_entry in remote_by_id.items():
        local_entry = local_by_id.get(remote_id)
        if local_entry is None:
            plan.to_add.append(remote_entry)
        elif differs(local_entry, remote_entry):
            plan.to_update.append((local_entry, remote_entry))
    for remote_id, local_entry in local_by_id.items():
        if remote_id not in remote_by_id:
            plan.to_remove.append(local_entry)
    return plan


def _bounds(first: date, last: date, timezone_name: str) -> tuple[datetime, datetime]:
    zone = ZoneInfo(timezone_name)
    return (
        datetime.combine(first, time(0, 0), tzinfo=zone),
        datetime.combine(last + timedelta(days=1), time(0, 0), tzinfo=zone),
    )


def _in_range(entry: TimedEntry, first: date, last: date) -> bool:
    return entry.day is not None and first <= entry.day <= last


async def apply_plan(plan: ReconcilePlan, store: ScheduleStore, cache: CalendarCache) -> None:
    for entry in plan.to_add:
        cache.insert(entry)
    for local_entry, remote_entry in plan.to_update:
        if local_entry.origin == Origin.LOCAL and store.get(local_entry.id) is not None:
            await store.refresh_from_remote(
                local_entry.id,
                remote_entry.title,
                remote_entry.start_hour,
                remote_entry.duration_hour,
                remote_entry.day,
            )
        else:
            cache.patch(local_entry.remote_id, remote_entry.patched(can_edit=local_entry.can_edit or remote_entry.can_edit))
    for entry in plan.to_remove:
        if entry.origin == Origin.LOCAL and store.get(entry.id) is not None:
            await store.remove(entry.id, push=False)
        else:
            cache.discard(entry.remote_id)


async def reconcile(
    store: ScheduleStore,
    cache: CalendarCache,
    client,
    first: date,
    last: date | None = None,
) -> SyncReport:
    last = last or first
    time_min, time_max = _bounds(first, last, cache.timezone_name)
    try:
        events = await client.fetch_events(time_min, time_max)
    except AuthExpired as exc:
        logger.warning("Sync aborted, credentials expired: %s", exc)
        return SyncReport(SyncStatus.AUTH_EXPIRED, message=str(exc))
    except TransientNetworkFailure as exc:
        logger.warning("Sync aborted, provider unreachable: %s", exc)
        return SyncReport(SyncStatus.NETWORK_ERROR, message=str(exc))
    except CalendarApiError as exc:
        logger.error("Sync aborted, provider error: %s", exc)
        return SyncReport(SyncStatus.API_ERROR, message=str(exc))

    remote = []
    for event in events:
        entry = project_event(event, cache.timezone_name)
        if entry is not None and _in_range(entry, first, last):
            remote.append(entry)

    store_linked = [entry for entry in store.remote_linked() if _in_range(entry, first, last)]
    owned_ids = {entry.remote_id for entry in store_linked}
    for duplicate in [entry for entry in cache.entries_between(first, last) if entry.remote_id in owned_ids]:
        cache.discard(duplicate.remote_id)
    local = store_linked + cache.entries_between(first, last)

    plan = plan_reconciliation(local, remote)
    await apply_plan(plan, store, cache)
    try:
        cache.save()
    except PersistenceWriteFailure:
        store.notices.error("Could not save the calendar cache; it will be rebuilt on the next sync")
    stats = plan.stats
    logger.info("Sync %s..%s: +%s ~%s -%s", first, last, stats.added, stats.updated, stats.removed)
    return SyncReport(SyncStatus.OK, stats=stats)
