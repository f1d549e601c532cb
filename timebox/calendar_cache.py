"""Day-keyed cache of entries projected from the external calendar.

The cache is the only owner of remote-origin entries that are not linked to a
local task or habit. It survives restarts through the local JSON store and is
rebuilt wholesale for a rolling window around today on every refresh.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from timebox import time_grid
from timebox.local_cache import CALENDAR_CACHE_KEY, LocalCache
from timebox.schemas import Origin, OwnerKind, RemoteCalendarEvent, TimedEntry
from timebox.services.calendar_colors import hex_for_color_id

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 45


def remote_entry_id(remote_id: str) -> str:
    return f"gcal-{remote_id}"


def project_event(event: RemoteCalendarEvent, tz: ZoneInfo | str) -> TimedEntry | None:
    """Place a remote event on the local timeline, or ``None`` when it spans days."""
    start_day, start_hour = time_grid.project_instant(event.start, tz)
    end_day, end_hour = time_grid.project_instant(event.end, tz)
    if end_day != start_day:
        # ending exactly at the next local midnight still fits in one day
        if end_day == start_day + timedelta(days=1) and end_hour == 0:
            end_hour = time_grid.HOURS_PER_DAY
        else:
            return None
    duration = max(time_grid.MIN_DURATION, end_hour - start_hour)
    return TimedEntry(
        id=remote_entry_id(event.remote_id),
        title=event.title,
        start_hour=start_hour,
        duration_hour=duration,
        tag="google",
        color=hex_for_color_id(event.color_id),
        owner_kind=OwnerKind.FREE,
        origin=Origin.REMOTE,
        remote_id=event.remote_id,
        calendar_id=event.calendar_id,
        calendar_name=event.calendar_name,
        can_edit=event.can_edit,
        day=start_day,
    )


def window_bounds(today: date, window_days: int, tz: ZoneInfo | str) -> tuple[date, date, datetime, datetime]:
    """Inclusive day range plus the matching ``[time_min, time_max)`` instants."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    first = today - timedelta(days=window_days)
    last = today + timedelta(days=window_days)
    time_min = datetime.combine(first, time(0, 0), tzinfo=zone)
    time_max = datetime.combine(last + timedelta(days=1), time(0, 0), tzinfo=zone)
    return first, last, time_min, time_max


class CalendarCache:
    def __init__(self, local_cache: LocalCache, timezone_name: str = "UTC", window_days: int = DEFAULT_WINDOW_DAYS):
        self.local_cache = local_cache
        self.timezone_name = timezone_name
        self.window_days = window_days
        self._days: dict[date, list[TimedEntry]] = {}
        self.last_refreshed_at: datetime | None = None

    def load(self) -> int:
        raw = self.local_cache.get(CALENDAR_CACHE_KEY, {})
        if not isinstance(raw, dict):
            logger.warning("Ignoring calendar cache with unexpected shape %s", type(raw).__name__)
            raw = {}
        days: dict[date, list[TimedEntry]] = {}
        for key, items in raw.items():
            try:
                day = date.fromisoformat(key)
            except (TypeError, ValueError):
                logger.warning("Ignoring calendar cache key %r", key)
                continue
            if not isinstance(items, list):
                logger.warning("Ignoring calendar cache day %s with unexpected shape", key)
                continue
            entries = []
            for item in items:
                if not isinstance(item, dict):
                    logger.warning("Dropping malformed cached event on %s", key)
                    continue
                try:
                    entries.append(TimedEntry.model_validate({**item, "day": day}))
                except ValidationError:
                    logger.warning("Dropping malformed cached event on %s", key)
            days[day] = entries
        self._days = days
        return sum(len(entries) for entries in days.values())

    def save(self) -> None:
        payload = {
            day.isoformat(): [entry.model_dump(mode="json") for entry in entries]
            for day, entries in sorted(self._days.items())
        }
        self.local_cache.set(CALENDAR_CACHE_KEY, payload)

    def entries_for(self, day: date) -> list[TimedEntry]:
        return list(self._days.get(day, []))

    def entries_between(self, first: date, last: date) -> list[TimedEntry]:
        return [
            entry
            for day, entries in sorted(self._days.items())
            if first <= day <= last
            for entry in entries
        ]

    def has_day(self, day: date) -> bool:
        return day in self._days

    def find(self, remote_id: str) -> TimedEntry | None:
        for entries in self._days.values():
            for entry in entries:
                if entry.remote_id == remote_id:
                    return entry
        return None

    def insert(self, entry: TimedEntry) -> None:
        if entry.day is None:
            raise ValueError("cached entries need a day")
        if entry.remote_id:
            self.discard(entry.remote_id)
        self._days.setdefault(entry.day, []).append(entry)
        self._days[entry.day].sort(key=lambda item: item.start_hour)

    def patch(self, remote_id: str, entry: TimedEntry) -> bool:
        if not self.discard(remote_id):
            return False
        self.insert(entry)
        return True

    def discard(self, remote_id: str) -> bool:
        for day, entries in self._days.items():
            kept = [entry for entry in entries if entry.remote_id != remote_id]
            if len(kept) != len(entries):
                self._days[day] = kept
                return True
        return False

    def replace_window(self, events: Iterable[RemoteCalendarEvent], first: date, last: date) -> int:
        """Replace every day in ``[first, last]``; days without events become empty."""
        fresh: dict[date, list[TimedEntry]] = {}
        cursor = first
        while cursor <= last:
            fresh[cursor] = []
            cursor += timedelta(days=1)
        skipped = 0
        for event in events:
            entry = project_event(event, self.timezone_name)
            if entry is None or entry.day not in fresh:
                skipped += 1
                continue
            fresh[entry.day].append(entry)
        for day, entries in fresh.items():
            self._days[day] = sorted(entries, key=lambda item: item.start_hour)
        if skipped:
            logger.debug("Skipped %s events outside the window or spanning days", skipped)
        return sum(len(entries) for entries in fresh.values())

    async def refresh(self, client, today: date) -> int:
        first, last, time_min, time_max = window_bounds(today, self.window_days, self.timezone_name)
        events = await client.fetch_events(time_min, time_max)
        count = self.replace_window(events, first, last)
        self.last_refreshed_at = datetime.now(timezone.utc)
        self.save()
        logger.info("Calendar cache refreshed: %s entries between %s and %s", count, first, last)
        return count
