from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from timebox import weights as weight_log
from timebox.calendar_cache import CalendarCache
from timebox.errors import (
    AuthExpired,
    CalendarApiError,
    PersistenceWriteFailure,
    ReadOnlyEntry,
    TransientNetworkFailure,
    ValidationFailure,
)
from timebox.habits import HabitBook, habit_block
from timebox.interaction import Click, Commit, InteractionController, Reject, Target
from timebox.local_cache import (
    SELECTED_DATE_KEY,
    USER_TAGS_KEY,
    WEIGHT_ENTRIES_KEY,
    ZOOM_STATE_KEY,
    LocalCache,
)
from timebox.notifications import NoticeBoard
from timebox.reconcile import SyncReport, SyncStatus, reconcile
from timebox.schedule_store import ScheduleStore
from timebox.schemas import DailyNote, Habit, Origin, OwnerKind, TimedEntry, WeightEntry
from timebox.settings import Settings, get_settings
from timebox.time_grid import Viewport, format_time

logger = logging.getLogger(__name__)


class Workspace:
    """The whole application state for one signed-in user.

    Owns the schedule store, the calendar cache, the gesture controller, the
    habit book and the weight log, and routes every user action through
    them. Rendering layers read ``merged_schedule`` and drain ``notices``.
    """

    def __init__(
        self,
        repository,
        local_cache: LocalCache,
        calendar_client=None,
        settings: Settings | None = None,
        clock: Callable[[], date] | None = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.local_cache = local_cache
        self.calendar_client = calendar_client
        self.notices = NoticeBoard()
        self.store = ScheduleStore(repository, self.notices, calendar_client)
        self.cache = CalendarCache(local_cache, self.settings.calendar_timezone, self.settings.sync_window_days)
        self.habits = HabitBook(repository, local_cache, self.notices)
        self.controller = InteractionController(Viewport(zoomed=bool(local_cache.get(ZOOM_STATE_KEY, False))))
        self.weights: list[WeightEntry] = []
        self.selected_date: date | None = None
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Workspace":
        from timebox.repositories import UserRepository
        from timebox.services.google_calendar_service import GoogleCalendarClient

        settings = settings or get_settings()
        client = None
        if settings.calendar_client_id:
            client = GoogleCalendarClient(settings.user_email)
        return cls(UserRepository(settings.user_email), LocalCache(settings.cache_dir), client, settings)

    def today(self) -> date:
        if self._clock is not None:
            return self._clock()
        return datetime.now(ZoneInfo(self.settings.calendar_timezone)).date()

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> list[TimedEntry]:
        today = self.today()
        self.cache.load()
        await self.habits.load(today)
        await self._load_weights()
        await self.store.migrate_overdue_tasks(today)
        if self.calendar_client is not None:
            stored_id = await self._safe_setting("app_calendar_id")
            if stored_id and not self.calendar_client.app_calendar_id:
                self.calendar_client.app_calendar_id = stored_id
        selected = self.local_cache.get(SELECTED_DATE_KEY)
        try:
            day = date.fromisoformat(selected) if selected else today
        except (TypeError, ValueError):
            day = today
        return await self.load_day(day)

    async def load_day(self, day: date) -> list[TimedEntry]:
        await self.store.load(day, self.habits.habits)
        self.selected_date = day
        self._remember(SELECTED_DATE_KEY, day.isoformat())
        return self.merged_schedule(day)

    def merged_schedule(self, day: date | None = None) -> list[TimedEntry]:
        day = day or self.selected_date
        local = self.store.entries if self.store.day == day else []
        linked = {entry.remote_id for entry in local if entry.remote_id}
        remote = [entry for entry in self.cache.entries_for(day) if entry.remote_id not in linked]
        return local + remote

    def find_entry(self, entry_id: str) -> TimedEntry | None:
        entry = self.store.get(entry_id)
        if entry is not None:
            return entry
        for candidate in self.cache.entries_for(self.selected_date):
            if candidate.id == entry_id:
                return candidate
        return None

    def require_entry(self, entry_id: str) -> TimedEntry:
        entry = self.find_entry(entry_id)
        if entry is None:
            raise ValidationFailure(f"Unknown entry {entry_id}")
        return entry

    # -- scheduling ------------------------------------------------------

    async def add_block(self, title: str, start_hour: float, duration_hour: float = 1.0, tag: str | None = None, color: str | None = None) -> TimedEntry:
        clean = (title or "").strip()
        if not clean:
            raise ValidationFailure("Title is required")
        entry = TimedEntry(title=clean, start_hour=start_hour, duration_hour=duration_hour, tag=tag, color=color, day=self.selected_date)
        return await self.store.create(entry)

    async def schedule_task(self, task_id: str, start_hour: float, duration_hour: float = 1.0) -> TimedEntry:
        return await self.store.schedule_task(task_id, start_hour, duration_hour)

    async def schedule_habit(self, habit_id: str, start_hour: float, duration_hour: float | None = None) -> TimedEntry:
        habit = self.habits.get(habit_id)
        block = habit_block(habit, self.selected_date, start_hour=start_hour, duration_hour=duration_hour)
        return await self.store.create(block)

    async def delete_entry(self, entry_id: str) -> None:
        if self.store.get(entry_id) is not None:
            await self.store.remove(entry_id)
            return
        entry = self.require_entry(entry_id)
        if not entry.editable:
            raise ReadOnlyEntry(f"{entry.title!r} is read-only")
        self.cache.discard(entry.remote_id)
        self._save_cache()
        if self.calendar_client is not None and entry.calendar_id:
            await self.store.run_remote("delete", entry, self.calendar_client.delete_event(entry.calendar_id, entry.remote_id))

    async def delete_task(self, task_id: str) -> None:
        await self.store.delete_task(task_id)

    async def toggle_entry(self, entry_id: str) -> TimedEntry | Habit | None:
        entry = self.require_entry(entry_id)
        if entry.origin == Origin.REMOTE and self.store.get(entry_id) is None:
            return None
        if entry.owner_kind == OwnerKind.HABIT and entry.owner_id:
            return await self.toggle_habit(entry.owner_id, entry.day or self.selected_date)
        if entry.owner_kind == OwnerKind.TASK and entry.owner_id:
            await self.store.set_task_completed(entry.owner_id, not entry.completed)
            return self.store.get(entry_id)
        return await self.store.set_completed(entry_id, not entry.completed)

    async def toggle_habit(self, habit_id: str, day: date | None = None) -> Habit:
        day = day or self.selected_date or self.today()
        habit = await self.habits.toggle(habit_id, day, self.today())
        self.store.mark_habit_blocks(habit, day)
        return habit

    # -- pointer input ---------------------------------------------------

    async def pointer_down(self, entry_id: str, target: Target, y: float, now_ms: float) -> list:
        entry = self.require_entry(entry_id)
        effects = self.controller.pointer_down(entry, target, y, now_ms)
        await self._apply_effects(effects)
        return effects

    async def pointer_move(self, y: float, now_ms: float) -> list:
        effects = self.controller.pointer_move(y, now_ms)
        await self._apply_effects(effects)
        return effects

    async def pointer_up(self, y: float, now_ms: float) -> list:
        effects = self.controller.pointer_up(y, now_ms)
        await self._apply_effects(effects)
        return effects

    async def cancel_gesture(self) -> list:
        return self.controller.cancel()

    async def _apply_effects(self, effects: list) -> None:
        for effect in effects:
            if isinstance(effect, Reject):
                self.notices.error(effect.reason)
            elif isinstance(effect, Click):
                await self.toggle_entry(effect.entry_id)
            elif isinstance(effect, Commit):
                await self._commit(effect)

    async def _commit(self, commit: Commit) -> None:
        if self.store.get(commit.entry_id) is not None:
            await self.store.update(commit.entry_id, start_hour=commit.start_hour, duration_hour=commit.duration_hour)
            return
        entry = self.require_entry(commit.entry_id)
        if not entry.editable:
            raise ReadOnlyEntry(f"{entry.title!r} is read-only")
        moved = entry.patched(start_hour=commit.start_hour, duration_hour=commit.duration_hour)
        self.cache.patch(entry.remote_id, moved)
        self._save_cache()
        await self.store.push_update(moved)

    def toggle_zoom(self) -> bool:
        if self.controller.state.active:
            return self.controller.viewport.zoomed
        zoomed = self.controller.viewport.toggle()
        self._remember(ZOOM_STATE_KEY, zoomed)
        return zoomed

    # -- calendar --------------------------------------------------------

    async def refresh_calendar(self) -> int | None:
        if self.calendar_client is None:
            return None
        try:
            count = await self.cache.refresh(self.calendar_client, self.today())
        except AuthExpired:
            self.notices.error("Google Calendar session expired. Reconnect to keep syncing.", recoverable=False)
            return None
        except (TransientNetworkFailure, CalendarApiError) as exc:
            logger.warning("Calendar refresh failed: %s", exc)
            self.notices.info("Showing cached calendar events; refresh failed.")
            return None
        except PersistenceWriteFailure:
            self.notices.error("Calendar refreshed but could not be cached on this device")
            return None
        await self._remember_app_calendar()
        return count

    async def sync(self, first: date | None = None, last: date | None = None) -> SyncReport:
        if self.calendar_client is None:
            return SyncReport(SyncStatus.API_ERROR, message="Google Calendar is not connected")
        first = first or self.selected_date or self.today()
        report = await reconcile(self.store, self.cache, self.calendar_client, first, last)
        if report.status == SyncStatus.AUTH_EXPIRED:
            self.notices.error("Google Calendar session expired. Reconnect to keep syncing.", recoverable=False)
        elif report.status == SyncStatus.NETWORK_ERROR:
            self.notices.info("Could not reach Google Calendar. Nothing was changed.")
        elif report.status == SyncStatus.API_ERROR:
            self.notices.error(f"Google Calendar sync failed: {report.message}")
        else:
            stats = report.stats
            self.notices.success(f"Synced: {stats.added} added, {stats.updated} updated, {stats.removed} removed")
            await self._remember_app_calendar()
        return report

    async def _remember_app_calendar(self) -> None:
        calendar_id = getattr(self.calendar_client, "app_calendar_id", None)
        if not calendar_id:
            return
        try:
            await self.repository.set_setting("app_calendar_id", calendar_id)
        except Exception:
            logger.warning("Could not store app calendar id", exc_info=True)

    # -- notes, weights, tags -------------------------------------------

    async def load_note(self, day: date | None = None) -> DailyNote:
        day = day or self.selected_date or self.today()
        try:
            return await self.repository.get_note(day)
        except Exception:
            logger.exception("Failed to load note for %s", day)
            self.notices.error("Could not load the note for this day")
            return DailyNote(date=day)

    async def save_note(self, content: str, day: date | None = None) -> DailyNote:
        note = DailyNote(date=day or self.selected_date or self.today(), content=content or "")
        await self.store.persist(self.repository.save_note(note), "note")
        return note

    async def _load_weights(self) -> None:
        cached = []
        for raw in self.local_cache.get(WEIGHT_ENTRIES_KEY, []) or []:
            try:
                cached.append(WeightEntry.model_validate(raw))
            except ValidationError:
                logger.warning("Dropping malformed cached weight entry")
        try:
            self.weights = await self.repository.list_weights() or cached
        except Exception:
            logger.exception("Failed to load weight entries")
            self.weights = cached

    async def log_weight(self, value, day: date | None = None) -> list[WeightEntry]:
        self.weights = weight_log.log_weight(self.weights, day or self.today(), value)
        await self._save_weights()
        return self.weights

    async def remove_weight(self, day: date) -> list[WeightEntry]:
        self.weights = weight_log.remove_weight(self.weights, day)
        await self._save_weights()
        return self.weights

    async def _save_weights(self) -> None:
        self._remember(WEIGHT_ENTRIES_KEY, [entry.model_dump(mode="json") for entry in self.weights])
        await self.store.persist(self.repository.save_weights(self.weights), "weight log")

    def format_hour(self, hour: float) -> str:
        return format_time(hour, "12h" if self.settings.use_12h_clock else "24h")

    @property
    def tags(self) -> list[dict]:
        return list(self.local_cache.get(USER_TAGS_KEY, []) or [])

    # -- helpers ---------------------------------------------------------

    async def _safe_setting(self, key: str) -> str | None:
        try:
            return await self.repository.get_setting(key)
        except Exception:
            logger.warning("Could not read setting %s", key, exc_info=True)
            return None

    def _remember(self, key: str, value) -> None:
        try:
            self.local_cache.set(key, value)
        except PersistenceWriteFailure:
            self.notices.error("Could not save preferences on this device")

    def _save_cache(self) -> None:
        try:
            self.cache.save()
        except PersistenceWriteFailure:
            self.notices.error("Could not save the calendar cache on this device")
