from __future__ import annotations

import logging
from datetime import date

from timebox import streaks, time_grid
from timebox.errors import PersistenceWriteFailure, ValidationFailure
from timebox.local_cache import HABITS_KEY, LocalCache
from timebox.notifications import NoticeBoard
from timebox.schemas import Frequency, Habit, OwnerKind, TimedEntry

logger = logging.getLogger(__name__)

DEFAULT_HABIT_DURATION = 0.5


def habit_block_id(habit_id: str, day: date) -> str:
    return f"habit-{habit_id}-{day.isoformat()}"


def habit_block(habit: Habit, day: date, start_hour: float | None = None, duration_hour: float | None = None) -> TimedEntry:
    if start_hour is None:
        start_hour = time_grid.parse_hhmm(habit.scheduled_start_time)
    if duration_hour is None:
        duration_hour = DEFAULT_HABIT_DURATION
        if habit.scheduled_end_time:
            end_hour = time_grid.parse_hhmm(habit.scheduled_end_time)
            if end_hour > start_hour:
                duration_hour = end_hour - start_hour
    return TimedEntry(
        id=habit_block_id(habit.id, day),
        title=habit.name,
        start_hour=start_hour,
        duration_hour=max(time_grid.MIN_DURATION, duration_hour),
        tag=habit.tag,
        color=habit.tag_color,
        owner_kind=OwnerKind.HABIT,
        owner_id=habit.id,
        completed=day in habit.completed_dates,
        day=day,
    )


def materialize_habit_blocks(habits, day: date) -> list[TimedEntry]:
    """Blocks for habits with a fixed start time that are due on ``day``."""
    blocks = []
    for habit in habits:
        if not habit.scheduled_start_time or not streaks.is_scheduled_on(habit, day):
            continue
        try:
            blocks.append(habit_block(habit, day))
        except ValidationFailure:
            logger.warning("Habit %s has an unreadable start time %r", habit.id, habit.scheduled_start_time)
    return blocks


class HabitBook:
    """Habits plus their completion history.

    The relational store is authoritative when a repository is configured;
    the local JSON cache mirrors it for cold starts.
    """

    def __init__(self, repository=None, local_cache: LocalCache | None = None, notices: NoticeBoard | None = None):
        self.repository = repository
        self.local_cache = local_cache
        self.notices = notices if notices is not None else NoticeBoard()
        self._habits: dict[str, Habit] = {}

    @property
    def habits(self) -> list[Habit]:
        return sorted(self._habits.values(), key=lambda habit: habit.created_at)

    def get(self, habit_id: str) -> Habit:
        try:
            return self._habits[habit_id]
        except KeyError:
            raise ValidationFailure(f"Unknown habit {habit_id}") from None

    async def load(self, today: date) -> list[Habit]:
        habits: list[Habit] = []
        if self.local_cache is not None:
            for raw in self.local_cache.get(HABITS_KEY, []) or []:
                try:
                    habits.append(Habit.model_validate(raw))
                except ValueError:
                    logger.warning("Dropping malformed cached habit")
        if self.repository is not None:
            try:
                habits = await self.repository.list_habits()
            except Exception:
                logger.exception("Failed to load habits, using local copy")
                self.notices.error("Could not load habits; showing the last saved copy")
        self._habits = {habit.id: streaks.refresh_streaks(habit, today) for habit in habits}
        self._mirror()
        return self.habits

    def habits_for_day(self, day: date) -> list[Habit]:
        return [habit for habit in self.habits if streaks.is_scheduled_on(habit, day)]

    async def add(
        self,
        name: str,
        *,
        tag: str | None = None,
        tag_color: str | None = None,
        frequency: Frequency = Frequency.DAILY,
        scheduled_days=(),
        scheduled_start_time: str | None = None,
        scheduled_end_time: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> Habit:
        clean = (name or "").strip()
        if not clean:
            raise ValidationFailure("Habit name is required")
        habit = Habit(
            name=clean,
            tag=tag,
            tag_color=tag_color,
            frequency=frequency,
            scheduled_days=set(scheduled_days),
            scheduled_start_time=self._check_time(scheduled_start_time),
            scheduled_end_time=self._check_time(scheduled_end_time),
            start_date=start_date,
            end_date=end_date,
        )
        self._habits[habit.id] = habit
        await self._save(habit)
        return habit

    async def update(self, habit_id: str, **changes) -> Habit:
        habit = self.get(habit_id)
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationFailure("Habit name is required")
        for key in ("scheduled_start_time", "scheduled_end_time"):
            if key in changes:
                changes[key] = self._check_time(changes[key])
        changes.pop("completed_dates", None)
        updated = Habit.model_validate({**habit.model_dump(), **changes})
        self._habits[habit_id] = updated
        await self._save(updated)
        return updated

    async def archive(self, habit_id: str, day: date) -> Habit:
        return await self.update(habit_id, archived_at=day)

    async def delete(self, habit_id: str) -> None:
        self.get(habit_id)
        del self._habits[habit_id]
        self._mirror()
        if self.repository is None:
            return
        try:
            await self.repository.delete_habit(habit_id)
        except Exception:
            logger.exception("Failed to delete habit %s", habit_id)
            self.notices.error("Could not delete habit; it may reappear after reload")

    async def toggle(self, habit_id: str, day: date, today: date) -> Habit:
        updated = streaks.toggle_completion(self.get(habit_id), day, today)
        self._habits[habit_id] = updated
        await self._save(updated)
        return updated

    @staticmethod
    def _check_time(value: str | None) -> str | None:
        if not value:
            return None
        return time_grid.hour_to_hhmm(time_grid.parse_hhmm(value))

    def _mirror(self) -> None:
        if self.local_cache is None:
            return
        try:
            self.local_cache.set(HABITS_KEY, [habit.model_dump(mode="json") for habit in self.habits])
        except PersistenceWriteFailure:
            logger.warning("Could not mirror habits to the local cache", exc_info=True)

    async def _save(self, habit: Habit) -> None:
        self._mirror()
        if self.repository is None:
            return
        try:
            await self.repository.save_habit(habit)
        except Exception:
            logger.exception("Failed to save habit %s", habit.id)
            self.notices.error(f"Could not save habit {habit.name!r}")
