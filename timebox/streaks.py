from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable

from timebox.errors import ValidationFailure
from timebox.schemas import Habit

MAX_STREAK_DAYS = 1000


@dataclass(frozen=True)
class DayStatus:
    day: date
    is_scheduled: bool
    is_completed: bool
    is_today: bool


def calculate_streak(completed_dates: Iterable[date], today: date) -> int:
    """Count consecutive completed days ending today, or yesterday when today is still open."""
    done = set(completed_dates)
    yesterday = today - timedelta(days=1)
    if today in done:
        cursor = today
    elif yesterday in done:
        cursor = yesterday
    else:
        return 0
    streak = 0
    while cursor in done and streak < MAX_STREAK_DAYS:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def is_active_on(habit: Habit, day: date) -> bool:
    if habit.start_date and day < habit.start_date:
        return False
    if habit.archived_at and day >= habit.archived_at:
        return False
    if habit.end_date and day > habit.end_date:
        return False
    return True


def is_scheduled_on(habit: Habit, day: date) -> bool:
    # weekday() numbering, Monday = 0
    if not is_active_on(habit, day):
        return False
    if not habit.scheduled_days:
        return True
    return day.weekday() in habit.scheduled_days


def refresh_streaks(habit: Habit, today: date) -> Habit:
    current = calculate_streak(habit.completed_dates, today)
    return habit.model_copy(
        update={
            "current_streak": current,
            "longest_streak": max(habit.longest_streak, current),
        }
    )


def toggle_completion(habit: Habit, day: date, today: date) -> Habit:
    if habit.start_date and day < habit.start_date:
        raise ValidationFailure(f"{habit.name!r} starts on {habit.start_date.isoformat()}")
    dates = set(habit.completed_dates)
    if day in dates:
        dates.remove(day)
    else:
        dates.add(day)
    return refresh_streaks(habit.model_copy(update={"completed_dates": dates}), today)


def week_overview(habit: Habit, today: date) -> list[DayStatus]:
    monday = today - timedelta(days=today.weekday())
    days = [monday + timedelta(days=offset) for offset in range(7)]
    return [
        DayStatus(
            day=day,
            is_scheduled=is_scheduled_on(habit, day),
            is_completed=day in habit.completed_dates,
            is_today=day == today,
        )
        for day in days
    ]


def completion_rate(habit: Habit, start: date, end: date) -> float:
    scheduled = 0
    done = 0
    cursor = start
    while cursor <= end:
        if is_scheduled_on(habit, cursor):
            scheduled += 1
            if cursor in habit.completed_dates:
                done += 1
        cursor += timedelta(days=1)
    if scheduled == 0:
        return 0.0
    return done / scheduled
