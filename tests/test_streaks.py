from datetime import date, timedelta

import pytest

from timebox import streaks
from timebox.errors import ValidationFailure
from timebox.schemas import Habit

TODAY = date(2024, 5, 10)


def days_ago(n):
    return TODAY - timedelta(days=n)


def test_streak_counts_through_today():
    assert streaks.calculate_streak({TODAY, days_ago(1), days_ago(2)}, TODAY) == 3


def test_streak_anchors_on_yesterday_when_today_open():
    assert streaks.calculate_streak({days_ago(1), days_ago(2)}, TODAY) == 2


def test_streak_is_zero_after_missed_day():
    assert streaks.calculate_streak({days_ago(2)}, TODAY) == 0
    assert streaks.calculate_streak(set(), TODAY) == 0


def test_streak_stops_at_gap():
    assert streaks.calculate_streak({TODAY, days_ago(1), days_ago(3)}, TODAY) == 2


def test_streak_is_capped():
    history = {days_ago(n) for n in range(1500)}
    assert streaks.calculate_streak(history, TODAY) == streaks.MAX_STREAK_DAYS


def test_toggle_recomputes_current_and_keeps_longest():
    habit = Habit(name="Read", completed_dates={days_ago(1)}, longest_streak=5)
    done = streaks.toggle_completion(habit, TODAY, TODAY)
    assert TODAY in done.completed_dates
    assert done.current_streak == 2
    assert done.longest_streak == 5

    undone = streaks.toggle_completion(done, TODAY, TODAY)
    assert TODAY not in undone.completed_dates
    assert undone.current_streak == 1
    assert undone.longest_streak == 5


def test_toggle_raises_longest_when_exceeded():
    habit = Habit(name="Run", completed_dates={days_ago(1), days_ago(2)}, longest_streak=1)
    assert streaks.toggle_completion(habit, TODAY, TODAY).longest_streak == 3


def test_toggle_before_start_date_is_rejected():
    habit = Habit(name="Stretch", start_date=TODAY)
    with pytest.raises(ValidationFailure):
        streaks.toggle_completion(habit, days_ago(1), TODAY)


def test_scheduled_days_use_monday_zero():
    habit = Habit(name="Gym", scheduled_days={0, 2})
    monday = date(2024, 5, 13)
    assert streaks.is_scheduled_on(habit, monday)
    assert streaks.is_scheduled_on(habit, monday + timedelta(days=2))
    assert not streaks.is_scheduled_on(habit, monday + timedelta(days=1))


def test_archived_and_ended_habits_drop_out():
    habit = Habit(name="Old", archived_at=TODAY)
    assert streaks.is_scheduled_on(habit, days_ago(1))
    assert not streaks.is_scheduled_on(habit, TODAY)

    ended = Habit(name="Course", end_date=days_ago(1))
    assert not streaks.is_scheduled_on(ended, TODAY)


def test_week_overview_marks_today_and_completions():
    habit = Habit(name="Walk", completed_dates={TODAY})
    week = streaks.week_overview(habit, TODAY)
    assert len(week) == 7
    assert week[0].day.weekday() == 0
    assert [status.is_today for status in week].count(True) == 1
    assert any(status.is_completed for status in week if status.day == TODAY)


def test_completion_rate_counts_only_scheduled_days():
    monday = date(2024, 5, 13)
    habit = Habit(name="Gym", scheduled_days={0}, completed_dates={monday})
    assert streaks.completion_rate(habit, monday, monday + timedelta(days=13)) == 0.5


def test_completed_dates_serialize_sorted():
    habit = Habit(name="Read", completed_dates={TODAY, days_ago(3), days_ago(1)})
    dumped = habit.model_dump(mode="json")
    assert dumped["completed_dates"] == sorted(dumped["completed_dates"])
