import asyncio
from datetime import date, timedelta

import pytest

from timebox.errors import ValidationFailure
from timebox.habits import HabitBook, habit_block, materialize_habit_blocks
from timebox.local_cache import HABITS_KEY
from timebox.schemas import Habit

DAY = date(2024, 5, 10)


def run(coro):
    return asyncio.run(coro)


def test_habit_block_uses_scheduled_window():
    habit = Habit(name="Run", scheduled_start_time="06:30", scheduled_end_time="07:15")
    block = habit_block(habit, DAY)
    assert block.start_hour == 6.5
    assert block.duration_hour == 0.75
    assert block.id == f"habit-{habit.id}-2024-05-10"


def test_only_due_habits_with_a_start_time_get_blocks():
    friday_only = Habit(name="Review", scheduled_days={4}, scheduled_start_time="17:00")
    monday_only = Habit(name="Plan", scheduled_days={0}, scheduled_start_time="08:00")
    untimed = Habit(name="Water")
    blocks = materialize_habit_blocks([friday_only, monday_only, untimed], DAY)
    assert [block.title for block in blocks] == ["Review"]


def test_book_mirrors_to_local_cache_and_repository(repo, local_cache):
    book = HabitBook(repo, local_cache)
    habit = run(book.add(" Read ", scheduled_start_time="21:00"))
    assert habit.name == "Read"
    assert repo.habits[habit.id].name == "Read"
    assert local_cache.get(HABITS_KEY)[0]["id"] == habit.id


def test_book_falls_back_to_local_copy(repo, local_cache):
    run(HabitBook(repo, local_cache).add("Read"))
    repo.habits.clear()

    async def broken():
        raise RuntimeError("offline")

    repo.list_habits = broken
    book = HabitBook(repo, local_cache)
    habits = run(book.load(DAY))
    assert [habit.name for habit in habits] == ["Read"]
    assert book.notices.drain()[0].kind == "error"


def test_toggle_updates_streaks(repo):
    book = HabitBook(repo)
    habit = run(book.add("Meditate"))
    run(book.toggle(habit.id, DAY - timedelta(days=1), DAY))
    updated = run(book.toggle(habit.id, DAY, DAY))
    assert updated.current_streak == 2
    assert run(book.toggle(habit.id, DAY, DAY)).current_streak == 1


def test_invalid_input_is_rejected(repo):
    book = HabitBook(repo)
    with pytest.raises(ValidationFailure):
        run(book.add("   "))
    with pytest.raises(ValidationFailure):
        run(book.add("Read", scheduled_start_time="25:00"))
    with pytest.raises(ValidationFailure):
        book.get("missing")


def test_archived_habit_is_not_scheduled(repo):
    book = HabitBook(repo)
    habit = run(book.add("Journal"))
    run(book.archive(habit.id, DAY))
    assert book.habits_for_day(DAY) == []
    assert book.habits_for_day(DAY - timedelta(days=1))[0].id == habit.id
