from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Iterable

from timebox import time_grid
from timebox.errors import (
    AuthExpired,
    CalendarApiError,
    ReadOnlyEntry,
    TransientNetworkFailure,
    ValidationFailure,
)
from timebox.habits import materialize_habit_blocks
from timebox.notifications import NoticeBoard
from timebox.schemas import Habit, ListType, Origin, OwnerKind, Task, TimedEntry

logger = logging.getLogger(__name__)

RECURRENCE_PATTERNS = {"daily", "weekly", "monthly"}


def recurs_on(template: Task, day: date) -> bool:
    pattern = (template.recurrence_pattern or "daily").lower()
    anchor = template.assigned_date or template.created_at.date()
    if day < anchor:
        return False
    if pattern == "weekly":
        return day.weekday() == anchor.weekday()
    if pattern == "monthly":
        return day.day == anchor.day
    return True


def generate_recurring_instances(templates: Iterable[Task], existing: Iterable[Task], day: date) -> list[Task]:
    """New task instances for ``day``; templates with an instance or a same-titled task are skipped."""
    existing = list(existing)
    titles = {task.title for task in existing}
    parents = {task.parent_task_id for task in existing if task.parent_task_id}
    instances = []
    for template in templates:
        if template.id in parents or template.title in titles or not recurs_on(template, day):
            continue
        instances.append(
            Task(
                title=template.title,
                tag=template.tag,
                tag_color=template.tag_color,
                time=template.time,
                assigned_date=day,
                recurrence_pattern=template.recurrence_pattern,
                parent_task_id=template.id,
                list_type=template.list_type,
            )
        )
    return instances


class ScheduleStore:
    """Local timed entries and tasks for the day being viewed.

    Every mutation is applied in memory first and persisted afterwards. A
    failed write is reported on the notice board and logged; the in-memory
    state is kept so the user can retry. A task linked to an entry always
    carries that entry's start as its ``time``.
    """

    def __init__(self, repository, notices: NoticeBoard | None = None, calendar_client=None):
        self.repository = repository
        self.notices = notices if notices is not None else NoticeBoard()
        self.calendar_client = calendar_client
        self.day: date | None = None
        self._entries: dict[str, TimedEntry] = {}
        self._tasks: dict[str, Task] = {}

    # -- reads -----------------------------------------------------------

    @property
    def entries(self) -> list[TimedEntry]:
        return sorted(self._entries.values(), key=lambda entry: (entry.start_hour, entry.id))

    @property
    def tasks(self) -> list[Task]:
        return sorted(self._tasks.values(), key=lambda task: task.created_at)

    def get(self, entry_id: str) -> TimedEntry | None:
        return self._entries.get(entry_id)

    def require(self, entry_id: str) -> TimedEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise ValidationFailure(f"Unknown entry {entry_id}")
        return entry

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def entry_for_owner(self, owner_id: str) -> TimedEntry | None:
        for entry in self._entries.values():
            if entry.owner_id == owner_id:
                return entry
        return None

    def remote_linked(self) -> list[TimedEntry]:
        return [entry for entry in self.entries if entry.remote_id]

    # -- loading ---------------------------------------------------------

    async def load(self, day: date, habits: Iterable[Habit] = ()) -> list[TimedEntry]:
        self.day = day
        tasks = await self.repository.list_tasks_for_day(day)
        templates = await self.repository.list_recurring_templates()
        for instance in generate_recurring_instances(templates, tasks, day):
            tasks.append(instance)
            await self.persist(self.repository.save_task(instance), f"recurring task {instance.title!r}")
        self._tasks = {task.id: task for task in tasks}

        blocks = await self.repository.list_blocks(day)
        entries = {block.id: block.patched(day=day) for block in blocks}
        for block in materialize_habit_blocks(habits, day):
            entries.setdefault(block.id, block)
        self._entries = entries
        self._derive_task_blocks(day)
        logger.debug("Loaded %s entries and %s tasks for %s", len(self._entries), len(self._tasks), day)
        return self.entries

    def _derive_task_blocks(self, day: date) -> None:
        linked = {entry.owner_id: entry for entry in self._entries.values() if entry.owner_kind == OwnerKind.TASK}
        for task in list(self._tasks.values()):
            entry = linked.get(task.id)
            if entry is not None:
                expected = time_grid.hour_to_hhmm(entry.start_hour)
                if task.time != expected:
                    self._tasks[task.id] = task.model_copy(update={"time": expected})
                continue
            if task.time and task.list_type == ListType.ACTIVE:
                block = TimedEntry(
                    id=f"task-{task.id}",
                    title=task.title,
                    start_hour=time_grid.parse_hhmm(task.time),
                    tag=task.tag,
                    color=task.tag_color,
                    owner_kind=OwnerKind.TASK,
                    owner_id=task.id,
                    completed=task.completed,
                    day=day,
                )
                self._entries[block.id] = block

    # -- timed entries ---------------------------------------------------

    async def create(self, entry: TimedEntry, push: bool = True) -> TimedEntry:
        if entry.id in self._entries:
            raise ValidationFailure(f"Entry {entry.id} already exists")
        if entry.owner_kind != OwnerKind.FREE and entry.owner_id and self.entry_for_owner(entry.owner_id):
            raise ValidationFailure("This item is already on the timeline for this day")
        entry = entry.patched(day=entry.day or self.day, origin=Origin.LOCAL)
        self._entries[entry.id] = entry
        await self._sync_task_time(entry)
        await self.persist(self.repository.save_block(entry), f"block {entry.title!r}")
        if push:
            await self._push_create(entry)
        return self._entries.get(entry.id, entry)

    async def update(self, entry_id: str, push: bool = True, **changes) -> TimedEntry:
        entry = self.require(entry_id)
        if not entry.editable:
            raise ReadOnlyEntry(f"{entry.title!r} is read-only")
        updated = entry.patched(**changes)
        self._entries[entry_id] = updated
        await self._sync_task_time(updated)
        await self.persist(self.repository.save_block(updated), f"block {updated.title!r}")
        if push and updated.remote_id:
            await self.push_update(updated)
        return updated

    async def remove(self, entry_id: str, push: bool = True) -> TimedEntry | None:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return None
        if entry.owner_kind == OwnerKind.TASK and entry.owner_id in self._tasks:
            await self._set_task(self._tasks[entry.owner_id].model_copy(update={"time": None}))
        await self.persist(self.repository.delete_block(entry_id), f"block {entry.title!r}")
        if push and entry.remote_id:
            await self._push_delete(entry)
        return entry

    async def set_completed(self, entry_id: str, completed: bool) -> TimedEntry:
        entry = self.require(entry_id)
        updated = entry.patched(completed=completed)
        self._entries[entry_id] = updated
        await self.persist(self.repository.save_block(updated), f"block {updated.title!r}")
        if updated.owner_kind == OwnerKind.TASK and updated.owner_id in self._tasks:
            task = self._tasks[updated.owner_id]
            if task.completed != completed:
                await self._set_task(
                    task.model_copy(
                        update={"completed": completed, "completed_at": datetime.now(timezone.utc) if completed else None}
                    )
                )
        return updated

    def mark_habit_blocks(self, habit: Habit, day: date) -> None:
        done = day in habit.completed_dates
        for entry_id, entry in list(self._entries.items()):
            if entry.owner_kind == OwnerKind.HABIT and entry.owner_id == habit.id and entry.day == day:
                self._entries[entry_id] = entry.patched(completed=done)

    # -- tasks -----------------------------------------------------------

    async def create_task(
        self,
        title: str,
        *,
        tag: str | None = None,
        tag_color: str | None = None,
        assigned_date: date | None = None,
        list_type: ListType = ListType.ACTIVE,
        is_recurring: bool = False,
        recurrence_pattern: str | None = None,
    ) -> Task:
        clean = (title or "").strip()
        if not clean:
            raise ValidationFailure("Task title is required")
        if recurrence_pattern and recurrence_pattern not in RECURRENCE_PATTERNS:
            raise ValidationFailure(f"Unsupported recurrence {recurrence_pattern!r}")
        task = Task(
            title=clean,
            tag=tag,
            tag_color=tag_color,
            assigned_date=assigned_date if list_type == ListType.ACTIVE else None,
            list_type=list_type,
            is_recurring=is_recurring,
            recurrence_pattern=recurrence_pattern if is_recurring else None,
        )
        await self._set_task(task)
        if is_recurring and self.day:
            for instance in generate_recurring_instances([task], self.tasks, self.day):
                await self._set_task(instance)
                self._derive_task_blocks(self.day)
        return task

    async def update_task(self, task_id: str, **changes) -> Task:
        task = await self._require_task(task_id)
        if "title" in changes:
            changes["title"] = (changes["title"] or "").strip()
            if not changes["title"]:
                raise ValidationFailure("Task title is required")
        changes.pop("time", None)
        updated = Task.model_validate({**task.model_dump(), **changes})
        await self._set_task(updated)
        entry = self.entry_for_owner(task_id)
        if entry is not None and ("title" in changes or "tag" in changes or "tag_color" in changes):
            await self.update(entry.id, title=updated.title, tag=updated.tag, color=updated.tag_color)
        return updated

    async def set_task_completed(self, task_id: str, completed: bool) -> Task:
        task = await self._require_task(task_id)
        updated = task.model_copy(
            update={"completed": completed, "completed_at": datetime.now(timezone.utc) if completed else None}
        )
        await self._set_task(updated)
        entry = self.entry_for_owner(task_id)
        if entry is not None and entry.completed != completed:
            entry = entry.patched(completed=completed)
            self._entries[entry.id] = entry
            await self.persist(self.repository.save_block(entry), f"block {entry.title!r}")
        return updated

    async def schedule_task(self, task_id: str, start_hour: float, duration_hour: float = time_grid.DEFAULT_DURATION) -> TimedEntry:
        task = await self._require_task(task_id)
        if self.day is None:
            raise ValidationFailure("No day loaded")
        existing = self.entry_for_owner(task_id)
        start = time_grid.snap(start_hour)
        if existing is not None:
            return await self.update(existing.id, start_hour=start, duration_hour=duration_hour)
        if task.assigned_date != self.day or task.list_type != ListType.ACTIVE:
            await self._set_task(task.model_copy(update={"assigned_date": self.day, "list_type": ListType.ACTIVE}))
        entry = TimedEntry(
            title=task.title,
            start_hour=start,
            duration_hour=duration_hour,
            tag=task.tag,
            color=task.tag_color,
            owner_kind=OwnerKind.TASK,
            owner_id=task.id,
            completed=task.completed,
            day=self.day,
        )
        return await self.create(entry)

    async def unschedule_task(self, task_id: str) -> None:
        entry = self.entry_for_owner(task_id)
        if entry is not None:
            await self.remove(entry.id)

    async def move_task_to_list(self, task_id: str, list_type: ListType) -> Task:
        task = await self._require_task(task_id)
        list_type = ListType(list_type)
        if list_type == ListType.LATER:
            entry = self.entry_for_owner(task_id)
            if entry is not None:
                await self.remove(entry.id)
            task = self._tasks.get(task_id, task)
            updated = task.model_copy(update={"list_type": list_type, "assigned_date": None, "time": None})
        else:
            updated = task.model_copy(update={"list_type": list_type, "assigned_date": task.assigned_date or self.day})
        await self._set_task(updated)
        return updated

    async def delete_task(self, task_id: str) -> None:
        """Remove a task together with its timeline entry and remote event."""
        entry = self.entry_for_owner(task_id)
        if entry is not None:
            await self.remove(entry.id)
        try:
            stored = await self.repository.list_blocks_for_owner(task_id)
        except Exception:
            logger.exception("Failed to look up blocks of task %s", task_id)
            stored = []
        for block in stored:
            # blocks on days other than the loaded one
            if block.remote_id and (entry is None or block.id != entry.id):
                await self._push_delete(block)
        self._tasks.pop(task_id, None)
        await self.persist(self.repository.delete_task(task_id), "task deletion")

    async def migrate_overdue_tasks(self, today: date) -> int:
        overdue = await self.repository.list_overdue_tasks(today)
        for task in overdue:
            moved = task.model_copy(update={"list_type": ListType.LATER, "assigned_date": None, "time": None})
            self._tasks.pop(task.id, None)
            await self.persist(self.repository.save_task(moved), f"task {task.title!r}")
        if overdue:
            logger.info("Moved %s overdue tasks to the later list", len(overdue))
        return len(overdue)

    async def _require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            task = await self.repository.get_task(task_id)
        if task is None:
            raise ValidationFailure(f"Unknown task {task_id}")
        return task

    async def _set_task(self, task: Task) -> None:
        if task.assigned_date == self.day and not task.is_recurring:
            self._tasks[task.id] = task
        else:
            self._tasks.pop(task.id, None)
        await self.persist(self.repository.save_task(task), f"task {task.title!r}")

    async def _sync_task_time(self, entry: TimedEntry) -> None:
        if entry.owner_kind != OwnerKind.TASK or not entry.owner_id:
            return
        task = self._tasks.get(entry.owner_id)
        if task is None:
            return
        expected = time_grid.hour_to_hhmm(entry.start_hour)
        if task.time != expected or task.assigned_date != entry.day:
            await self._set_task(task.model_copy(update={"time": expected, "assigned_date": entry.day}))

    # -- persistence and remote push -------------------------------------

    async def persist(self, operation, what: str) -> bool:
        try:
            await operation
        except Exception:
            logger.exception("Failed to persist %s", what)
            self.notices.error(f"Could not save {what}. Your change is kept on screen; try again.")
            return False
        return True

    async def run_remote(self, action: str, entry: TimedEntry, call) -> bool:
        try:
            await call
        except AuthExpired:
            logger.warning("Calendar %s for %s rejected: credentials expired", action, entry.id)
            self.notices.error("Google Calendar session expired. Reconnect to keep syncing.", recoverable=False)
        except TransientNetworkFailure as exc:
            logger.warning("Calendar %s for %s deferred: %s", action, entry.id, exc)
            await self.persist(
                self.repository.enqueue_push(
                    action,
                    entry.id,
                    {
                        "entry": entry.model_dump(mode="json"),
                        "calendar_id": entry.calendar_id,
                        "remote_id": entry.remote_id,
                    },
                ),
                "pending calendar change",
            )
            self.notices.info("Calendar is unreachable; the change will be sent when it is back.")
        except CalendarApiError as exc:
            logger.error("Calendar %s for %s failed: %s", action, entry.id, exc)
            self.notices.error(f"Google Calendar refused the change: {exc}")
        else:
            return True
        return False

    async def _push_create(self, entry: TimedEntry) -> None:
        if self.calendar_client is None or entry.day is None:
            return
        result: dict = {}

        async def call():
            result["ids"] = await self.calendar_client.create_event(entry, entry.day)

        if not await self.run_remote("create", entry, call()):
            return
        calendar_id, remote_id = result["ids"]
        current = self._entries.get(entry.id)
        if current is None:
            # removed while the insert was in flight
            await self.run_remote(
                "delete",
                entry,
                self.calendar_client.delete_event(calendar_id, remote_id),
            )
            return
        linked = current.patched(remote_id=remote_id, calendar_id=calendar_id)
        self._entries[entry.id] = linked
        await self.persist(self.repository.save_block(linked), f"block {linked.title!r}")

    async def push_update(self, entry: TimedEntry) -> None:
        if self.calendar_client is None or not entry.calendar_id or entry.day is None:
            return
        await self.run_remote(
            "update",
            entry,
            self.calendar_client.update_event(entry.calendar_id, entry.remote_id, entry, entry.day),
        )

    async def _push_delete(self, entry: TimedEntry) -> None:
        if self.calendar_client is None or not entry.calendar_id:
            return
        await self.run_remote("delete", entry, self.calendar_client.delete_event(entry.calendar_id, entry.remote_id))

    # -- reconciliation hooks --------------------------------------------

    async def refresh_from_remote(self, entry_id: str, title: str, start_hour: float, duration_hour: float, day: date) -> TimedEntry:
        """Overwrite a remote-linked entry with the provider's copy, without pushing it back."""
        entry = self.require(entry_id)
        updated = entry.patched(title=title, start_hour=start_hour, duration_hour=duration_hour, day=day)
        if day != self.day:
            self._entries.pop(entry_id)
            if updated.owner_kind == OwnerKind.TASK and updated.owner_id in self._tasks:
                task = self._tasks.pop(updated.owner_id)
                await self.persist(
                    self.repository.save_task(
                        task.model_copy(
                            update={"assigned_date": day, "time": time_grid.hour_to_hhmm(updated.start_hour)}
                        )
                    ),
                    f"task {task.title!r}",
                )
        else:
            self._entries[entry_id] = updated
            await self._sync_task_time(updated)
        await self.persist(self.repository.save_block(updated), f"block {updated.title!r}")
        return updated
