from __future__ import annotations

import datetime as dt
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from timebox import time_grid


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OwnerKind(str, Enum):
    TASK = "task"
    HABIT = "habit"
    FREE = "free"


class Origin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class ListType(str, Enum):
    ACTIVE = "active"
    LATER = "later"


class TimedEntry(BaseModel):
    """A block on the 24h timeline, local or projected from the calendar."""

    id: str = Field(default_factory=_new_id)
    title: str = ""
    start_hour: float
    duration_hour: float = time_grid.DEFAULT_DURATION
    tag: Optional[str] = None
    color: Optional[str] = None
    owner_kind: OwnerKind = OwnerKind.FREE
    owner_id: Optional[str] = None
    origin: Origin = Origin.LOCAL
    remote_id: Optional[str] = None
    calendar_id: Optional[str] = None
    calendar_name: Optional[str] = None
    can_edit: bool = True
    completed: bool = False
    day: Optional[date] = None

    @model_validator(mode="after")
    def _fit_in_day(self) -> "TimedEntry":
        self.start_hour, self.duration_hour = time_grid.fit_entry(self.start_hour, self.duration_hour)
        return self

    @property
    def end_hour(self) -> float:
        return self.start_hour + self.duration_hour

    @property
    def is_linked(self) -> bool:
        return self.owner_kind != OwnerKind.FREE and bool(self.owner_id)

    @property
    def editable(self) -> bool:
        return self.origin == Origin.LOCAL or self.can_edit

    def patched(self, **changes) -> "TimedEntry":
        return TimedEntry.model_validate({**self.model_dump(), **changes})


class Task(BaseModel):
    id: str = Field(default_factory=_new_id)
    title: str
    tag: Optional[str] = None
    tag_color: Optional[str] = None
    assigned_date: Optional[date] = None
    time: Optional[str] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    list_type: ListType = ListType.ACTIVE
    is_recurring: bool = False
    recurrence_pattern: Optional[str] = None
    parent_task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("time", mode="before")
    @classmethod
    def _normalize_time(cls, value):
        if value is None or value == "":
            return None
        if hasattr(value, "strftime"):
            return value.strftime("%H:%M")
        return time_grid.hour_to_hhmm(time_grid.parse_hhmm(str(value)))

    @property
    def is_scheduled(self) -> bool:
        return self.time is not None


class Habit(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    tag: Optional[str] = None
    tag_color: Optional[str] = None
    frequency: Frequency = Frequency.DAILY
    scheduled_days: set[int] = Field(default_factory=set)
    scheduled_start_time: Optional[str] = None
    scheduled_end_time: Optional[str] = None
    completed_dates: set[date] = Field(default_factory=set)
    current_streak: int = 0
    longest_streak: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    start_date: Optional[date] = None
    archived_at: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("scheduled_days")
    @classmethod
    def _check_weekdays(cls, value: set[int]) -> set[int]:
        bad = [day for day in value if day < 0 or day > 6]
        if bad:
            raise ValueError(f"weekday out of range: {bad}")
        return value

    @field_serializer("completed_dates", "scheduled_days")
    def _sorted(self, value):
        return sorted(value)


class WeightEntry(BaseModel):
    date: dt.date
    weight: float


class DailyNote(BaseModel):
    date: dt.date
    content: str = ""


class RemoteCalendarEvent(BaseModel):
    remote_id: str
    title: str = ""
    start: datetime
    end: datetime
    color_id: Optional[str] = None
    calendar_id: str
    calendar_name: Optional[str] = None
    can_edit: bool = False


class CalendarInfo(BaseModel):
    id: str
    summary: str = ""
    access_role: str = "reader"
    background_color: Optional[str] = None

    @property
    def writable(self) -> bool:
        return self.access_role in {"owner", "writer"}


class SyncStats(BaseModel):
    added: int = 0
    updated: int = 0
    removed: int = 0

    @property
    def total(self) -> int:
        return self.added + self.updated + self.removed
