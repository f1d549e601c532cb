"""Pointer gesture state machine for moving and resizing timeline entries.

Transitions are pure functions ``(Gesture, input) -> (Gesture, [effects])``.
Nothing in here persists anything; the workspace turns effects into store
writes and notices.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from timebox import time_grid
from timebox.schemas import TimedEntry

HOLD_THRESHOLD_MS = 200
MOVE_THRESHOLD_PX = 5


class Phase(str, Enum):
    IDLE = "idle"
    ARMED_WAITING = "armed_waiting"
    DRAGGING = "dragging"
    RESIZING = "resizing"


class Target(str, Enum):
    BODY = "body"
    RESIZE_HANDLE = "resize_handle"


@dataclass(frozen=True)
class Gesture:
    phase: Phase = Phase.IDLE
    entry_id: str | None = None
    editable: bool = True
    origin_y: float = 0.0
    pressed_at_ms: float = 0.0
    pixels_per_hour: float = time_grid.HOUR_HEIGHT_NORMAL
    original_start: float = 0.0
    original_duration: float = 0.0
    start_hour: float = 0.0
    duration_hour: float = 0.0

    @property
    def active(self) -> bool:
        return self.phase in {Phase.DRAGGING, Phase.RESIZING}

    @property
    def changed(self) -> bool:
        return self.start_hour != self.original_start or self.duration_hour != self.original_duration


IDLE = Gesture()


@dataclass(frozen=True)
class Preview:
    entry_id: str
    start_hour: float
    duration_hour: float


@dataclass(frozen=True)
class Commit:
    entry_id: str
    start_hour: float
    duration_hour: float
    original_start: float
    original_duration: float


@dataclass(frozen=True)
class Click:
    entry_id: str


@dataclass(frozen=True)
class Reject:
    entry_id: str
    reason: str


@dataclass(frozen=True)
class Revert:
    entry_id: str
    start_hour: float
    duration_hour: float


def _read_only(entry_id: str) -> Reject:
    return Reject(entry_id, "This event is read-only in its calendar")


def pointer_down(state: Gesture, entry: TimedEntry, target: Target, y: float, now_ms: float, pixels_per_hour: float):
    if state.phase != Phase.IDLE:
        return state, []
    armed = Gesture(
        phase=Phase.ARMED_WAITING,
        entry_id=entry.id,
        editable=entry.editable,
        origin_y=y,
        pressed_at_ms=now_ms,
        pixels_per_hour=pixels_per_hour,
        original_start=entry.start_hour,
        original_duration=entry.duration_hour,
        start_hour=entry.start_hour,
        duration_hour=entry.duration_hour,
    )
    if Target(target) == Target.RESIZE_HANDLE:
        if not entry.editable:
            return IDLE, [_read_only(entry.id)]
        return replace(armed, phase=Phase.RESIZING), []
    return armed, []


def _dragged(state: Gesture, y: float) -> Gesture:
    delta = (y - state.origin_y) / state.pixels_per_hour
    start = time_grid.clamp_start(time_grid.snap(state.original_start + delta), state.duration_hour)
    return replace(state, start_hour=start)


def _resized(state: Gesture, y: float) -> Gesture:
    delta = (y - state.origin_y) / state.pixels_per_hour
    duration = time_grid.clamp_duration(time_grid.snap(state.original_duration + delta))
    duration = min(duration, time_grid.HOURS_PER_DAY - state.start_hour)
    return replace(state, duration_hour=duration)


def _preview(state: Gesture) -> Preview:
    return Preview(state.entry_id, state.start_hour, state.duration_hour)


def pointer_move(state: Gesture, y: float, now_ms: float):
    if state.phase == Phase.ARMED_WAITING:
        moved = abs(y - state.origin_y) > MOVE_THRESHOLD_PX
        held = now_ms - state.pressed_at_ms >= HOLD_THRESHOLD_MS
        if not (moved and held):
            return state, []
        if not state.editable:
            return IDLE, [_read_only(state.entry_id)]
        dragging = _dragged(replace(state, phase=Phase.DRAGGING), y)
        return dragging, [_preview(dragging)]
    if state.phase == Phase.DRAGGING:
        dragging = _dragged(state, y)
        return dragging, [_preview(dragging)]
    if state.phase == Phase.RESIZING:
        resizing = _resized(state, y)
        return resizing, [_preview(resizing)]
    return state, []


def pointer_up(state: Gesture, y: float, now_ms: float):
    """Finish the gesture: a quick release is a click, a drag or resize commits once."""
    if state.phase == Phase.ARMED_WAITING:
        if now_ms - state.pressed_at_ms < HOLD_THRESHOLD_MS:
            return IDLE, [Click(state.entry_id)]
        return IDLE, []
    if not state.active:
        return state, []
    final = _dragged(state, y) if state.phase == Phase.DRAGGING else _resized(state, y)
    if not final.changed:
        return IDLE, []
    return IDLE, [
        Commit(
            entry_id=final.entry_id,
            start_hour=final.start_hour,
            duration_hour=final.duration_hour,
            original_start=final.original_start,
            original_duration=final.original_duration,
        )
    ]


def cancel(state: Gesture):
    if state.active:
        return IDLE, [Revert(state.entry_id, state.original_start, state.original_duration)]
    return IDLE, []


class InteractionController:
    """Holds the current gesture and the viewport used to read pointer deltas."""

    def __init__(self, viewport: time_grid.Viewport | None = None):
        self.viewport = viewport or time_grid.Viewport()
        self.state: Gesture = IDLE

    @property
    def preview(self) -> Preview | None:
        if not self.state.active:
            return None
        return _preview(self.state)

    def pointer_down(self, entry: TimedEntry, target: Target, y: float, now_ms: float) -> list:
        self.state, effects = pointer_down(self.state, entry, target, y, now_ms, self.viewport.pixels_per_hour)
        return effects

    def pointer_move(self, y: float, now_ms: float) -> list:
        self.state, effects = pointer_move(self.state, y, now_ms)
        return effects

    def pointer_up(self, y: float, now_ms: float) -> list:
        self.state, effects = pointer_up(self.state, y, now_ms)
        return effects

    def cancel(self) -> list:
        self.state, effects = cancel(self.state)
        return effects
