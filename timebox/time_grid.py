"""Pure conversions between hours of the day and pixels on the timeline.

Hours are floats in ``[0, 24]``; ``9.5`` means 09:30. Every function here is
total: out of range input is clamped rather than rejected.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

from timebox.errors import ValidationFailure

HOURS_PER_DAY = 24.0
SNAP_GRANULARITY = 0.25
MIN_DURATION = 0.25
DEFAULT_DURATION = 1.0

HOUR_HEIGHT_NORMAL = 96
HOUR_HEIGHT_ZOOMED = 40


@dataclass
class Viewport:
    zoomed: bool = False

    @property
    def pixels_per_hour(self) -> int:
        return pixels_per_hour(self.zoomed)

    def to_y(self, hour: float) -> float:
        return to_y(hour, self.pixels_per_hour)

    def to_hour(self, pixels: float) -> float:
        return to_hour(pixels, self.pixels_per_hour)

    def toggle(self) -> bool:
        self.zoomed = not self.zoomed
        return self.zoomed


def pixels_per_hour(zoomed: bool = False) -> int:
    return HOUR_HEIGHT_ZOOMED if zoomed else HOUR_HEIGHT_NORMAL


def to_y(hour: float, pixels_per_hour: float) -> float:
    return hour * pixels_per_hour


def to_hour(pixels: float, pixels_per_hour: float) -> float:
    # a non-positive scale reads deltas at the normal height
    if pixels_per_hour <= 0:
        pixels_per_hour = HOUR_HEIGHT_NORMAL
    return pixels / pixels_per_hour


def snap(hour: float, granularity: float = SNAP_GRANULARITY) -> float:
    # halves round up, -0.125 snaps to 0
    steps = math.floor(hour / granularity + 0.5)
    return round(steps * granularity, 9) + 0.0


def clamp_start(hour: float, duration: float) -> float:
    upper = max(0.0, HOURS_PER_DAY - duration)
    return min(max(hour, 0.0), upper)


def clamp_duration(duration: float, minimum: float = MIN_DURATION, maximum: float = HOURS_PER_DAY) -> float:
    return min(max(duration, minimum), maximum)


def fit_entry(start_hour: float, duration_hour: float) -> tuple[float, float]:
    """Bring a (start, duration) pair inside the day.

    Duration is clamped first, then the start is pulled back so the entry
    ends at or before midnight.
    """
    duration = clamp_duration(duration_hour)
    start = min(max(start_hour, 0.0), HOURS_PER_DAY - MIN_DURATION)
    if start + duration > HOURS_PER_DAY:
        duration = max(MIN_DURATION, HOURS_PER_DAY - start)
        start = clamp_start(start, duration)
    return start, duration


def _split(hour: float) -> tuple[int, int]:
    total_minutes = int(round(hour * 60))
    total_minutes = max(0, min(total_minutes, 24 * 60))
    return divmod(total_minutes, 60)


def hour_to_hhmm(hour: float) -> str:
    hours, minutes = _split(hour)
    if hours >= 24:
        hours, minutes = 23, 59
    return f"{hours:02d}:{minutes:02d}"


def format_time(hour: float, clock: str = "24h") -> str:
    hours, minutes = _split(hour)
    if clock != "12h":
        return f"{hours % 24:02d}:{minutes:02d}"
    suffix = "AM" if hours % 24 < 12 else "PM"
    display = hours % 12 or 12
    return f"{display}:{minutes:02d} {suffix}"


def parse_hhmm(value: str) -> float:
    text = str(value or "").strip()
    parts = text.split(":")
    if len(parts) < 2:
        raise ValidationFailure(f"Invalid time value: {value!r}")
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
    except ValueError as exc:
        raise ValidationFailure(f"Invalid time value: {value!r}") from exc
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValidationFailure(f"Time out of range: {value!r}")
    return hours + minutes / 60


def project_instant(instant: datetime, tz: ZoneInfo | str) -> tuple[date, float]:
    """Return the local day and fractional hour of ``instant`` in ``tz``."""
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    if instant.tzinfo is None:
        local = instant.replace(tzinfo=zone)
    else:
        local = instant.astimezone(zone)
    return local.date(), local.hour + local.minute / 60 + local.second / 3600
