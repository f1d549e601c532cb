from __future__ import annotations

import math
from datetime import date
from typing import Iterable

from timebox.errors import ValidationFailure
from timebox.schemas import WeightEntry

MAX_WEIGHT_ENTRIES = 90


def _coerce_weight(value) -> float:
    try:
        weight = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailure(f"Weight must be a number, got {value!r}") from exc
    if math.isnan(weight) or math.isinf(weight) or weight <= 0:
        raise ValidationFailure("Weight must be a positive number")
    return weight


def log_weight(entries: Iterable[WeightEntry], day: date, value) -> list[WeightEntry]:
    """Upsert one reading per date, keep the list sorted and capped."""
    weight = _coerce_weight(value)
    by_date = {entry.date: entry for entry in entries}
    by_date[day] = WeightEntry(date=day, weight=weight)
    ordered = sorted(by_date.values(), key=lambda entry: entry.date)
    return ordered[-MAX_WEIGHT_ENTRIES:]


def remove_weight(entries: Iterable[WeightEntry], day: date) -> list[WeightEntry]:
    return [entry for entry in entries if entry.date != day]


def latest_change(entries: list[WeightEntry]) -> float | None:
    if len(entries) < 2:
        return None
    return round(entries[-1].weight - entries[-2].weight, 2)
