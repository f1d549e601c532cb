"""Mapping between timeline colors and Google Calendar ``colorId`` values."""

from __future__ import annotations

DEFAULT_COLOR_ID = "3"

GOOGLE_COLOR_PALETTE: dict[str, str] = {
    "1": "#7986cb",
    "2": "#33b679",
    "3": "#8e24aa",
    "4": "#e67c73",
    "5": "#f6bf26",
    "6": "#f4511e",
    "7": "#039be5",
    "8": "#616161",
    "9": "#3f51b5",
    "10": "#0b8043",
    "11": "#d50000",
}

TAG_COLOR_IDS: dict[str, str] = {
    "work": "9",
    "personal": "10",
    "meeting": "11",
    "task": "7",
    "focus": "5",
    "break": "2",
    "urgent": "4",
    "later": "8",
    "google": "1",
    "demo": "3",
    "move": "6",
}


def _rgb(hex_color: str) -> tuple[int, int, int] | None:
    value = hex_color.lstrip("#")
    if len(value) == 3:
        value = "".join(ch * 2 for ch in value)
    if len(value) != 6:
        return None
    try:
        return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)
    except ValueError:
        return None


def nearest_color_id(hex_color: str | None) -> str:
    if not hex_color or not hex_color.startswith("#"):
        return DEFAULT_COLOR_ID
    target = _rgb(hex_color)
    if target is None:
        return DEFAULT_COLOR_ID
    best_id = DEFAULT_COLOR_ID
    best_distance = float("inf")
    for color_id, palette_hex in GOOGLE_COLOR_PALETTE.items():
        candidate = _rgb(palette_hex)
        distance = sum((a - b) ** 2 for a, b in zip(target, candidate)) ** 0.5
        if distance < best_distance:
            best_distance = distance
            best_id = color_id
    return best_id


def google_color_id(hex_color: str | None = None, tag: str | None = None) -> str:
    """Hex color wins, then the tag table, then the default."""
    if hex_color and hex_color.startswith("#"):
        return nearest_color_id(hex_color)
    if tag:
        mapped = TAG_COLOR_IDS.get(tag.lower())
        if mapped:
            return mapped
    return DEFAULT_COLOR_ID


def hex_for_color_id(color_id: str | None) -> str | None:
    if not color_id:
        return None
    return GOOGLE_COLOR_PALETTE.get(str(color_id))
