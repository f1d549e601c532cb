"""Key to JSON document store on the local disk.

Holds the calendar cache, habits, weight log and small UI preferences so a
cold start can render before the network answers.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from timebox.errors import PersistenceWriteFailure

logger = logging.getLogger(__name__)

CALENDAR_CACHE_KEY = "calendar-cache"
HABITS_KEY = "habits"
WEIGHT_ENTRIES_KEY = "weight-entries"
USER_TAGS_KEY = "user-tags"
SELECTED_DATE_KEY = "selected-date"
ZOOM_STATE_KEY = "zoom-state"


class LocalCache:
    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in key)
        return self.root / f"{safe}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Discarding unreadable cache entry %s", key, exc_info=True)
            return default

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        data = json.dumps(value, ensure_ascii=False, default=str)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{path.stem}-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except OSError as exc:
            logger.exception("Failed to write cache entry %s", key)
            raise PersistenceWriteFailure(f"Could not save {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise PersistenceWriteFailure(f"Could not delete {key}: {exc}") from exc

    def keys(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))
