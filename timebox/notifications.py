from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Notice:
    kind: str
    message: str
    recoverable: bool = True
    created_at: datetime = field(default_factory=_utcnow)


class NoticeBoard:
    """Queue of user-visible messages, drained by whatever renders the UI."""

    def __init__(self):
        self._items: list[Notice] = []

    def error(self, message: str, recoverable: bool = True) -> Notice:
        return self._push(Notice("error", message, recoverable))

    def info(self, message: str) -> Notice:
        return self._push(Notice("info", message))

    def success(self, message: str) -> Notice:
        return self._push(Notice("success", message))

    def _push(self, notice: Notice) -> Notice:
        logger.debug("notice %s: %s", notice.kind, notice.message)
        self._items.append(notice)
        return notice

    @property
    def pending(self) -> list[Notice]:
        return list(self._items)

    def drain(self) -> list[Notice]:
        items, self._items = self._items, []
        return items

    def __len__(self) -> int:
        return len(self._items)
