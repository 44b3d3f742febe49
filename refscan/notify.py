"""User-facing scan notifications."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Protocol

from .types import JSONDict, utc_now_str


@dataclass(frozen=True, slots=True)
class Notification:
    level: str
    message: str
    remedy: str | None = None
    created_at: str = field(default_factory=utc_now_str)

    def to_json(self) -> JSONDict:
        return {
            "level": self.level,
            "message": self.message,
            "remedy": self.remedy,
            "created_at": self.created_at,
        }


class Notifier(Protocol):
    def notify(self, level: str, message: str, *, remedy: str | None = None) -> None: ...


class LogNotifier:
    """Send notifications to a logger and keep the most recent ones."""

    _LEVELS = {
        "info": logging.INFO,
        "success": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, logger_name: str = "refscan.notifications", *, keep: int = 20) -> None:
        self._logger = logging.getLogger(logger_name)
        self._lock = threading.Lock()
        self._recent: deque[Notification] = deque(maxlen=keep)

    def notify(self, level: str, message: str, *, remedy: str | None = None) -> None:
        item = Notification(level=level, message=message, remedy=remedy)
        with self._lock:
            self._recent.append(item)
        if remedy:
            self._logger.log(self._LEVELS.get(level, logging.INFO), "%s (%s)", message, remedy)
        else:
            self._logger.log(self._LEVELS.get(level, logging.INFO), "%s", message)

    def recent(self) -> list[Notification]:
        with self._lock:
            return list(self._recent)

    @property
    def last(self) -> Notification | None:
        with self._lock:
            return self._recent[-1] if self._recent else None


__all__ = ["LogNotifier", "Notification", "Notifier"]
