"""Durable line-oriented FIFO work queues, one file per category.

Layout: `<queue_dir>/<site_id>-<category>.txt`. The first line of a fresh
file is the `_update_progress~` sentinel, followed by one `id[|description]`
entry per line. Consumed lines are removed by atomically rewriting the
remaining tail, so a killed process leaves either the old or the new file.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from filelock import FileLock

from .constants import (
    DEFAULT_FILE_LOCK_TIMEOUT_SECONDS,
    QUEUE_DESCRIPTION_DELIMITER,
    QUEUE_MAX_GROUP_SIZE,
    QUEUE_SENTINEL,
)
from .storage import process_lock
from .types import PROCESSING_ORDER, QueueCategory


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """One queued work item."""

    value: str
    description: str = ""

    @property
    def is_sentinel(self) -> bool:
        return self.value == QUEUE_SENTINEL

    def to_line(self) -> str:
        if self.description:
            return f"{self.value}{QUEUE_DESCRIPTION_DELIMITER}{self.description}"
        return self.value

    @classmethod
    def from_line(cls, line: str) -> "QueueEntry":
        value, _, description = line.partition(QUEUE_DESCRIPTION_DELIMITER)
        return cls(value=value.strip(), description=description.strip())


SENTINEL_ENTRY = QueueEntry(QUEUE_SENTINEL)


def _coerce_entry(item: QueueEntry | str | int | tuple) -> QueueEntry:
    if isinstance(item, QueueEntry):
        entry = item
    elif isinstance(item, tuple):
        value, description = item
        entry = QueueEntry(str(value), str(description or ""))
    else:
        entry = QueueEntry(str(item))

    if not entry.value or QUEUE_DESCRIPTION_DELIMITER in entry.value:
        raise ValueError(f"Invalid queue id: {entry.value!r}")
    if "\n" in entry.value or "\r" in entry.value or "\n" in entry.description:
        raise ValueError(f"Queue entries cannot contain newlines: {entry!r}")
    if entry.is_sentinel:
        raise ValueError("The progress sentinel cannot be queued as work")
    return entry


class QueueManager:
    """Push, read and consume work per category for one site."""

    def __init__(
        self,
        queue_dir: str | Path,
        site_id: int,
        *,
        lock_timeout_seconds: float = DEFAULT_FILE_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.queue_dir = Path(queue_dir)
        self.site_id = site_id
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_seconds = lock_timeout_seconds
        self._lock = threading.RLock()
        self._file_lock = FileLock(str(self.queue_dir / f"{site_id}.lock"))

    def _locked(self):
        return process_lock(self._lock, self._file_lock, self.lock_timeout_seconds)

    def path_for(self, category: QueueCategory) -> Path:
        return self.queue_dir / f"{self.site_id}-{category.value}.txt"

    def push(self, category: QueueCategory, items: Iterable[QueueEntry | str | int | tuple]) -> int:
        """Append items to a category; a new file starts with the sentinel line."""

        entries = [_coerce_entry(item) for item in items]
        if not entries:
            return 0

        path = self.path_for(category)
        with self._locked():
            is_new = not path.exists() or path.stat().st_size == 0
            with path.open("a", encoding="utf-8") as handle:
                if is_new:
                    handle.write(QUEUE_SENTINEL + "\n")
                for entry in entries:
                    handle.write(entry.to_line() + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        LOGGER.debug("Queued %d %s item(s) in %s", len(entries), category.value, path)
        return len(entries)

    def _read_lines(self, category: QueueCategory) -> list[str] | None:
        path = self.path_for(category)
        if not path.exists():
            return []
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.error("Queue file %s is unreadable (%s); deleting it", path, exc)
            self._delete(path)
            return None
        return [line for line in text.splitlines() if line.strip()]

    def peek_group(self, category: QueueCategory, max_size: int) -> list[QueueEntry]:
        """Read up to `max_size` entries from the front without consuming them.

        The size is capped at 50. A leading sentinel is returned on its own.
        """

        size = max(1, min(int(max_size), QUEUE_MAX_GROUP_SIZE))
        with self._locked():
            lines = self._read_lines(category)
            if not lines:
                if lines is not None:
                    self._delete(self.path_for(category))
                return []
            if lines[0].strip() == QUEUE_SENTINEL:
                return [SENTINEL_ENTRY]
            return [QueueEntry.from_line(line) for line in lines[:size]]

    def advance(self, category: QueueCategory, entries: Sequence[QueueEntry]) -> int:
        """Remove `entries` from the front once they are done; deletes the file once empty.

        `entries` must be what `peek_group` returned. When the front of the
        file no longer matches (it was drained and refilled meanwhile), the
        file is left untouched. Returns the number of real items left in the
        category.
        """

        path = self.path_for(category)
        with self._locked():
            lines = self._read_lines(category)
            if not lines:
                self._delete(path)
                return 0
            front = [QueueEntry.from_line(line) for line in lines[: len(entries)]]
            if front != list(entries):
                LOGGER.warning(
                    "Front of %s changed since it was read; not consuming %d item(s)",
                    path,
                    len(entries),
                )
                return sum(1 for line in lines if line.strip() != QUEUE_SENTINEL)
            remaining = lines[len(entries):]
            if not remaining:
                self._delete(path)
                return 0
            self._atomic_write_lines(path, remaining)
            return sum(1 for line in remaining if line.strip() != QUEUE_SENTINEL)

    def pop_group(self, category: QueueCategory, max_size: int) -> list[QueueEntry]:
        """Read and consume one group (see `peek_group`)."""

        with self._locked():
            group = self.peek_group(category, max_size)
            if group:
                self.advance(category, group)
            return group

    def count(self, category: QueueCategory | None = None) -> int:
        """Number of real items queued in one category, or in all of them."""

        categories = [category] if category is not None else list(PROCESSING_ORDER)
        total = 0
        with self._locked():
            for item in categories:
                lines = self._read_lines(item)
                if lines is None:
                    continue
                real = sum(1 for line in lines if line.strip() != QUEUE_SENTINEL)
                if not lines:
                    self._delete(self.path_for(item))
                total += real
        return total

    def has_work(self) -> bool:
        with self._locked():
            return any(self.path_for(category).exists() for category in PROCESSING_ORDER)

    def categories_with_work(self) -> list[QueueCategory]:
        return [category for category in PROCESSING_ORDER if self.path_for(category).exists()]

    def drain(self, category: QueueCategory) -> None:
        with self._locked():
            self._delete(self.path_for(category))

    def drain_all(self) -> None:
        """Delete every queue file for this site without processing it."""

        with self._locked():
            for category in PROCESSING_ORDER:
                self._delete(self.path_for(category))

    @staticmethod
    def _delete(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    @staticmethod
    def _atomic_write_lines(path: Path, lines: list[str]) -> None:
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=path.name + ".",
            suffix=".tmp",
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise


__all__ = ["QueueEntry", "QueueManager", "SENTINEL_ENTRY"]
