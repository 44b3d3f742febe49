"""Persistence for scanner state: a JSON option store and the SQLite reference index.

Storage owns the on-disk layout. Other modules should use this API instead of
building paths manually.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from filelock import FileLock, Timeout

from .constants import DEFAULT_FILE_LOCK_TIMEOUT_SECONDS, EPOCH_DATE, STATUS_NOT_APPLICABLE
from .types import EntityKind, Reference, StatusResult


LOGGER = logging.getLogger(__name__)


def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    content = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n"
    tmp_fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=path.name + ".",
        suffix=".tmp",
    )
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


@contextmanager
def process_lock(
    thread_lock: threading.RLock,
    file_lock: FileLock,
    timeout: float,
) -> Iterator[None]:
    """Hold a thread lock and a cross-process file lock together.

    Raises TimeoutError when another process keeps the file lock longer than
    `timeout` seconds.
    """

    with thread_lock:
        try:
            file_lock.acquire(timeout=timeout)
        except Timeout as exc:
            raise TimeoutError(
                f"Could not acquire lock on {file_lock.lock_file} after {timeout}s"
            ) from exc
        try:
            yield
        finally:
            file_lock.release()


class OptionStore:
    """Small persistent key/value store backed by one JSON file.

    The file is re-read on every access so separate processes (a CLI run and
    a scheduled continuation, for example) observe each other's writes. Every
    access holds `<path>.lock`, so a read-modify-write in one process cannot
    interleave with one in another.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        lock_timeout_seconds: float = DEFAULT_FILE_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_seconds = lock_timeout_seconds
        self._lock = threading.RLock()
        self._file_lock = FileLock(str(self.path) + ".lock")

    def _locked(self):
        return process_lock(self._lock, self._file_lock, self.lock_timeout_seconds)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Option store %s is unreadable (%s); starting empty", self.path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._locked():
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._locked():
            payload = self._read()
            payload[key] = value
            _atomic_write_json(self.path, payload)

    def delete(self, key: str) -> bool:
        with self._locked():
            payload = self._read()
            if key not in payload:
                return False
            del payload[key]
            _atomic_write_json(self.path, payload)
            return True

    def update(self, key: str, updater) -> Any:
        """Read-modify-write one key under the store lock; returns the new value.

        An updater that returns None removes the key.
        """

        with self._locked():
            payload = self._read()
            value = updater(payload.get(key))
            if value is None:
                if key not in payload:
                    return None
                del payload[key]
            else:
                payload[key] = value
            _atomic_write_json(self.path, payload)
            return value

    def keys(self) -> list[str]:
        with self._locked():
            return sorted(self._read())


_COLUMNS: tuple[tuple[str, str], ...] = (
    ("from_id", "INTEGER NOT NULL"),
    ("from_kind", "TEXT NOT NULL"),
    ("from_site_id", "INTEGER NOT NULL"),
    ("from_where", "TEXT NOT NULL"),
    ("from_key", "TEXT NOT NULL DEFAULT ''"),
    ("from_subtype", "TEXT NOT NULL DEFAULT ''"),
    ("to_url", "TEXT NOT NULL DEFAULT ''"),
    ("to_url_full", "TEXT NOT NULL DEFAULT ''"),
    ("to_url_absolute", "TEXT NOT NULL DEFAULT ''"),
    ("to_url_is_relative", "INTEGER NOT NULL DEFAULT 0"),
    ("to_url_is_external", "INTEGER NOT NULL DEFAULT 0"),
    ("to_post_id", "INTEGER"),
    ("to_post_type", "TEXT NOT NULL DEFAULT ''"),
    ("to_kind", "TEXT NOT NULL"),
    ("to_site_id", "INTEGER"),
    ("to_anchor_text", "TEXT NOT NULL DEFAULT ''"),
    ("to_block_name", "TEXT NOT NULL DEFAULT ''"),
    ("to_url_status", "INTEGER NOT NULL DEFAULT -1"),
    ("to_url_status_date", f"TEXT NOT NULL DEFAULT '{EPOCH_DATE}'"),
    ("to_url_redirect", "TEXT NOT NULL DEFAULT ''"),
    ("redirection_id", "INTEGER"),
    ("redirection_site_id", "INTEGER"),
    ("redirection_url", "TEXT NOT NULL DEFAULT ''"),
)
_COLUMN_NAMES = tuple(name for name, _ in _COLUMNS)

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS refs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    {", ".join(f"{name} {decl}" for name, decl in _COLUMNS)}
);
CREATE INDEX IF NOT EXISTS refs_from ON refs (from_kind, from_id, from_site_id);
CREATE INDEX IF NOT EXISTS refs_to_post ON refs (to_post_id, to_site_id);
CREATE INDEX IF NOT EXISTS refs_to_absolute ON refs (to_url_absolute);
CREATE INDEX IF NOT EXISTS refs_redirection ON refs (redirection_id, redirection_site_id);
"""


class ReferenceIndex:
    """Queryable table of references, one row per discovered relationship."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "ReferenceIndex":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            with self._conn:
                yield self._conn

    @staticmethod
    def _row_values(ref: Reference) -> tuple[Any, ...]:
        payload = ref.to_json()
        values = []
        for name in _COLUMN_NAMES:
            value = payload[name]
            if isinstance(value, bool):
                value = int(value)
            values.append(value)
        return tuple(values)

    @staticmethod
    def _to_reference(row: sqlite3.Row) -> Reference:
        return Reference.from_json({name: row[name] for name in _COLUMN_NAMES})

    def _insert(self, conn: sqlite3.Connection, refs: Iterable[Reference]) -> int:
        placeholders = ", ".join("?" for _ in _COLUMN_NAMES)
        rows = [self._row_values(ref) for ref in refs]
        if rows:
            conn.executemany(
                f"INSERT INTO refs ({', '.join(_COLUMN_NAMES)}) VALUES ({placeholders})",
                rows,
            )
        return len(rows)

    def insert_many(self, refs: Iterable[Reference]) -> int:
        with self._transaction() as conn:
            return self._insert(conn, refs)

    def delete_outgoing(self, from_kind: EntityKind, from_id: int, from_site_id: int) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM refs WHERE from_kind = ? AND from_id = ? AND from_site_id = ?",
                (from_kind.value, from_id, from_site_id),
            )
            return cursor.rowcount

    def replace_outgoing(
        self,
        from_kind: EntityKind,
        from_id: int,
        from_site_id: int,
        refs: Iterable[Reference],
    ) -> int:
        """Delete every reference from one entity and insert the new set atomically."""

        refs = list(refs)
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM refs WHERE from_kind = ? AND from_id = ? AND from_site_id = ?",
                (from_kind.value, from_id, from_site_id),
            )
            return self._insert(conn, refs)

    def references_from(self, from_kind: EntityKind, from_id: int, from_site_id: int) -> list[Reference]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM refs WHERE from_kind = ? AND from_id = ? AND from_site_id = ? ORDER BY id",
                (from_kind.value, from_id, from_site_id),
            ).fetchall()
        return [self._to_reference(row) for row in rows]

    def references_to(self, to_post_id: int, to_site_id: int) -> list[Reference]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM refs WHERE to_post_id = ? AND to_site_id = ? ORDER BY id",
                (to_post_id, to_site_id),
            ).fetchall()
        return [self._to_reference(row) for row in rows]

    def references_with_redirect(self, redirection_id: int, redirection_site_id: int) -> list[Reference]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM refs WHERE redirection_id = ? AND redirection_site_id = ? ORDER BY id",
                (redirection_id, redirection_site_id),
            ).fetchall()
        return [self._to_reference(row) for row in rows]

    def all_references(self) -> list[Reference]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM refs ORDER BY id").fetchall()
        return [self._to_reference(row) for row in rows]

    def distinct_urls(self, *, only_unchecked: bool = False) -> list[str]:
        """Distinct checkable absolute URLs in the index, sorted.

        References whose status does not apply (mailto, blocks, private
        targets) are left out. With `only_unchecked`, only URLs whose status
        date is still the epoch placeholder are returned.
        """

        sql = (
            "SELECT DISTINCT to_url_absolute FROM refs "
            "WHERE to_url_absolute != '' AND to_url_status != ?"
        )
        params: tuple[Any, ...] = (STATUS_NOT_APPLICABLE,)
        if only_unchecked:
            sql += " AND to_url_status_date = ?"
            params += (EPOCH_DATE,)
        sql += " ORDER BY to_url_absolute"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [row[0] for row in rows]

    def update_status(self, result: StatusResult) -> int:
        """Write one status result onto every reference pointing at that URL."""

        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE refs SET to_url_status = ?, to_url_status_date = ?, to_url_redirect = ? "
                "WHERE to_url_absolute = ?",
                (result.status_code, result.checked_at, result.redirect_target, result.url),
            )
            return cursor.rowcount

    def purge(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM refs")
            return cursor.rowcount

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM refs").fetchone()[0])


__all__ = ["OptionStore", "ReferenceIndex"]
