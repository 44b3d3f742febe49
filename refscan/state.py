"""Persistent scan state: one record per site plus a short history."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from .constants import HISTORY_LIMIT, OPTION_PREFIX
from .storage import OptionStore
from .types import JSONDict, ScanType


@dataclass(slots=True)
class ScanState:
    """Lifecycle of scanning activity for one site.

    A scan is running when it has a start date, no end date and was not
    cancelled.
    """

    needed: bool = True
    type: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    currently: str = ""
    progress: int = 0
    progress_total: int = 0
    cancelled_by: int | None = None
    started_by: int | None = None
    notes: list[str] = field(default_factory=list)
    history: list[JSONDict] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return bool(self.start_date) and not self.end_date and self.cancelled_by is None

    @property
    def is_complete(self) -> bool:
        return not self.is_running and bool(self.end_date) and self.cancelled_by is None

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_by is not None

    def summary(self) -> JSONDict:
        """This run without its history, as stored in the history list."""

        return {
            "type": self.type,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "progress": self.progress,
            "progress_total": self.progress_total,
            "cancelled_by": self.cancelled_by,
            "started_by": self.started_by,
            "notes": list(self.notes),
        }

    def set_progress(self, done: int) -> None:
        self.progress = max(0, min(int(done), self.progress_total))

    def reset(self, scan_type: ScanType, *, started_by: int, total: int, now: str) -> None:
        """Archive the previous run and begin a new one."""

        if self.start_date:
            self.history = trim_history([self.summary(), *self.history])

        self.type = scan_type.value
        self.start_date = now
        self.end_date = None
        self.currently = ""
        self.progress = 0
        self.progress_total = max(0, int(total))
        self.cancelled_by = None
        self.started_by = started_by
        self.notes = []
        if scan_type == ScanType.FULL_SCAN:
            self.needed = False

    def has_full_scan_ran(self) -> bool:
        """True when the most recent full scan finished and settings have not changed since."""

        if self.needed:
            return False
        if self.type == ScanType.FULL_SCAN.value and self.start_date:
            return self.is_complete
        for entry in self.history:
            if entry.get("type") == ScanType.FULL_SCAN.value:
                return bool(entry.get("end_date")) and entry.get("cancelled_by") is None
        return False

    def to_json(self) -> JSONDict:
        payload = self.summary()
        payload.update(
            {
                "needed": self.needed,
                "currently": self.currently,
                "history": [dict(item) for item in self.history],
            }
        )
        return payload

    @classmethod
    def from_json(cls, payload: Mapping[str, Any] | None) -> "ScanState":
        if not payload:
            return cls()
        cancelled = payload.get("cancelled_by")
        started = payload.get("started_by")
        return cls(
            needed=bool(payload.get("needed", True)),
            type=payload.get("type"),
            start_date=payload.get("start_date"),
            end_date=payload.get("end_date"),
            currently=str(payload.get("currently") or ""),
            progress=int(payload.get("progress") or 0),
            progress_total=int(payload.get("progress_total") or 0),
            cancelled_by=None if cancelled is None else int(cancelled),
            started_by=None if started is None else int(started),
            notes=[str(item) for item in payload.get("notes") or []],
            history=[dict(item) for item in payload.get("history") or []],
        )


def trim_history(history: list[JSONDict], limit: int = HISTORY_LIMIT) -> list[JSONDict]:
    """Keep the newest `limit` entries, plus the newest older full scan if none survived."""

    kept = history[:limit]
    if any(item.get("type") == ScanType.FULL_SCAN.value for item in kept):
        return kept
    older_full = next(
        (item for item in history[limit:] if item.get("type") == ScanType.FULL_SCAN.value),
        None,
    )
    if older_full is not None:
        kept.append(older_full)
    return kept


class ScanStateStore:
    """Load and save the `ScanState` record of one site."""

    def __init__(self, store: OptionStore, site_id: int) -> None:
        self.store = store
        self.key = f"{OPTION_PREFIX}scan_{site_id}"

    def load(self) -> ScanState:
        return ScanState.from_json(self.store.get(self.key))

    def save(self, state: ScanState) -> None:
        self.store.set(self.key, state.to_json())


__all__ = ["ScanState", "ScanStateStore", "trim_history"]
