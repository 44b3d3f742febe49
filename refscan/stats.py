"""Thread-safe scan statistics aggregation."""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Any, Mapping

from .types import EntityKind, StatusResult


class StatsCollector:
    """Collect counters for one batch or one whole run.

    The collector is shared by the extractor and the orchestrator and may be
    merged into a longer-lived collector after each batch.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = time.monotonic()

        self._entities_by_kind: dict[str, int] = defaultdict(int)
        self._references_by_kind: dict[str, int] = defaultdict(int)
        self._status_code_counts: dict[str, int] = defaultdict(int)
        self._status_error_type_counts: dict[str, int] = defaultdict(int)
        self._status_attempts_total = 0
        self._status_checks = 0
        self._error_counts: dict[str, int] = defaultdict(int)
        self._custom_counters: dict[str, int] = defaultdict(int)

    def record_entity(self, kind: EntityKind, reference_count: int) -> None:
        """Record one scanned entity and how many references it produced."""

        with self._lock:
            self._entities_by_kind[kind.value] += 1
            self._references_by_kind[kind.value] += max(0, reference_count)

    def record_status(self, result: StatusResult) -> None:
        """Record one status check that reached the network."""

        with self._lock:
            self._status_checks += 1
            self._status_attempts_total += result.attempts
            self._status_code_counts[str(result.status_code)] += 1
            if result.error:
                err_type = result.error.split(":", maxsplit=1)[0].strip() or "Unknown"
                self._status_error_type_counts[err_type] += 1

    def record_error(self, stage: str, exc: BaseException | str) -> None:
        name = exc if isinstance(exc, str) else exc.__class__.__name__
        with self._lock:
            self._error_counts[f"{stage}:{name}"] += 1

    def increment(self, name: str, value: int = 1) -> None:
        """Increment a custom counter for ad-hoc instrumentation."""

        if not name or value == 0:
            return
        with self._lock:
            self._custom_counters[name] += value

    def get(self, name: str) -> int:
        with self._lock:
            return int(self._custom_counters.get(name, 0))

    @property
    def entities_scanned(self) -> int:
        with self._lock:
            return sum(self._entities_by_kind.values())

    def merge(self, other: "StatsCollector") -> None:
        """Merge another collector into this one."""

        payload = other.to_json()
        with self._lock:
            self._merge_count_dict(self._entities_by_kind, payload["entities"]["by_kind"])
            self._merge_count_dict(self._references_by_kind, payload["references"]["by_from_kind"])
            self._merge_count_dict(self._status_code_counts, payload["status"]["status_code_counts"])
            self._merge_count_dict(
                self._status_error_type_counts,
                payload["status"]["error_type_counts"],
            )
            self._status_checks += int(payload["status"]["checks"])
            self._status_attempts_total += int(payload["status"]["attempts_total"])
            self._merge_count_dict(self._error_counts, payload["errors"])
            self._merge_count_dict(self._custom_counters, payload["custom_counters"])

    def to_json(self) -> dict[str, Any]:
        """Return a JSON-serializable summary payload."""

        with self._lock:
            duration_seconds = max(0.0, time.monotonic() - self._started)
            entities_total = sum(self._entities_by_kind.values())
            return {
                "duration_seconds": duration_seconds,
                "entities": {
                    "total": entities_total,
                    "by_kind": dict(self._entities_by_kind),
                    "per_second": entities_total / duration_seconds if duration_seconds > 0 else 0.0,
                },
                "references": {
                    "total": sum(self._references_by_kind.values()),
                    "by_from_kind": dict(self._references_by_kind),
                },
                "status": {
                    "checks": self._status_checks,
                    "attempts_total": self._status_attempts_total,
                    "status_code_counts": dict(self._status_code_counts),
                    "error_type_counts": dict(self._status_error_type_counts),
                },
                "errors": dict(self._error_counts),
                "custom_counters": dict(self._custom_counters),
            }

    @staticmethod
    def _merge_count_dict(target: dict[str, int], incoming: Mapping[str, Any]) -> None:
        for key, value in incoming.items():
            target[str(key)] += int(value)


__all__ = ["StatsCollector"]
