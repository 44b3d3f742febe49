"""Delayed-call scheduling used for batch continuations and periodic scans."""

from __future__ import annotations

import calendar
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from .config import WEEKDAYS, StatusRefreshConfig
from .types import utc_now


LOGGER = logging.getLogger(__name__)

# Job names.
CONTINUE_JOB = "continue_scan"
HEALTH_CHECK_JOB = "health_check"
STATUS_REFRESH_JOB = "status_refresh"
MAINTENANCE_JOB = "maintenance_check_status"


class Scheduler(Protocol):
    """Host capability: run `callback` once after `delay_seconds`.

    Scheduling a name that is already pending replaces the pending call.
    """

    def schedule(self, name: str, delay_seconds: float, callback: Callable[[], object]) -> None: ...

    def cancel(self, name: str) -> bool: ...

    def is_scheduled(self, name: str) -> bool: ...


class ThreadingScheduler:
    """In-process scheduler backed by `threading.Timer`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}

    def schedule(self, name: str, delay_seconds: float, callback: Callable[[], object]) -> None:
        def _run() -> None:
            with self._lock:
                if self._timers.get(name) is timer:
                    del self._timers[name]
            try:
                callback()
            except Exception:
                LOGGER.exception("Scheduled job %s failed", name)

        timer = threading.Timer(max(0.0, delay_seconds), _run)
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(name, None)
            self._timers[name] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def cancel(self, name: str) -> bool:
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def is_scheduled(self, name: str) -> bool:
        with self._lock:
            return name in self._timers

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


@dataclass(slots=True)
class ScheduledJob:
    name: str
    due: datetime
    callback: Callable[[], object]


class ManualScheduler:
    """Scheduler whose jobs only run when `run_due` or `run_next` is called.

    Used by the CLI `run` command to drive a scan synchronously, and by tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self.jobs: dict[str, ScheduledJob] = {}

    def schedule(self, name: str, delay_seconds: float, callback: Callable[[], object]) -> None:
        self.jobs[name] = ScheduledJob(
            name=name,
            due=self._clock() + timedelta(seconds=max(0.0, delay_seconds)),
            callback=callback,
        )

    def cancel(self, name: str) -> bool:
        return self.jobs.pop(name, None) is not None

    def is_scheduled(self, name: str) -> bool:
        return name in self.jobs

    def delay_of(self, name: str) -> float | None:
        job = self.jobs.get(name)
        if job is None:
            return None
        return (job.due - self._clock()).total_seconds()

    def run_next(self, name: str | None = None) -> bool:
        """Run one job regardless of its due time; the earliest one by default."""

        if not self.jobs:
            return False
        if name is None:
            name = min(self.jobs.values(), key=lambda job: job.due).name
        job = self.jobs.pop(name, None)
        if job is None:
            return False
        job.callback()
        return True

    def run_due(self) -> int:
        """Run every job whose due time has passed; returns how many ran."""

        now = self._clock()
        ran = 0
        for job in sorted(self.jobs.values(), key=lambda item: item.due):
            if job.due > now or self.jobs.get(job.name) is not job:
                continue
            del self.jobs[job.name]
            job.callback()
            ran += 1
        return ran


def _at_time(day: datetime, hour: int, minute: int) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def next_status_refresh_time(refresh: StatusRefreshConfig, now: datetime) -> datetime | None:
    """Next run of the periodic status refresh, or None when it is off.

    Monthly runs use the day of the month (clamped to short months) and roll
    to the next month once passed. Weekly and bi-weekly runs use the next
    occurrence of the weekday, pushed out by one or two weeks once passed.
    """

    if not refresh.enabled:
        return None

    hour, minute = refresh.hour_minute

    if refresh.frequency == "monthly":
        year, month = now.year, now.month
        for _ in range(2):
            day = min(refresh.day_of_month, calendar.monthrange(year, month)[1])
            candidate = _at_time(now.replace(year=year, month=month, day=day), hour, minute)
            if candidate > now:
                return candidate
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        return candidate

    target_weekday = WEEKDAYS.index(refresh.day_of_week)
    days_ahead = (target_weekday - now.weekday()) % 7
    candidate = _at_time(now + timedelta(days=days_ahead), hour, minute)
    if candidate <= now:
        candidate += timedelta(weeks=2 if refresh.frequency == "bi-weekly" else 1)
    return candidate


__all__ = [
    "CONTINUE_JOB",
    "HEALTH_CHECK_JOB",
    "MAINTENANCE_JOB",
    "ManualScheduler",
    "STATUS_REFRESH_JOB",
    "ScheduledJob",
    "Scheduler",
    "ThreadingScheduler",
    "next_status_refresh_time",
]
