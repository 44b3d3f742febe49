"""Scheduler and periodic refresh timing tests."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from refscan.config import StatusRefreshConfig
from refscan.scheduler import ManualScheduler, next_status_refresh_time

from .conftest import FakeClock


# Monday.
NOW = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def at(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("refresh", "now", "expected"),
    [
        (StatusRefreshConfig("weekly", "sunday", 1, "03:00"), NOW, at(2026, 10, 25, 3, 0)),
        (StatusRefreshConfig("weekly", "monday", 1, "11:30"), NOW, at(2026, 10, 19, 11, 30)),
        (StatusRefreshConfig("weekly", "monday", 1, "09:00"), NOW, at(2026, 10, 26, 9, 0)),
        (StatusRefreshConfig("bi-weekly", "monday", 1, "09:00"), NOW, at(2026, 11, 2, 9, 0)),
        (StatusRefreshConfig("monthly", "sunday", 31, "03:00"), NOW, at(2026, 10, 31, 3, 0)),
        (StatusRefreshConfig("monthly", "sunday", 1, "03:00"), NOW, at(2026, 11, 1, 3, 0)),
        (StatusRefreshConfig("monthly", "sunday", 31, "03:00"), at(2026, 11, 5, 0, 0), at(2026, 11, 30, 3, 0)),
        (StatusRefreshConfig("monthly", "sunday", 15, "03:00"), at(2026, 12, 20, 0, 0), at(2027, 1, 15, 3, 0)),
    ],
)
def test_next_status_refresh_time(refresh, now, expected):
    assert next_status_refresh_time(refresh, now) == expected


def test_refresh_off_has_no_next_run():
    assert next_status_refresh_time(StatusRefreshConfig(), NOW) is None


def test_refresh_config_validation():
    with pytest.raises(ValueError):
        StatusRefreshConfig(frequency="daily")
    with pytest.raises(ValueError):
        StatusRefreshConfig(frequency="weekly", time_of_day="25:00")


def test_manual_scheduler_replaces_jobs_with_the_same_name():
    ran = []
    scheduler = ManualScheduler(FakeClock())

    scheduler.schedule("job", 10, lambda: ran.append("first"))
    scheduler.schedule("job", 20, lambda: ran.append("second"))

    assert scheduler.delay_of("job") == 20
    assert scheduler.run_next()
    assert ran == ["second"]
    assert not scheduler.run_next()


def test_manual_scheduler_runs_only_due_jobs():
    clock = FakeClock()
    ran = []
    scheduler = ManualScheduler(clock)
    scheduler.schedule("soon", 5, lambda: ran.append("soon"))
    scheduler.schedule("later", 60, lambda: ran.append("later"))

    clock.advance(10)

    assert scheduler.run_due() == 1
    assert ran == ["soon"]
    assert scheduler.is_scheduled("later")
    assert scheduler.cancel("later")
    assert not scheduler.is_scheduled("later")
