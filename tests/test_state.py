"""Scan state, history and lock tests."""

from __future__ import annotations

import threading

import pytest
from filelock import FileLock

from refscan.lock import ScanLock
from refscan.state import ScanState, ScanStateStore, trim_history
from refscan.storage import OptionStore
from refscan.types import ScanType


def test_reset_archives_previous_run_and_clears_needed_for_full_scan():
    state = ScanState()
    state.reset(ScanType.FULL_SCAN, started_by=1, total=10, now="2026-10-01 00:00:00")
    state.end_date = "2026-10-01 00:10:00"

    state.reset(ScanType.CHECK_STATUS, started_by=-1, total=4, now="2026-10-02 00:00:00")

    assert not state.needed
    assert state.is_running
    assert state.progress_total == 4
    assert state.history[0]["type"] == ScanType.FULL_SCAN.value
    assert state.history[0]["end_date"] == "2026-10-01 00:10:00"


def test_running_complete_and_cancelled_flags():
    state = ScanState()
    assert not state.is_running

    state.reset(ScanType.FULL_SCAN, started_by=1, total=1, now="2026-10-01 00:00:00")
    assert state.is_running

    state.cancelled_by = 1
    state.end_date = "2026-10-01 00:01:00"
    assert state.is_cancelled
    assert not state.is_complete


def test_progress_is_clamped_to_total():
    state = ScanState(progress_total=5)

    state.set_progress(9)

    assert state.progress == 5


def test_has_full_scan_ran_looks_through_history():
    state = ScanState()
    assert not state.has_full_scan_ran()

    state.reset(ScanType.FULL_SCAN, started_by=1, total=1, now="2026-10-01 00:00:00")
    assert not state.has_full_scan_ran()
    state.end_date = "2026-10-01 00:01:00"
    assert state.has_full_scan_ran()

    state.reset(ScanType.CHECK_STATUS, started_by=1, total=1, now="2026-10-02 00:00:00")
    assert state.has_full_scan_ran()

    state.needed = True
    assert not state.has_full_scan_ran()


def test_trim_history_keeps_an_older_full_scan():
    history = [{"type": ScanType.CHECK_STATUS.value, "start_date": str(n)} for n in range(12)]
    history.append({"type": ScanType.FULL_SCAN.value, "start_date": "old"})

    trimmed = trim_history(history, limit=10)

    assert len(trimmed) == 11
    assert trimmed[-1]["start_date"] == "old"


def test_state_store_round_trip(options):
    store = ScanStateStore(options, site_id=3)
    state = ScanState()
    state.reset(ScanType.FULL_SCAN, started_by=7, total=2, now="2026-10-01 00:00:00")
    state.notes.append("nightly")
    store.save(state)

    loaded = store.load()

    assert store.key == "refscan_scan_3"
    assert loaded.to_json() == state.to_json()


def test_missing_state_is_a_fresh_record(options):
    loaded = ScanStateStore(options, site_id=1).load()

    assert loaded.needed
    assert loaded.start_date is None


def test_lock_is_exclusive_until_released(options):
    first = ScanLock(options, 1, ttl_seconds=60)
    second = ScanLock(options, 1, ttl_seconds=60)

    assert first.acquire()
    assert not second.acquire()
    assert second.is_locked()

    first.release()

    assert not first.is_locked()
    assert second.acquire()


def test_lock_expires_after_ttl(options):
    now = [1000.0]
    first = ScanLock(options, 1, ttl_seconds=60, clock=lambda: now[0])
    second = ScanLock(options, 1, ttl_seconds=60, clock=lambda: now[0])
    first.acquire()

    now[0] += 61

    assert not second.is_locked()
    assert second.acquire()


def test_release_leaves_a_lock_taken_over_by_someone_else(options):
    now = [1000.0]
    first = ScanLock(options, 1, ttl_seconds=60, clock=lambda: now[0])
    second = ScanLock(options, 1, ttl_seconds=60, clock=lambda: now[0])
    first.acquire()
    now[0] += 61
    second.acquire()

    first.release()

    assert second.is_locked()


def test_locks_are_per_site(options):
    assert ScanLock(options, 1).acquire()
    assert ScanLock(options, 2).acquire()


def test_holder_cannot_take_its_own_live_lock_again(options):
    lock = ScanLock(options, 1, ttl_seconds=60)

    assert lock.acquire()
    assert not lock.acquire()

    lock.release()

    assert lock.acquire()


def test_renew_extends_only_the_holders_lock(options):
    now = [1000.0]
    holder = ScanLock(options, 1, ttl_seconds=60, clock=lambda: now[0])
    other = ScanLock(options, 1, ttl_seconds=60, clock=lambda: now[0])
    holder.acquire()

    now[0] += 50
    assert holder.renew()
    assert not other.renew()

    now[0] += 50
    assert holder.is_locked()
    assert not other.acquire()


def test_renew_fails_once_the_lock_expired(options):
    now = [1000.0]
    holder = ScanLock(options, 1, ttl_seconds=60, clock=lambda: now[0])
    holder.acquire()

    now[0] += 61

    assert not holder.renew()
    assert not holder.is_locked()


def test_only_one_store_instance_wins_the_lock(tmp_path):
    path = tmp_path / "options.json"
    barrier = threading.Barrier(4)
    results = []

    def contend():
        lock = ScanLock(OptionStore(path), 1, ttl_seconds=60)
        barrier.wait()
        results.append(lock.acquire())

    threads = [threading.Thread(target=contend) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [False, False, False, True]


def test_store_times_out_while_another_holder_keeps_the_file_lock(tmp_path):
    path = tmp_path / "options.json"
    store = OptionStore(path, lock_timeout_seconds=0.05)
    holder = FileLock(str(path) + ".lock")
    holder.acquire()
    try:
        with pytest.raises(TimeoutError):
            store.set("key", 1)
    finally:
        holder.release()

    store.set("key", 1)
    assert store.get("key") == 1


def test_update_returning_none_removes_the_key(options):
    options.set("key", {"a": 1})

    assert options.update("key", lambda current: None) is None
    assert "key" not in options.keys()
