"""Session-scoped status-code cache persisted in the option store."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from .constants import (
    DEFAULT_CACHE_TTL_SECONDS,
    EPOCH_DATE,
    OPTION_PREFIX,
    STATUS_DEFERRED,
)
from .status import StatusChecker
from .storage import OptionStore
from .types import StatusResult, utc_now


LOGGER = logging.getLogger(__name__)


def cache_key(action: str, site_id: int, entity_id: int | None = None) -> str:
    """Option name for one triggering action, so concurrent triggers never share a bucket."""

    key = f"{OPTION_PREFIX}{action}_{site_id}"
    if entity_id:
        key += f"_{entity_id}"
    return key + "_cache_status_codes"


class StatusCache:
    """Map of `absolute_url -> {status_code, redirect_target, checked_at}`.

    Every write goes straight to the option store, so an interrupted scan
    loses at most the entry it was working on. The bucket is deleted when
    the cache is created and when `clear()` is called.
    """

    def __init__(
        self,
        store: OptionStore,
        key: str,
        checker: StatusChecker | None = None,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        reset: bool = True,
    ) -> None:
        self.store = store
        self.key = key
        self.checker = checker
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        if reset:
            self.store.delete(self.key)

    def _entries(self) -> dict[str, dict]:
        entries = self.store.get(self.key)
        return entries if isinstance(entries, dict) else {}

    def get(self, url: str) -> StatusResult | None:
        payload = self._entries().get(url)
        if not isinstance(payload, dict):
            return None
        return StatusResult.from_cache_json(url, payload)

    def put(self, result: StatusResult) -> None:
        def _merge(current):
            entries = current if isinstance(current, dict) else {}
            entries[result.url] = result.to_cache_json()
            return entries

        self.store.update(self.key, _merge)

    def seed(self, results: Iterable[StatusResult]) -> int:
        """Pre-load known statuses, typically from an entity's previous references."""

        results = [item for item in results if item.url]
        if not results:
            return 0

        def _merge(current):
            entries = current if isinstance(current, dict) else {}
            for item in results:
                entries.setdefault(item.url, item.to_cache_json())
            return entries

        self.store.update(self.key, _merge)
        return len(results)

    def get_or_check(self, url: str) -> StatusResult:
        """Return a fresh cached status or check the URL and write it through."""

        cached = self.get(url)
        now = self._clock()
        if cached is not None and cached.is_fresh(now, self.ttl_seconds):
            LOGGER.debug("Status cache hit for %s", url)
            return cached

        if self.checker is None:
            raise RuntimeError("StatusCache.get_or_check requires a StatusChecker")

        if cached is not None:
            LOGGER.debug("Status cache entry for %s expired; rechecking", url)
        result = self.checker.check(url)
        self.put(result)
        return result

    def lookup_or_defer(self, url: str) -> StatusResult:
        """Queued mode: use what is cached, otherwise mark the URL for a later check.

        Deferred and expired entries carry the epoch date, which the
        maintenance scan picks up.
        """

        cached = self.get(url)
        if cached is None:
            return StatusResult(url=url, status_code=STATUS_DEFERRED, checked_at=EPOCH_DATE)
        if not cached.is_fresh(self._clock(), self.ttl_seconds):
            cached.checked_at = EPOCH_DATE
        return cached

    def __len__(self) -> int:
        return len(self._entries())

    def clear(self) -> None:
        self.store.delete(self.key)


__all__ = ["StatusCache", "cache_key"]
