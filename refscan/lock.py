"""Single-instance batch lock with a time-to-live."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from .constants import DEFAULT_LOCK_TTL_SECONDS, OPTION_PREFIX
from .storage import OptionStore


LOGGER = logging.getLogger(__name__)


class ScanLock:
    """Mutual exclusion for the batch loop of one site.

    The lock expires after `ttl_seconds`, so a crashed batch cannot block the
    site forever. A holder that runs longer than the TTL must call `renew()`
    between groups. A live lock is never taken again, not even by the
    instance that holds it.
    """

    def __init__(
        self,
        store: OptionStore,
        site_id: int,
        *,
        ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.key = f"{OPTION_PREFIX}process_lock_{site_id}"
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._token: str | None = None

    def _live(self, value) -> bool:
        return isinstance(value, dict) and float(value.get("expires", 0)) > self._clock()

    def _mine(self, value) -> bool:
        return (
            self._token is not None
            and isinstance(value, dict)
            and value.get("token") == self._token
        )

    def acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = False

        def _take(current):
            nonlocal acquired
            if self._live(current):
                return current
            acquired = True
            return {"token": token, "expires": self._clock() + self.ttl_seconds}

        self.store.update(self.key, _take)
        if acquired:
            self._token = token
        else:
            LOGGER.debug("Scan lock %s is already held", self.key)
        return acquired

    def renew(self) -> bool:
        """Push the expiry of a lock this instance holds; False when it was lost."""

        renewed = False

        def _extend(current):
            nonlocal renewed
            if not self._mine(current) or not self._live(current):
                return current
            renewed = True
            return {"token": self._token, "expires": self._clock() + self.ttl_seconds}

        self.store.update(self.key, _extend)
        if not renewed:
            LOGGER.warning("Scan lock %s expired or was taken over", self.key)
        return renewed

    def release(self) -> None:
        taken_over = False

        def _drop(current):
            nonlocal taken_over
            if current is None or self._mine(current):
                return None
            taken_over = True
            return current

        self.store.update(self.key, _drop)
        if taken_over:
            LOGGER.warning("Scan lock %s was taken over; leaving it in place", self.key)
        self._token = None

    def is_locked(self) -> bool:
        return self._live(self.store.get(self.key))


__all__ = ["ScanLock"]
