"""Time and memory budget tracking for one batch."""

from __future__ import annotations

import logging
import time
from typing import Callable

import psutil

from .config import ScanConfig


LOGGER = logging.getLogger(__name__)


def process_rss_bytes() -> int:
    """Resident set size of the current process."""

    return int(psutil.Process().memory_info().rss)


class ResourceMonitor:
    """Answers "may this batch keep going?".

    Exceeding a budget is not an error. The orchestrator uses it as the
    signal to stop between groups and schedule a continuation.
    """

    def __init__(
        self,
        config: ScanConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        memory_sampler: Callable[[], int] = process_rss_bytes,
    ) -> None:
        self.time_limit_seconds = config.time_limit_seconds
        self.memory_limit_bytes = config.memory_limit_bytes
        self._clock = clock
        self._memory_sampler = memory_sampler
        self._started = clock()

    def start(self) -> None:
        self._started = self._clock()

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._started

    def time_exceeded(self) -> bool:
        return self.elapsed_seconds >= self.time_limit_seconds

    def memory_exceeded(self) -> bool:
        used = self._memory_sampler()
        if used >= self.memory_limit_bytes:
            LOGGER.info(
                "Memory budget reached: %d of %d bytes",
                used,
                self.memory_limit_bytes,
            )
            return True
        return False

    def exceeded(self) -> bool:
        if self.time_exceeded():
            LOGGER.info("Time budget of %.1fs reached", self.time_limit_seconds)
            return True
        return self.memory_exceeded()


__all__ = ["ResourceMonitor", "process_rss_bytes"]
