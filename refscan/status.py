"""HTTP status checks with the HEAD/GET escalation ladder."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable
from urllib.parse import urljoin

import requests

from .config import ScanConfig
from .constants import STATUS_NO_RESPONSE
from .types import StatusResult, format_date, utc_now


LOGGER = logging.getLogger(__name__)


class _Attempts:
    """Counts requests for one check and enforces the attempt cap."""

    __slots__ = ("limit", "used")

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0

    @property
    def left(self) -> bool:
        return self.used < self.limit


class StatusChecker:
    """Issue HEAD/GET requests and return the first status code seen.

    Ladder for one URL, never exceeding `max_status_attempts` requests:

    1. HEAD, redirects disabled.
    2. On 429, sleep for the rate-limit backoff and HEAD again.
    3. If HEAD gave no status, 206, or anything outside 200-399, GET.
    4. If that GET is still outside 200-399, GET once more.

    Network failures never raise; they end as status 0 with `error` set.
    """

    def __init__(
        self,
        config: ScanConfig,
        *,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self._session_factory = session_factory
        self._sleep = sleep
        self._clock = clock
        self._thread_local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()

    @property
    def user_agent(self) -> str:
        return f"{self.config.user_agent} - {self.config.current_site.url}"

    def check(self, absolute_url: str) -> StatusResult:
        """Check one canonical URL (fragment already stripped)."""

        attempts = _Attempts(self.config.max_status_attempts)

        if self.config.request_pause_seconds > 0:
            self._sleep(self.config.request_pause_seconds)

        status, location, error = self._request("HEAD", absolute_url, attempts)

        if status == 429 and attempts.left:
            LOGGER.warning(
                "Rate limited by %s; pausing %.1fs before retrying",
                absolute_url,
                self.config.rate_limit_backoff_seconds,
            )
            self._sleep(self.config.rate_limit_backoff_seconds)
            status, location, error = self._request("HEAD", absolute_url, attempts)

        if (status is None or status == 206 or not _in_range(status)) and attempts.left:
            LOGGER.debug("HEAD gave %s for %s; retrying with GET", status, absolute_url)
            status, location, error = self._request("GET", absolute_url, attempts)

            if (status is None or not _in_range(status)) and attempts.left:
                status, location, error = self._request("GET", absolute_url, attempts)

        final_status = STATUS_NO_RESPONSE if status is None else status
        result = StatusResult(
            url=absolute_url,
            status_code=final_status,
            redirect_target=location if 300 <= final_status < 400 else "",
            checked_at=format_date(self._clock()),
            attempts=attempts.used,
            error=error,
        )
        LOGGER.debug(
            "Status %s for %s after %d attempt(s)",
            result.status_code,
            absolute_url,
            result.attempts,
        )
        return result

    def close(self) -> None:
        with self._sessions_lock:
            sessions = list(self._sessions)
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __enter__(self) -> "StatusChecker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _request(
        self,
        method: str,
        url: str,
        attempts: _Attempts,
    ) -> tuple[int | None, str, str | None]:
        attempts.used += 1
        session = self._thread_local_session()
        # Cookies from one origin must not leak into the next check.
        session.cookies.clear()

        try:
            response = session.request(
                method,
                url,
                headers={"User-Agent": self.user_agent},
                timeout=self.config.http_timeout_seconds,
                allow_redirects=False,
                stream=method == "GET",
            )
        except requests.RequestException as exc:
            LOGGER.debug("%s %s failed: %s", method, url, exc)
            return None, "", f"{exc.__class__.__name__}: {exc}"

        try:
            location = response.headers.get("Location") or ""
            if location:
                location = urljoin(url, location)
            return response.status_code, location, None
        finally:
            response.close()

    def _thread_local_session(self) -> requests.Session:
        session = getattr(self._thread_local, "session", None)
        if session is None:
            session = self._session_factory()
            self._thread_local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session


def _in_range(status: int) -> bool:
    return 200 <= status <= 399


__all__ = ["StatusChecker"]
