"""Shared fixtures and fakes for refscan tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

import pytest
import requests

from refscan.config import ScanConfig
from refscan.repository import InMemoryRepository
from refscan.storage import OptionStore, ReferenceIndex
from refscan.types import Entity, EntityKind, MenuItem, StatusResult, format_date


SITE_URL = "https://example.com"


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeResponse:
    def __init__(self, status_code: int, headers: dict[str, str] | None = None) -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Replays queued responses; an exception instance in the queue is raised.

    The last queued item repeats once the queue runs out.
    """

    def __init__(self, responses: Iterable[Any]) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.cookies = requests.cookies.RequestsCookieJar()
        self.closed = False

    @property
    def methods(self) -> list[str]:
        return [method for method, _, _ in self.calls]

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, tuple):
            status, location = item
            return FakeResponse(status, {"Location": location})
        return FakeResponse(item)

    def close(self) -> None:
        self.closed = True


class StubChecker:
    """Stands in for `StatusChecker`: fixed status per URL, default 200."""

    def __init__(
        self,
        statuses: dict[str, int | tuple[int, str]] | None = None,
        *,
        clock: FakeClock | None = None,
    ) -> None:
        self.statuses = dict(statuses or {})
        self.clock = clock or FakeClock()
        self.calls: list[str] = []

    def check(self, absolute_url: str) -> StatusResult:
        self.calls.append(absolute_url)
        status = self.statuses.get(absolute_url, 200)
        redirect = ""
        if isinstance(status, tuple):
            status, redirect = status
        return StatusResult(
            url=absolute_url,
            status_code=status,
            redirect_target=redirect,
            checked_at=format_date(self.clock()),
            attempts=1,
        )

    def close(self) -> None:
        pass


def make_config(tmp_path: Path, **overrides: Any) -> ScanConfig:
    payload: dict[str, Any] = {
        "sites": [{"site_id": 1, "url": SITE_URL}],
        "data_dir": str(tmp_path / "data"),
        "request_pause_seconds": 0,
        "rate_limit_backoff_seconds": 0,
    }
    payload.update(overrides)
    return ScanConfig.from_dict(payload)


def make_post(
    post_id: int,
    content: str = "",
    *,
    subtype: str = "post",
    permalink: str | None = None,
    **fields: Any,
) -> Entity:
    return Entity(
        kind=EntityKind.POST,
        id=post_id,
        subtype=subtype,
        title=f"Post {post_id}",
        permalink=permalink if permalink is not None else f"{SITE_URL}/post-{post_id}/",
        content=content,
        **fields,
    )


def make_term(term_id: int, description: str = "", *, taxonomy: str = "category") -> Entity:
    return Entity(
        kind=EntityKind.TERM,
        id=term_id,
        subtype=taxonomy,
        title=f"Term {term_id}",
        permalink=f"{SITE_URL}/{taxonomy}/term-{term_id}/",
        content=description,
    )


def make_menu(menu_id: int, items: Iterable[MenuItem]) -> Entity:
    return Entity(kind=EntityKind.MENU, id=menu_id, subtype="nav_menu", menu_items=list(items))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture()
def repository():
    return InMemoryRepository()


@pytest.fixture()
def index(tmp_path):
    idx = ReferenceIndex(tmp_path / "refs.sqlite3")
    yield idx
    idx.close()


@pytest.fixture()
def options(tmp_path):
    return OptionStore(tmp_path / "options.json")
