"""Core type definitions shared by the scanner modules.

This module is intentionally dependency-light so other modules can import
shared records without introducing cycles.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .constants import DATE_FORMAT, EPOCH_DATE, STATUS_NOT_APPLICABLE


JSONPrimitive = str | int | float | bool | None
JSONValue = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]
JSONDict = dict[str, JSONValue]


class ScanType(str, Enum):
    """Kinds of scan runs the orchestrator can start."""

    FULL_SCAN = "full-scan"
    CHECK_STATUS = "check-status"
    MAINTENANCE_CHECK_STATUS = "maintenance-check-status"


class QueueCategory(str, Enum):
    """Queue files, declared in batch processing order."""

    MENUS = "menus"
    USERS = "users"
    POSTS = "posts"
    TERMS = "terms"
    STATUSES = "statuses"


PROCESSING_ORDER: tuple[QueueCategory, ...] = tuple(QueueCategory)

CATEGORY_LABELS: dict[QueueCategory, str] = {
    QueueCategory.MENUS: "Menus",
    QueueCategory.USERS: "Users",
    QueueCategory.POSTS: "Posts",
    QueueCategory.TERMS: "Terms",
    QueueCategory.STATUSES: "Status Codes",
}


class EntityKind(str, Enum):
    """Scannable entity kinds."""

    POST = "post"
    TERM = "term"
    USER = "user"
    MENU = "menu"


class ReferenceKind(str, Enum):
    LINK = "link"
    IMAGE = "image"
    IFRAME = "iframe"
    BLOCK = "block"
    ID = "id"


class FromWhere(str, Enum):
    """Where inside the source entity a reference was discovered."""

    CONTENT = "content"
    EXCERPT = "excerpt"
    POST_META = "post meta"
    FEATURED_IMAGE = "featured image"
    TERM_DESCRIPTION = "term description"
    TERM_META = "term meta"
    USER_META = "user meta"
    MENU = "menu"
    REDIRECT = "redirect"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_date(value: datetime) -> str:
    """Format a datetime as the `YYYY-MM-DD HH:MM:SS` UTC string used in storage."""

    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(DATE_FORMAT)


def parse_date(value: str | None) -> datetime | None:
    """Parse a stored date string; returns None for empty or malformed values."""

    if not value:
        return None
    try:
        parsed = datetime.strptime(value.strip(), DATE_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def utc_now_str() -> str:
    return format_date(utc_now())


@dataclass(frozen=True, slots=True)
class MenuItem:
    """One navigation menu entry."""

    url: str
    title: str = ""
    object_id: int | None = None
    object_type: str | None = None


@dataclass(slots=True)
class Entity:
    """A scannable content unit read from the host repository.

    `subtype` holds the post type for posts and the taxonomy for terms.
    """

    kind: EntityKind
    id: int
    site_id: int = 1
    subtype: str = ""
    title: str = ""
    permalink: str = ""
    content: str = ""
    excerpt: str = ""
    status: str = "publish"
    is_revision: bool = False
    is_public: bool = True
    featured_image_id: int | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    menu_items: list[MenuItem] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.id}"

    def to_json(self) -> JSONDict:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "site_id": self.site_id,
            "subtype": self.subtype,
            "title": self.title,
            "permalink": self.permalink,
            "content": self.content,
            "excerpt": self.excerpt,
            "status": self.status,
            "is_revision": self.is_revision,
            "is_public": self.is_public,
            "featured_image_id": self.featured_image_id,
            "meta": dict(self.meta),
            "menu_items": [asdict(item) for item in self.menu_items],
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Entity":
        items = [
            MenuItem(
                url=str(item.get("url") or ""),
                title=str(item.get("title") or ""),
                object_id=item.get("object_id"),
                object_type=item.get("object_type"),
            )
            for item in payload.get("menu_items") or []
        ]
        featured = payload.get("featured_image_id")
        return cls(
            kind=EntityKind(payload["kind"]),
            id=int(payload["id"]),
            site_id=int(payload.get("site_id", 1)),
            subtype=str(payload.get("subtype") or ""),
            title=str(payload.get("title") or ""),
            permalink=str(payload.get("permalink") or ""),
            content=str(payload.get("content") or ""),
            excerpt=str(payload.get("excerpt") or ""),
            status=str(payload.get("status") or "publish"),
            is_revision=bool(payload.get("is_revision", False)),
            is_public=bool(payload.get("is_public", True)),
            featured_image_id=None if featured in (None, "", 0) else int(featured),
            meta=dict(payload.get("meta") or {}),
            menu_items=items,
        )


@dataclass(slots=True)
class Reference:
    """One discovered from -> to relationship.

    A reference always has a `from` side. Structural block records may have
    neither a target URL nor a target id.
    """

    from_id: int
    from_kind: EntityKind
    from_site_id: int
    from_where: str
    from_key: str = ""
    from_subtype: str = ""

    to_url: str = ""
    to_url_full: str = ""
    to_url_absolute: str = ""
    to_url_is_relative: bool = False
    to_url_is_external: bool = False
    to_post_id: int | None = None
    to_post_type: str = ""
    to_kind: ReferenceKind = ReferenceKind.LINK
    to_site_id: int | None = None
    to_anchor_text: str = ""
    to_block_name: str = ""

    to_url_status: int = STATUS_NOT_APPLICABLE
    to_url_status_date: str = EPOCH_DATE
    to_url_redirect: str = ""

    redirection_id: int | None = None
    redirection_site_id: int | None = None
    redirection_url: str = ""

    @property
    def is_local(self) -> bool:
        return bool(self.to_url_full) and not self.to_url_is_external

    def to_json(self) -> JSONDict:
        payload: JSONDict = {}
        for item in fields(self):
            value = getattr(self, item.name)
            payload[item.name] = value.value if isinstance(value, Enum) else value
        return payload

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Reference":
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values["from_kind"] = EntityKind(values["from_kind"])
        values["to_kind"] = ReferenceKind(values.get("to_kind") or ReferenceKind.LINK.value)
        for flag in ("to_url_is_relative", "to_url_is_external"):
            if flag in values:
                values[flag] = bool(values[flag])
        return cls(**values)


@dataclass(slots=True)
class StatusResult:
    """Outcome of one status check, also the status-cache entry shape."""

    url: str
    status_code: int
    redirect_target: str = ""
    checked_at: str = field(default_factory=utc_now_str)
    attempts: int = 0
    error: str | None = None

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400

    @property
    def is_ok(self) -> bool:
        return 200 <= self.status_code < 300

    def age_seconds(self, now: datetime) -> float | None:
        checked = parse_date(self.checked_at)
        if checked is None:
            return None
        return (now - checked).total_seconds()

    def is_fresh(self, now: datetime, ttl_seconds: float) -> bool:
        age = self.age_seconds(now)
        return age is not None and 0 <= age < ttl_seconds

    def to_cache_json(self) -> JSONDict:
        return {
            "status_code": self.status_code,
            "redirect_target": self.redirect_target,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_cache_json(cls, url: str, payload: Mapping[str, Any]) -> "StatusResult":
        try:
            status = int(payload.get("status_code", 0))
        except (TypeError, ValueError):
            status = 0
        return cls(
            url=url,
            status_code=status,
            redirect_target=str(payload.get("redirect_target") or ""),
            checked_at=str(payload.get("checked_at") or EPOCH_DATE),
        )


@dataclass(frozen=True, slots=True)
class RedirectRule:
    """A record from the external redirect-rule store."""

    id: int
    url: str
    action_data: str = ""
    regex: bool = False
    enabled: bool = True
    position: int = 0
    site_id: int = 1
    action_code: int = 301

    @property
    def has_placeholders(self) -> bool:
        return "$" in self.action_data


@dataclass(frozen=True, slots=True)
class Progress:
    """Progress snapshot returned to callers."""

    done: int
    total: int
    remaining: int
    percent: float
    start_date: str | None
    end_date: str | None
    currently: str
    type: str | None
    is_running: bool

    def to_json(self) -> JSONDict:
        return {
            "done": self.done,
            "total": self.total,
            "remaining": self.remaining,
            "percent": self.percent,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "currently": self.currently,
            "type": self.type,
            "is_running": self.is_running,
        }


__all__ = [
    "CATEGORY_LABELS",
    "Entity",
    "EntityKind",
    "FromWhere",
    "JSONDict",
    "JSONPrimitive",
    "JSONValue",
    "MenuItem",
    "PROCESSING_ORDER",
    "Progress",
    "QueueCategory",
    "RedirectRule",
    "Reference",
    "ReferenceKind",
    "ScanType",
    "StatusResult",
    "format_date",
    "parse_date",
    "utc_now",
    "utc_now_str",
]
