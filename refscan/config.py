"""Typed scanner configuration with JSON/YAML load/save helpers."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit

import yaml  # type: ignore

from .constants import (
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_CHECK_STATUS_CODES,
    DEFAULT_CONTINUATION_DELAY_SECONDS,
    DEFAULT_DATA_DIR,
    DEFAULT_GROUP_SIZES,
    DEFAULT_HEALTH_CHECK_SECONDS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_IGNORED_BLOCKS,
    DEFAULT_IGNORED_META_KEYS,
    DEFAULT_LOCK_TTL_SECONDS,
    DEFAULT_MAINTENANCE_DELAY_SECONDS,
    DEFAULT_MAX_STATUS_ATTEMPTS,
    DEFAULT_MEMORY_CEILING,
    DEFAULT_MEMORY_FRACTION,
    DEFAULT_POST_STATUSES,
    DEFAULT_POST_TYPES,
    DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
    DEFAULT_REDIRECTS_ENABLED,
    DEFAULT_REFRESH_DAY_OF_MONTH,
    DEFAULT_REFRESH_DAY_OF_WEEK,
    DEFAULT_REFRESH_FREQUENCY,
    DEFAULT_REFRESH_TIME_OF_DAY,
    DEFAULT_REQUEST_PAUSE_SECONDS,
    DEFAULT_RESUME_DELAY_SECONDS,
    DEFAULT_SCAN_MENUS,
    DEFAULT_SCAN_META,
    DEFAULT_SCAN_USERS,
    DEFAULT_SITE_ID,
    DEFAULT_TAXONOMIES,
    DEFAULT_TIME_LIMIT_SECONDS,
    DEFAULT_USER_AGENT,
    JSON_INDENT,
    QUEUE_MAX_GROUP_SIZE,
    SUPPORTED_CONFIG_SUFFIXES,
    UNLIMITED_MEMORY_CEILING,
)
from .types import JSONDict, QueueCategory


REFRESH_FREQUENCIES = ("off", "weekly", "bi-weekly", "monthly")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)b?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}
_TIME_OF_DAY_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_memory_size(value: str | int | None) -> int:
    """Convert `256M` style sizes to bytes.

    `-1`, `0`, empty and None mean "unlimited" and map to 16000M.
    """

    if value is None or value == "":
        value = UNLIMITED_MEMORY_CEILING
    if isinstance(value, int):
        if value <= 0:
            return parse_memory_size(UNLIMITED_MEMORY_CEILING)
        return value
    text = str(value).strip()
    if text in {"-1", "0"}:
        text = UNLIMITED_MEMORY_CEILING
    match = _MEMORY_RE.match(text)
    if match is None:
        raise ValueError(f"Invalid memory size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid int for '{key}': {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid int for '{key}': {value!r}") from exc


def _as_float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid float for '{key}': {value!r}") from exc


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"Invalid bool for '{key}': {value!r}")


def _as_str_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ValueError(f"Invalid list for '{key}': {value!r}")


@dataclass(frozen=True, slots=True)
class SiteConfig:
    """One site in a (possibly multi-site) deployment."""

    site_id: int
    url: str
    aliases: tuple[str, ...] = ()
    shared_media: bool = False

    @property
    def scheme(self) -> str:
        return (urlsplit(self.url).scheme or "https").lower()

    @property
    def hosts(self) -> tuple[str, ...]:
        """Every host that counts as this site, lowercased and without `www.`."""

        hosts: list[str] = []
        for raw in (self.url, *self.aliases):
            parsed = urlsplit(raw if "://" in raw else f"//{raw}")
            host = (parsed.hostname or "").lower()
            if host.startswith("www."):
                host = host[4:]
            if host and host not in hosts:
                hosts.append(host)
        return tuple(hosts)

    @property
    def base_path(self) -> str:
        return urlsplit(self.url).path.rstrip("/")

    def to_json(self) -> JSONDict:
        return {
            "site_id": self.site_id,
            "url": self.url,
            "aliases": list(self.aliases),
            "shared_media": self.shared_media,
        }


def _coerce_site(value: Any) -> SiteConfig:
    if isinstance(value, SiteConfig):
        return value
    if isinstance(value, str):
        return SiteConfig(site_id=DEFAULT_SITE_ID, url=value.rstrip("/"))
    if isinstance(value, Mapping):
        url = str(value.get("url") or "").strip().rstrip("/")
        if not url:
            raise ValueError(f"Site config missing 'url': {value!r}")
        return SiteConfig(
            site_id=_as_int(value.get("site_id", DEFAULT_SITE_ID), "site_id"),
            url=url,
            aliases=tuple(_as_str_list(value.get("aliases"), "aliases")),
            shared_media=_as_bool(value.get("shared_media", False), "shared_media"),
        )
    raise TypeError(f"Unsupported site config value: {type(value)!r}")


@dataclass(frozen=True, slots=True)
class StatusRefreshConfig:
    """When the periodic status-code refresh runs."""

    frequency: str = DEFAULT_REFRESH_FREQUENCY
    day_of_week: str = DEFAULT_REFRESH_DAY_OF_WEEK
    day_of_month: int = DEFAULT_REFRESH_DAY_OF_MONTH
    time_of_day: str = DEFAULT_REFRESH_TIME_OF_DAY

    def __post_init__(self) -> None:
        if self.frequency not in REFRESH_FREQUENCIES:
            raise ValueError(f"frequency must be one of {REFRESH_FREQUENCIES}")
        if self.day_of_week not in WEEKDAYS:
            raise ValueError(f"day_of_week must be one of {WEEKDAYS}")
        if not 1 <= self.day_of_month <= 31:
            raise ValueError("day_of_month must be between 1 and 31")
        if _TIME_OF_DAY_RE.match(self.time_of_day) is None:
            raise ValueError(f"time_of_day must be HH:MM, got {self.time_of_day!r}")

    @property
    def enabled(self) -> bool:
        return self.frequency != "off"

    @property
    def hour_minute(self) -> tuple[int, int]:
        hour, minute = self.time_of_day.split(":")
        return int(hour), int(minute)

    def to_json(self) -> JSONDict:
        return {
            "frequency": self.frequency,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "time_of_day": self.time_of_day,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "StatusRefreshConfig":
        payload = payload or {}
        return cls(
            frequency=str(payload.get("frequency", DEFAULT_REFRESH_FREQUENCY)).strip().lower(),
            day_of_week=str(payload.get("day_of_week", DEFAULT_REFRESH_DAY_OF_WEEK)).strip().lower(),
            day_of_month=_as_int(
                payload.get("day_of_month", DEFAULT_REFRESH_DAY_OF_MONTH),
                "day_of_month",
            ),
            time_of_day=str(payload.get("time_of_day", DEFAULT_REFRESH_TIME_OF_DAY)).strip(),
        )


@dataclass(slots=True)
class ScanConfig:
    """Top-level scanner configuration used by every service."""

    sites: list[SiteConfig]
    current_site_id: int = DEFAULT_SITE_ID
    data_dir: str = DEFAULT_DATA_DIR

    post_types: list[str] = field(default_factory=lambda: list(DEFAULT_POST_TYPES))
    post_statuses: list[str] = field(default_factory=lambda: list(DEFAULT_POST_STATUSES))
    taxonomies: list[str] = field(default_factory=lambda: list(DEFAULT_TAXONOMIES))
    scan_users: bool = DEFAULT_SCAN_USERS
    scan_menus: bool = DEFAULT_SCAN_MENUS
    scan_meta: bool = DEFAULT_SCAN_META
    ignored_meta_keys: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_META_KEYS))
    ignored_blocks: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_BLOCKS))
    check_status_codes: bool = DEFAULT_CHECK_STATUS_CODES
    redirects_enabled: bool = DEFAULT_REDIRECTS_ENABLED

    time_limit_seconds: float = DEFAULT_TIME_LIMIT_SECONDS
    memory_ceiling: str = DEFAULT_MEMORY_CEILING
    memory_fraction: float = DEFAULT_MEMORY_FRACTION
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    health_check_seconds: int = DEFAULT_HEALTH_CHECK_SECONDS
    continuation_delay_seconds: float = DEFAULT_CONTINUATION_DELAY_SECONDS
    resume_delay_seconds: float = DEFAULT_RESUME_DELAY_SECONDS
    group_sizes: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_GROUP_SIZES))

    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    rate_limit_backoff_seconds: float = DEFAULT_RATE_LIMIT_BACKOFF_SECONDS
    request_pause_seconds: float = DEFAULT_REQUEST_PAUSE_SECONDS
    max_status_attempts: int = DEFAULT_MAX_STATUS_ATTEMPTS
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    maintenance_delay_seconds: float = DEFAULT_MAINTENANCE_DELAY_SECONDS
    user_agent: str = DEFAULT_USER_AGENT

    status_refresh: StatusRefreshConfig = field(default_factory=StatusRefreshConfig)

    _site_index: dict[int, SiteConfig] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.sites = [_coerce_site(site) for site in self.sites]
        if not self.sites:
            raise ValueError("ScanConfig requires at least one site")

        self._site_index = {site.site_id: site for site in self.sites}
        if len(self._site_index) != len(self.sites):
            raise ValueError("site_id values must be unique")
        if self.current_site_id not in self._site_index:
            raise ValueError(f"current_site_id {self.current_site_id} is not a configured site")

        if self.time_limit_seconds <= 0:
            raise ValueError("time_limit_seconds must be > 0")
        if not 0 < self.memory_fraction <= 1:
            raise ValueError("memory_fraction must be in (0, 1]")
        parse_memory_size(self.memory_ceiling)
        if self.lock_ttl_seconds <= self.time_limit_seconds:
            raise ValueError("lock_ttl_seconds must exceed time_limit_seconds")
        if self.health_check_seconds <= 0:
            raise ValueError("health_check_seconds must be > 0")
        if self.continuation_delay_seconds < 0:
            raise ValueError("continuation_delay_seconds must be >= 0")
        if self.resume_delay_seconds < 0:
            raise ValueError("resume_delay_seconds must be >= 0")
        if self.http_timeout_seconds <= 0:
            raise ValueError("http_timeout_seconds must be > 0")
        if self.rate_limit_backoff_seconds < 0:
            raise ValueError("rate_limit_backoff_seconds must be >= 0")
        if self.request_pause_seconds < 0:
            raise ValueError("request_pause_seconds must be >= 0")
        if self.max_status_attempts < 1:
            raise ValueError("max_status_attempts must be >= 1")
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be > 0")

        sizes = dict(DEFAULT_GROUP_SIZES)
        for key, value in self.group_sizes.items():
            category = QueueCategory(key).value
            size = _as_int(value, f"group_sizes.{key}")
            if not 1 <= size <= QUEUE_MAX_GROUP_SIZE:
                raise ValueError(f"group_sizes.{key} must be between 1 and {QUEUE_MAX_GROUP_SIZE}")
            sizes[category] = size
        self.group_sizes = sizes

    @property
    def current_site(self) -> SiteConfig:
        return self._site_index[self.current_site_id]

    @property
    def memory_limit_bytes(self) -> int:
        """Memory budget for one batch: a fraction of the configured ceiling."""

        return int(parse_memory_size(self.memory_ceiling) * self.memory_fraction)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    def get_site(self, site_id: int | None) -> SiteConfig | None:
        if site_id is None:
            return None
        return self._site_index.get(site_id)

    def group_size_for(self, category: QueueCategory) -> int:
        return self.group_sizes.get(category.value, 1)

    def extraction_signature(self) -> JSONDict:
        """Settings that change which references a full scan produces."""

        return {
            "post_types": sorted(self.post_types),
            "post_statuses": sorted(self.post_statuses),
            "taxonomies": sorted(self.taxonomies),
            "scan_users": self.scan_users,
            "scan_menus": self.scan_menus,
            "scan_meta": self.scan_meta,
            "ignored_meta_keys": sorted(self.ignored_meta_keys),
            "ignored_blocks": sorted(self.ignored_blocks),
        }

    def to_dict(self) -> JSONDict:
        return {
            "sites": [site.to_json() for site in self.sites],
            "current_site_id": self.current_site_id,
            "data_dir": self.data_dir,
            "post_types": self.post_types,
            "post_statuses": self.post_statuses,
            "taxonomies": self.taxonomies,
            "scan_users": self.scan_users,
            "scan_menus": self.scan_menus,
            "scan_meta": self.scan_meta,
            "ignored_meta_keys": self.ignored_meta_keys,
            "ignored_blocks": self.ignored_blocks,
            "check_status_codes": self.check_status_codes,
            "redirects_enabled": self.redirects_enabled,
            "time_limit_seconds": self.time_limit_seconds,
            "memory_ceiling": self.memory_ceiling,
            "memory_fraction": self.memory_fraction,
            "lock_ttl_seconds": self.lock_ttl_seconds,
            "health_check_seconds": self.health_check_seconds,
            "continuation_delay_seconds": self.continuation_delay_seconds,
            "resume_delay_seconds": self.resume_delay_seconds,
            "group_sizes": dict(self.group_sizes),
            "http_timeout_seconds": self.http_timeout_seconds,
            "rate_limit_backoff_seconds": self.rate_limit_backoff_seconds,
            "request_pause_seconds": self.request_pause_seconds,
            "max_status_attempts": self.max_status_attempts,
            "cache_ttl_seconds": self.cache_ttl_seconds,
            "maintenance_delay_seconds": self.maintenance_delay_seconds,
            "user_agent": self.user_agent,
            "status_refresh": self.status_refresh.to_json(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ScanConfig":
        """Build config from a parsed dictionary."""

        if "sites" not in payload:
            raise ValueError("Config missing required key: 'sites'")

        sites = [_coerce_site(item) for item in list(payload.get("sites") or [])]
        first_site_id = sites[0].site_id if sites else DEFAULT_SITE_ID

        return cls(
            sites=sites,
            current_site_id=_as_int(payload.get("current_site_id", first_site_id), "current_site_id"),
            data_dir=str(payload.get("data_dir", DEFAULT_DATA_DIR)),
            post_types=_as_str_list(payload.get("post_types", DEFAULT_POST_TYPES), "post_types"),
            post_statuses=_as_str_list(
                payload.get("post_statuses", DEFAULT_POST_STATUSES),
                "post_statuses",
            ),
            taxonomies=_as_str_list(payload.get("taxonomies", DEFAULT_TAXONOMIES), "taxonomies"),
            scan_users=_as_bool(payload.get("scan_users", DEFAULT_SCAN_USERS), "scan_users"),
            scan_menus=_as_bool(payload.get("scan_menus", DEFAULT_SCAN_MENUS), "scan_menus"),
            scan_meta=_as_bool(payload.get("scan_meta", DEFAULT_SCAN_META), "scan_meta"),
            ignored_meta_keys=_as_str_list(
                payload.get("ignored_meta_keys", DEFAULT_IGNORED_META_KEYS),
                "ignored_meta_keys",
            ),
            ignored_blocks=_as_str_list(
                payload.get("ignored_blocks", DEFAULT_IGNORED_BLOCKS),
                "ignored_blocks",
            ),
            check_status_codes=_as_bool(
                payload.get("check_status_codes", DEFAULT_CHECK_STATUS_CODES),
                "check_status_codes",
            ),
            redirects_enabled=_as_bool(
                payload.get("redirects_enabled", DEFAULT_REDIRECTS_ENABLED),
                "redirects_enabled",
            ),
            time_limit_seconds=_as_float(
                payload.get("time_limit_seconds", DEFAULT_TIME_LIMIT_SECONDS),
                "time_limit_seconds",
            ),
            memory_ceiling=str(payload.get("memory_ceiling", DEFAULT_MEMORY_CEILING)),
            memory_fraction=_as_float(
                payload.get("memory_fraction", DEFAULT_MEMORY_FRACTION),
                "memory_fraction",
            ),
            lock_ttl_seconds=_as_int(
                payload.get("lock_ttl_seconds", DEFAULT_LOCK_TTL_SECONDS),
                "lock_ttl_seconds",
            ),
            health_check_seconds=_as_int(
                payload.get("health_check_seconds", DEFAULT_HEALTH_CHECK_SECONDS),
                "health_check_seconds",
            ),
            continuation_delay_seconds=_as_float(
                payload.get("continuation_delay_seconds", DEFAULT_CONTINUATION_DELAY_SECONDS),
                "continuation_delay_seconds",
            ),
            resume_delay_seconds=_as_float(
                payload.get("resume_delay_seconds", DEFAULT_RESUME_DELAY_SECONDS),
                "resume_delay_seconds",
            ),
            group_sizes={
                str(key): _as_int(value, f"group_sizes.{key}")
                for key, value in dict(payload.get("group_sizes") or {}).items()
            },
            http_timeout_seconds=_as_float(
                payload.get("http_timeout_seconds", DEFAULT_HTTP_TIMEOUT_SECONDS),
                "http_timeout_seconds",
            ),
            rate_limit_backoff_seconds=_as_float(
                payload.get("rate_limit_backoff_seconds", DEFAULT_RATE_LIMIT_BACKOFF_SECONDS),
                "rate_limit_backoff_seconds",
            ),
            request_pause_seconds=_as_float(
                payload.get("request_pause_seconds", DEFAULT_REQUEST_PAUSE_SECONDS),
                "request_pause_seconds",
            ),
            max_status_attempts=_as_int(
                payload.get("max_status_attempts", DEFAULT_MAX_STATUS_ATTEMPTS),
                "max_status_attempts",
            ),
            cache_ttl_seconds=_as_int(
                payload.get("cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS),
                "cache_ttl_seconds",
            ),
            maintenance_delay_seconds=_as_float(
                payload.get("maintenance_delay_seconds", DEFAULT_MAINTENANCE_DELAY_SECONDS),
                "maintenance_delay_seconds",
            ),
            user_agent=str(payload.get("user_agent", DEFAULT_USER_AGENT)),
            status_refresh=StatusRefreshConfig.from_dict(payload.get("status_refresh")),
        )


def _load_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML config at {path} must be a mapping at top level")
    return data


def load_mapping(path: str | Path) -> dict[str, Any]:
    """Read a JSON/YAML file that must contain a mapping."""

    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if suffix not in SUPPORTED_CONFIG_SUFFIXES:
        raise ValueError(
            f"Unsupported config suffix '{suffix}'. Supported: {SUPPORTED_CONFIG_SUFFIXES}"
        )

    if suffix == ".json":
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    else:
        payload = _load_yaml(file_path)

    if not isinstance(payload, dict):
        raise ValueError(f"Config at {file_path} must be a mapping")
    return payload


def load_config(path: str | Path) -> ScanConfig:
    """Load ScanConfig from JSON/YAML path."""

    return ScanConfig.from_dict(load_mapping(path))


def save_config(config: ScanConfig, path: str | Path) -> None:
    """Save ScanConfig as JSON or YAML based on file extension."""

    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    suffix = out_path.suffix.lower()
    payload = config.to_dict()

    if suffix == ".json":
        out_path.write_text(
            json.dumps(payload, indent=JSON_INDENT, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return

    if suffix in {".yaml", ".yml"}:
        out_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        return

    raise ValueError(
        f"Unsupported config suffix '{suffix}'. Supported: {SUPPORTED_CONFIG_SUFFIXES}"
    )


__all__ = [
    "REFRESH_FREQUENCIES",
    "ScanConfig",
    "SiteConfig",
    "StatusRefreshConfig",
    "WEEKDAYS",
    "load_config",
    "load_mapping",
    "parse_memory_size",
    "save_config",
]
