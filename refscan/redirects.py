"""Redirect-rule lookups against an external redirect store.

The scanner never owns redirect rules. It only asks which enabled rules
mention a URL, either as the trigger (`url` column) or as the destination
(`action_data` column), and turns those rules into synthetic references.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Iterable, Protocol

from .config import ScanConfig, load_mapping
from .errors import RedirectStoreUnavailable
from .types import Entity, FromWhere, RedirectRule, Reference, ReferenceKind
from .url import NormalizedURL, normalize, url_variants


LOGGER = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\\?\$([1-9][0-9]*)")


class MatchingMode(str, Enum):
    """Which redirect-rule column is compared with the URL."""

    TRIGGER = "url"
    DESTINATION = "action_data"
    BOTH = "both"


class RedirectStore(Protocol):
    def rules(self) -> list[RedirectRule]: ...


class InMemoryRedirectStore:
    """List-backed store; `available=False` simulates an inactive redirect system."""

    def __init__(self, rules: Iterable[RedirectRule] = (), *, available: bool = True) -> None:
        self._rules = list(rules)
        self.available = available

    def add(self, rule: RedirectRule) -> None:
        self._rules.append(rule)

    def remove(self, rule_id: int, site_id: int) -> None:
        self._rules = [rule for rule in self._rules if (rule.id, rule.site_id) != (rule_id, site_id)]

    def rules(self) -> list[RedirectRule]:
        if not self.available:
            raise RedirectStoreUnavailable("Redirect store is not active")
        return list(self._rules)


class FileRedirectStore:
    """Rules read from a JSON/YAML file of the form `{"rules": [...]}`."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def rules(self) -> list[RedirectRule]:
        if not self.path.exists():
            raise RedirectStoreUnavailable(f"Redirect rules file not found: {self.path}")
        try:
            payload = load_mapping(self.path)
        except (OSError, ValueError) as exc:
            raise RedirectStoreUnavailable(f"Redirect rules file unreadable: {exc}") from exc

        rules: list[RedirectRule] = []
        for item in payload.get("rules") or []:
            try:
                rules.append(
                    RedirectRule(
                        id=int(item["id"]),
                        url=str(item.get("url") or ""),
                        action_data=str(item.get("action_data") or ""),
                        regex=bool(item.get("regex", False)),
                        enabled=bool(item.get("enabled", True)),
                        position=int(item.get("position", 0)),
                        site_id=int(item.get("site_id", 1)),
                        action_code=int(item.get("action_code", 301)),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed redirect rule %r: %s", item, exc)
        return rules


def destination_pattern(action_data: str) -> re.Pattern[str]:
    """Regex equivalent of a destination with `$N` placeholders turned into wildcards."""

    parts = _PLACEHOLDER_RE.split(action_data)
    # split() alternates literal text and captured group numbers.
    pattern = "".join(re.escape(part) if idx % 2 == 0 else ".*" for idx, part in enumerate(parts))
    return re.compile(pattern, re.IGNORECASE)


def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        LOGGER.debug("Skipping invalid redirect regex %r: %s", pattern, exc)
        return None


class RedirectCorrelator:
    """Find redirect rules that mention a canonical URL."""

    def __init__(self, config: ScanConfig, store: RedirectStore | None) -> None:
        self.config = config
        self.store = store

    @property
    def active(self) -> bool:
        return self.store is not None and self.config.redirects_enabled

    def rules(self) -> list[RedirectRule]:
        """Enabled rules in match order."""

        return self._enabled_rules()

    def _normalize(self, url: str) -> NormalizedURL:
        return normalize(url, sites=self.config.sites, current_site_id=self.config.current_site_id)

    def _enabled_rules(self) -> list[RedirectRule]:
        if not self.active:
            return []
        try:
            rules = self.store.rules()  # type: ignore[union-attr]
        except RedirectStoreUnavailable as exc:
            LOGGER.info("Redirect lookups skipped: %s", exc)
            return []
        return sorted((rule for rule in rules if rule.enabled), key=lambda rule: (rule.position, rule.id))

    def find_rules(
        self,
        canonical_url: str,
        matching_mode: MatchingMode | str = MatchingMode.DESTINATION,
        *,
        site_id: int | None = None,
        is_attachment: bool = False,
    ) -> list[RedirectRule]:
        """Rules whose trigger and/or destination match any spelling of the URL.

        Relative URLs and URLs outside the configured sites return `[]`, as
        does an unavailable store. Trigger matching only looks at rules of
        the site that owns the URL. Relative spellings are always generated but
        only match rules of the current site, or of a shared-media site when the
        URL is an attachment.
        """

        mode = MatchingMode(matching_mode)
        if not canonical_url or not canonical_url.lower().startswith("h"):
            return []

        normalized = self._normalize(canonical_url)
        if not normalized.is_local:
            return []

        rules = self._enabled_rules()
        if not rules:
            return []

        owner_site_id = normalized.site_id if site_id is None else site_id
        variants = url_variants(
            normalized,
            sites=self.config.sites,
            current_site_id=normalized.site_id,
        )
        full_variants = [item for item in variants if item.lower().startswith("h")]
        relative_variants = [item for item in variants if not item.lower().startswith("h")]

        modes = [MatchingMode.TRIGGER, MatchingMode.DESTINATION] if mode == MatchingMode.BOTH else [mode]
        found: dict[tuple[int, int], RedirectRule] = {}

        for site in self.config.sites:
            site_rules = [rule for rule in rules if rule.site_id == site.site_id]
            if not site_rules:
                continue

            keep_relative = site.site_id == self.config.current_site_id or (
                is_attachment and site.shared_media
            )
            candidates = full_variants + (relative_variants if keep_relative else [])
            if not candidates:
                continue

            for item_mode in modes:
                if item_mode == MatchingMode.TRIGGER and site.site_id != owner_site_id:
                    continue
                for rule in self._match(site_rules, candidates, item_mode):
                    found.setdefault((rule.site_id, rule.id), rule)

        matched = list(found.values())
        if matched:
            LOGGER.debug(
                "Found %d redirect rule(s) for %s (%s)",
                len(matched),
                canonical_url,
                mode.value,
            )
        return matched

    @staticmethod
    def _match(
        rules: list[RedirectRule],
        candidates: list[str],
        mode: MatchingMode,
    ) -> list[RedirectRule]:
        exact = set(candidates)
        matched: list[RedirectRule] = []

        for rule in rules:
            column = rule.url if mode == MatchingMode.TRIGGER else rule.action_data
            if column in exact:
                matched.append(rule)
                continue

            if mode == MatchingMode.TRIGGER:
                if not rule.regex:
                    continue
                pattern = _compile(rule.url)
                if pattern is not None and any(pattern.search(item) for item in candidates):
                    matched.append(rule)
            elif rule.has_placeholders:
                pattern = destination_pattern(rule.action_data)
                if any(pattern.fullmatch(item) for item in candidates):
                    matched.append(rule)

        return matched

    def resolve_destination(self, rule: RedirectRule, source_url: str) -> str | None:
        """Fill `$N` placeholders of a regex rule for one source URL.

        A leading `^` anchors at the site root, so both the relative path and
        the full URL are tried.
        """

        if not rule.has_placeholders:
            return rule.action_data
        if not rule.regex:
            return None
        pattern = _compile(rule.url)
        if pattern is None:
            return None

        normalized = self._normalize(source_url)
        for candidate in (normalized.relative_url, normalized.absolute_url):
            if not candidate:
                continue
            match = pattern.search(candidate)
            if match is None:
                continue
            template = _PLACEHOLDER_RE.sub(lambda m: f"\\g<{m.group(1)}>", rule.action_data)
            try:
                return match.expand(template)
            except (IndexError, re.error):
                return None
        return None

    def to_references(self, rules: Iterable[RedirectRule], entity: Entity) -> list[Reference]:
        """One synthetic `redirect` reference per rule.

        Destinations that still contain placeholders after resolution are
        skipped.
        """

        references: list[Reference] = []
        for rule in rules:
            destination = rule.action_data
            if rule.has_placeholders:
                destination = self.resolve_destination(rule, entity.permalink) or ""
                if not destination or "$" in destination:
                    continue
            references.append(
                Reference(
                    from_id=entity.id,
                    from_kind=entity.kind,
                    from_site_id=entity.site_id,
                    from_where=FromWhere.REDIRECT.value,
                    from_subtype=entity.subtype,
                    to_url=destination,
                    to_kind=ReferenceKind.LINK,
                    redirection_id=rule.id,
                    redirection_site_id=rule.site_id,
                    redirection_url=rule.url,
                )
            )
        return references


__all__ = [
    "FileRedirectStore",
    "InMemoryRedirectStore",
    "MatchingMode",
    "RedirectCorrelator",
    "RedirectStore",
    "destination_pattern",
]
