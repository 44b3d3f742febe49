"""Reference extraction for posts, terms, users and menus.

Extraction for one entity is atomic: the complete new reference set replaces
the previous one inside a single index transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from bs4 import BeautifulSoup

from .blocks import parse_blocks, walk_blocks
from .cache import StatusCache
from .config import ScanConfig
from .constants import EPOCH_DATE, STATUS_DEFERRED, STATUS_NOT_APPLICABLE
from .redirects import MatchingMode, RedirectCorrelator
from .repository import ContentRepository
from .stats import StatsCollector
from .storage import ReferenceIndex
from .types import Entity, EntityKind, FromWhere, Reference, ReferenceKind, StatusResult
from .url import normalize


LOGGER = logging.getLogger(__name__)

# (entity, meta key, meta value) -> replacement references, or None for the default walk.
MetaHandler = Callable[[Entity, str, Any], "list[Reference] | None"]

_MARKUP_TAGS = {
    "a": ("href", ReferenceKind.LINK),
    "img": ("src", ReferenceKind.IMAGE),
    "iframe": ("src", ReferenceKind.IFRAME),
}

_META_WHERE = {
    EntityKind.POST: FromWhere.POST_META,
    EntityKind.TERM: FromWhere.TERM_META,
    EntityKind.USER: FromWhere.USER_META,
}


class ReferenceExtractor:
    """Turn one entity into its outgoing references and store them."""

    def __init__(
        self,
        config: ScanConfig,
        repository: ContentRepository,
        index: ReferenceIndex,
        correlator: RedirectCorrelator | None = None,
        *,
        stats: StatsCollector | None = None,
        meta_handlers: dict[str, MetaHandler] | None = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.index = index
        self.correlator = correlator or RedirectCorrelator(config, None)
        self.stats = stats or StatsCollector()
        self.meta_handlers: dict[str, MetaHandler] = dict(meta_handlers or {})

    def scan(
        self,
        entity: Entity,
        *,
        cache: StatusCache | None = None,
        defer_status: bool = False,
    ) -> list[Reference]:
        """Extract references for `entity` and replace its stored set."""

        if entity.is_revision:
            LOGGER.debug("Skipping revision %s", entity.label)
            return []

        references = self.extract(entity, cache=cache, defer_status=defer_status)
        self.index.replace_outgoing(entity.kind, entity.id, entity.site_id, references)
        self.stats.record_entity(entity.kind, len(references))
        LOGGER.debug("Stored %d reference(s) for %s", len(references), entity.label)
        return references

    def extract(
        self,
        entity: Entity,
        *,
        cache: StatusCache | None = None,
        defer_status: bool = False,
    ) -> list[Reference]:
        """Build the reference list for one entity without touching the index."""

        if entity.is_revision:
            return []

        if entity.kind == EntityKind.POST:
            references = self._extract_post(entity)
        elif entity.kind == EntityKind.TERM:
            references = self._extract_term(entity)
        elif entity.kind == EntityKind.USER:
            references = self._meta_references(entity)
        else:
            references = self._extract_menu(entity)

        if entity.kind in {EntityKind.POST, EntityKind.TERM}:
            references.extend(self._redirect_references(entity))

        base_url = entity.permalink or self.config.current_site.url
        for ref in references:
            self._resolve(ref, base_url, cache=cache, defer_status=defer_status)
        return references

    def _extract_post(self, entity: Entity) -> list[Reference]:
        references = self.references_from_html(entity.content, entity, FromWhere.CONTENT)
        references.extend(self.references_from_html(entity.excerpt, entity, FromWhere.EXCERPT))
        references.extend(self._meta_references(entity))

        if entity.featured_image_id:
            references.append(
                self._new_reference(
                    entity,
                    FromWhere.FEATURED_IMAGE,
                    to_kind=ReferenceKind.IMAGE,
                    to_post_id=entity.featured_image_id,
                    to_post_type="attachment",
                    to_site_id=entity.site_id,
                )
            )
        return references

    def _extract_term(self, entity: Entity) -> list[Reference]:
        references = self.references_from_html(entity.content, entity, FromWhere.TERM_DESCRIPTION)
        references.extend(self._meta_references(entity))
        return references

    def _extract_menu(self, entity: Entity) -> list[Reference]:
        references: list[Reference] = []
        for item in entity.menu_items:
            ref = self._new_reference(
                entity,
                FromWhere.MENU,
                to_url=item.url,
                to_kind=ReferenceKind.LINK,
                to_anchor_text=item.title,
            )
            if item.object_id:
                ref.to_post_id = int(item.object_id)
                ref.to_post_type = item.object_type or ""
                ref.to_site_id = entity.site_id
            references.append(ref)
        return references

    def _meta_references(self, entity: Entity) -> list[Reference]:
        if not self.config.scan_meta or not entity.meta:
            return []

        where = _META_WHERE.get(entity.kind, FromWhere.POST_META)
        ignored = set(self.config.ignored_meta_keys)
        references: list[Reference] = []

        for key, value in entity.meta.items():
            if key in ignored:
                continue

            handler = self.meta_handlers.get(key)
            if handler is not None:
                custom = handler(entity, key, value)
                custom = [item for item in custom or [] if isinstance(item, Reference)]
                if custom:
                    references.extend(custom)
                    continue

            if isinstance(value, str) and value:
                references.extend(self.references_from_html(value, entity, where, from_key=key))
        return references

    def references_from_html(
        self,
        html: str,
        entity: Entity,
        from_where: FromWhere,
        *,
        from_key: str = "",
    ) -> list[Reference]:
        """Anchors, images and iframes in document order, then block records.

        Block records are emitted parent first; ignored block names are
        removed only after the whole tree has been walked.
        """

        if not html or not html.strip():
            return []

        references: list[Reference] = []
        soup = BeautifulSoup(html, "lxml")
        for element in soup.find_all(list(_MARKUP_TAGS)):
            attribute, kind = _MARKUP_TAGS[element.name]
            url = (element.get(attribute) or "").strip()
            if not url:
                continue
            if kind == ReferenceKind.LINK:
                anchor = element.get_text(" ", strip=True)
            elif kind == ReferenceKind.IMAGE:
                anchor = (element.get("alt") or "").strip()
            else:
                anchor = (element.get("title") or "").strip()
            references.append(
                self._new_reference(
                    entity,
                    from_where,
                    from_key=from_key,
                    to_url=url,
                    to_kind=kind,
                    to_anchor_text=anchor,
                )
            )

        block_refs: list[Reference] = []
        for block in walk_blocks(parse_blocks(html)):
            ref = self._new_reference(
                entity,
                from_where,
                from_key=from_key,
                to_kind=ReferenceKind.BLOCK,
                to_block_name=block.name,
            )
            if block.name == "core/block":
                ref.to_post_type = "wp_block"
                ref.to_site_id = entity.site_id
                try:
                    ref.to_post_id = int(block.attrs.get("ref"))
                except (TypeError, ValueError):
                    ref.to_post_id = None
            block_refs.append(ref)

        ignored = set(self.config.ignored_blocks)
        references.extend(ref for ref in block_refs if ref.to_block_name not in ignored)
        return references

    def _redirect_references(self, entity: Entity) -> list[Reference]:
        if not entity.permalink or not self.correlator.active:
            return []
        rules = self.correlator.find_rules(
            entity.permalink,
            MatchingMode.BOTH,
            site_id=entity.site_id,
            is_attachment=entity.subtype == "attachment",
        )
        return self.correlator.to_references(rules, entity)

    @staticmethod
    def _new_reference(entity: Entity, from_where: FromWhere, **fields: Any) -> Reference:
        return Reference(
            from_id=entity.id,
            from_kind=entity.kind,
            from_site_id=entity.site_id,
            from_where=from_where.value,
            from_subtype=entity.subtype,
            **fields,
        )

    def _resolve(
        self,
        ref: Reference,
        base_url: str,
        *,
        cache: StatusCache | None,
        defer_status: bool,
    ) -> None:
        """Canonicalize the target, link it to a local entity and attach a status."""

        target: Entity | None = None
        normalized = None

        if ref.to_url:
            normalized = normalize(
                ref.to_url,
                base_url,
                sites=self.config.sites,
                current_site_id=self.config.current_site_id,
            )
            ref.to_url_full = normalized.full_url
            ref.to_url_absolute = normalized.absolute_url
            ref.to_url_is_relative = normalized.is_relative
            ref.to_url_is_external = normalized.is_external
            if normalized.is_local:
                ref.to_site_id = normalized.site_id
                target = self.repository.resolve_url(normalized.absolute_url)
                if target is not None and ref.to_post_id is None:
                    ref.to_post_id = target.id
                    ref.to_post_type = target.subtype

        skip_status = (
            normalized is None
            or not normalized.is_checkable
            or ref.to_kind == ReferenceKind.BLOCK
            or ref.to_post_type == "wp_block"
            or (target is not None and not target.is_public)
            or not self.config.check_status_codes
        )
        if skip_status:
            ref.to_url_status = STATUS_NOT_APPLICABLE
            return

        result = self._status_for(normalized.absolute_url, cache=cache, defer_status=defer_status)
        ref.to_url_status = result.status_code
        ref.to_url_status_date = result.checked_at
        ref.to_url_redirect = result.redirect_target

        if normalized.is_local and result.is_redirect and ref.redirection_id is None:
            self._link_redirect(ref, normalized.absolute_url)

    def _status_for(
        self,
        absolute_url: str,
        *,
        cache: StatusCache | None,
        defer_status: bool,
    ) -> StatusResult:
        if cache is None:
            return StatusResult(url=absolute_url, status_code=STATUS_DEFERRED, checked_at=EPOCH_DATE)
        if defer_status:
            return cache.lookup_or_defer(absolute_url)

        result = cache.get_or_check(absolute_url)
        if result.attempts:
            self.stats.record_status(result)
        else:
            self.stats.increment("status_cache_hits")
        return result

    def _link_redirect(self, ref: Reference, absolute_url: str) -> None:
        rules = self.correlator.find_rules(absolute_url, MatchingMode.TRIGGER, site_id=ref.to_site_id)
        if not rules:
            return
        rule = rules[0]
        ref.redirection_id = rule.id
        ref.redirection_site_id = rule.site_id
        ref.redirection_url = rule.url

        destination = self.correlator.resolve_destination(rule, absolute_url)
        if not destination or ref.to_post_id is not None:
            return
        normalized = normalize(
            destination,
            sites=self.config.sites,
            current_site_id=self.config.current_site_id,
        )
        if normalized.is_local:
            target = self.repository.resolve_url(normalized.absolute_url)
            if target is not None:
                ref.to_post_id = target.id
                ref.to_post_type = target.subtype
                ref.to_site_id = normalized.site_id


def seed_results_from(references: Iterable[Reference]) -> list[StatusResult]:
    """Known statuses of previously stored references, for pre-seeding a cache."""

    results: dict[str, StatusResult] = {}
    for ref in references:
        if not ref.to_url_absolute or ref.to_url_status in (STATUS_NOT_APPLICABLE, STATUS_DEFERRED):
            continue
        results.setdefault(
            ref.to_url_absolute,
            StatusResult(
                url=ref.to_url_absolute,
                status_code=ref.to_url_status,
                redirect_target=ref.to_url_redirect,
                checked_at=ref.to_url_status_date,
            ),
        )
    return list(results.values())


__all__ = ["MetaHandler", "ReferenceExtractor", "seed_results_from"]
