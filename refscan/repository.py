"""Read-side contract for the host content repository, plus an in-memory implementation."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from .config import load_mapping
from .types import Entity, EntityKind
from .url import strip_fragment


class ContentRepository(Protocol):
    """What the scanner needs from the system that owns the content."""

    def get(self, kind: EntityKind, entity_id: int) -> Entity | None: ...

    def list_ids(
        self,
        kind: EntityKind,
        *,
        subtypes: Sequence[str] | None = None,
        statuses: Sequence[str] | None = None,
    ) -> list[tuple[int, str]]: ...

    def resolve_url(self, absolute_url: str) -> Entity | None: ...


def _url_key(url: str) -> str:
    return strip_fragment(url).rstrip("/").lower()


class InMemoryRepository:
    """Content held in a dict; used by tests and by the CLI with a JSON/YAML dump."""

    def __init__(self, entities: Iterable[Entity] = ()) -> None:
        self._lock = threading.Lock()
        self._entities: dict[tuple[EntityKind, int], Entity] = {}
        self._by_url: dict[str, tuple[EntityKind, int]] = {}
        for entity in entities:
            self.add(entity)

    def add(self, entity: Entity) -> None:
        with self._lock:
            key = (entity.kind, entity.id)
            previous = self._entities.get(key)
            if previous is not None and previous.permalink:
                self._by_url.pop(_url_key(previous.permalink), None)
            self._entities[key] = entity
            if entity.permalink:
                self._by_url[_url_key(entity.permalink)] = key

    def remove(self, kind: EntityKind, entity_id: int) -> Entity | None:
        with self._lock:
            entity = self._entities.pop((kind, entity_id), None)
            if entity is not None and entity.permalink:
                self._by_url.pop(_url_key(entity.permalink), None)
            return entity

    def get(self, kind: EntityKind, entity_id: int) -> Entity | None:
        with self._lock:
            return self._entities.get((kind, entity_id))

    def list_ids(
        self,
        kind: EntityKind,
        *,
        subtypes: Sequence[str] | None = None,
        statuses: Sequence[str] | None = None,
    ) -> list[tuple[int, str]]:
        with self._lock:
            rows = [
                (entity.id, entity.subtype)
                for (entity_kind, _), entity in self._entities.items()
                if entity_kind == kind
                and not entity.is_revision
                and (subtypes is None or entity.subtype in subtypes)
                and (statuses is None or kind != EntityKind.POST or entity.status in statuses)
            ]
        return sorted(rows)

    def resolve_url(self, absolute_url: str) -> Entity | None:
        with self._lock:
            key = self._by_url.get(_url_key(absolute_url))
            return None if key is None else self._entities.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entities)


def load_repository(path: str | Path) -> InMemoryRepository:
    """Load `{"entities": [...]}` from a JSON/YAML content dump."""

    payload = load_mapping(path)
    raw_entities = payload.get("entities") or []
    if not isinstance(raw_entities, list):
        raise ValueError(f"'entities' in {path} must be a list")
    return InMemoryRepository(Entity.from_json(item) for item in raw_entities)


__all__ = ["ContentRepository", "InMemoryRepository", "load_repository"]
