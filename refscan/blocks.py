"""Parser for block-comment markup (`<!-- wp:name {json} -->`)."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator


LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "core/"

_TOKEN_RE = re.compile(
    r"<!--\s+(?P<closer>/)?wp:(?P<namespace>[a-z][a-z0-9_-]*/)?(?P<name>[a-z][a-z0-9_-]*)"
    r"\s+(?:(?P<attrs>\{.*?\})\s+)?(?P<void>/)?-->",
    re.DOTALL,
)


@dataclass(slots=True)
class Block:
    name: str
    attrs: dict[str, Any] = field(default_factory=dict)
    inner_blocks: list["Block"] = field(default_factory=list)
    inner_html: str = ""


def _parse_attrs(raw: str | None, name: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        attrs = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.debug("Ignoring malformed attributes on block %s", name)
        return {}
    return attrs if isinstance(attrs, dict) else {}


def parse_blocks(content: str) -> list[Block]:
    """Return the top-level blocks found in `content`, children nested.

    Malformed markup never raises: unmatched closers are ignored and blocks
    left open at the end are attached where they started.
    """

    roots: list[Block] = []
    stack: list[tuple[Block, int]] = []

    def _attach(block: Block) -> None:
        if stack:
            stack[-1][0].inner_blocks.append(block)
        else:
            roots.append(block)

    for match in _TOKEN_RE.finditer(content or ""):
        name = (match.group("namespace") or DEFAULT_NAMESPACE) + match.group("name")

        if match.group("closer"):
            depth = next(
                (idx for idx in range(len(stack) - 1, -1, -1) if stack[idx][0].name == name),
                None,
            )
            if depth is None:
                continue
            while len(stack) > depth:
                block, start = stack.pop()
                block.inner_html = content[start:match.start()]
                _attach(block)
            continue

        block = Block(name=name, attrs=_parse_attrs(match.group("attrs"), name))
        if match.group("void"):
            _attach(block)
        else:
            stack.append((block, match.end()))

    while stack:
        block, start = stack.pop()
        block.inner_html = content[start:]
        _attach(block)

    return roots


def walk_blocks(blocks: list[Block]) -> Iterator[Block]:
    """Depth-first, parent before children."""

    for block in blocks:
        yield block
        yield from walk_blocks(block.inner_blocks)


__all__ = ["Block", "parse_blocks", "walk_blocks"]
