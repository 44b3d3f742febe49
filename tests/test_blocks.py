"""Block markup parser tests."""

from __future__ import annotations

from refscan.blocks import parse_blocks, walk_blocks


def test_nested_blocks_walk_parent_first():
    content = (
        "<!-- wp:group --><div>"
        "<!-- wp:paragraph --><p>One</p><!-- /wp:paragraph -->"
        "<!-- wp:acme/card {\"id\":3} /-->"
        "</div><!-- /wp:group -->"
        "<!-- wp:separator /-->"
    )

    blocks = parse_blocks(content)

    assert [block.name for block in blocks] == ["core/group", "core/separator"]
    assert [block.name for block in walk_blocks(blocks)] == [
        "core/group",
        "core/paragraph",
        "acme/card",
        "core/separator",
    ]
    assert blocks[0].inner_blocks[1].attrs == {"id": 3}
    assert "<p>One</p>" in blocks[0].inner_html


def test_reusable_block_reference_keeps_its_attrs():
    blocks = parse_blocks('<!-- wp:block {"ref":42} /-->')

    assert blocks[0].name == "core/block"
    assert blocks[0].attrs == {"ref": 42}


def test_malformed_markup_never_raises():
    content = (
        "<!-- /wp:paragraph -->"
        "<!-- wp:quote {not json} -->"
        "<!-- wp:list --><ul><li>x</li></ul>"
    )

    blocks = parse_blocks(content)

    assert [block.name for block in walk_blocks(blocks)] == ["core/quote", "core/list"]
    assert blocks[0].attrs == {}


def test_plain_html_has_no_blocks():
    assert parse_blocks("<p>No blocks <!-- just a comment --></p>") == []
    assert parse_blocks("") == []
