"""Reference extraction tests."""

from __future__ import annotations

import pytest

from refscan.cache import StatusCache, cache_key
from refscan.constants import EPOCH_DATE, STATUS_DEFERRED, STATUS_NOT_APPLICABLE
from refscan.extractor import ReferenceExtractor, seed_results_from
from refscan.redirects import InMemoryRedirectStore, RedirectCorrelator
from refscan.types import (
    EntityKind,
    FromWhere,
    MenuItem,
    RedirectRule,
    Reference,
    ReferenceKind,
)

from .conftest import StubChecker, make_menu, make_post, make_term


@pytest.fixture()
def extractor(config, repository, index):
    return ReferenceExtractor(config, repository, index)


def test_post_with_link_image_and_internal_link(extractor, repository, index):
    target = make_post(2)
    repository.add(target)
    post = make_post(
        1,
        '<p><a href="https://elsewhere.net/a">Elsewhere</a> '
        '<img src="/wp-content/uploads/pic.jpg" alt="A picture"> '
        '<a href="/post-2/">Second post</a></p>',
    )

    refs = extractor.scan(post)

    assert [(ref.to_kind, ref.to_url) for ref in refs] == [
        (ReferenceKind.LINK, "https://elsewhere.net/a"),
        (ReferenceKind.IMAGE, "/wp-content/uploads/pic.jpg"),
        (ReferenceKind.LINK, "/post-2/"),
    ]
    external, image, internal = refs
    assert external.to_url_is_external
    assert external.to_anchor_text == "Elsewhere"
    assert image.to_anchor_text == "A picture"
    assert image.to_url_absolute == "https://example.com/wp-content/uploads/pic.jpg"
    assert image.to_url_is_relative
    assert internal.to_post_id == 2
    assert internal.to_post_type == "post"
    assert all(ref.from_where == FromWhere.CONTENT.value for ref in refs)
    assert len(index.references_from(EntityKind.POST, 1, 1)) == 3


def test_post_with_local_link_missing_image_and_custom_block(extractor, options, clock):
    checker = StubChecker({"https://ext.example/x.png": 404}, clock=clock)
    cache = StatusCache(options, cache_key("scan", 1), checker, clock=clock)
    content = '<a href="/b">B</a><img src="https://ext.example/x.png"><!-- wp:widget/cta /-->'

    refs = extractor.scan(make_post(1, content), cache=cache)

    assert len(refs) == 3
    link, image, block = refs
    assert link.to_kind == ReferenceKind.LINK
    assert link.to_url == "/b"
    assert not link.to_url_is_external
    assert link.to_site_id == 1
    assert image.to_kind == ReferenceKind.IMAGE
    assert image.to_url_is_external
    assert image.to_url_status == 404
    assert block.to_kind == ReferenceKind.BLOCK
    assert block.to_block_name == "widget/cta"
    assert block.to_url == ""


def test_without_a_cache_checkable_urls_are_deferred(extractor):
    refs = extractor.scan(make_post(1, '<a href="https://elsewhere.net/">x</a>'))

    assert refs[0].to_url_status == STATUS_DEFERRED
    assert refs[0].to_url_status_date == EPOCH_DATE


def test_rescan_replaces_the_previous_reference_set(extractor, index):
    extractor.scan(make_post(1, '<a href="/one">1</a><a href="/two">2</a>'))
    extractor.scan(make_post(1, '<a href="/three">3</a>'))

    stored = index.references_from(EntityKind.POST, 1, 1)

    assert [ref.to_url for ref in stored] == ["/three"]


def test_revisions_are_skipped(extractor, index):
    assert extractor.scan(make_post(1, '<a href="/x">x</a>', is_revision=True)) == []
    assert index.count() == 0


def test_blocks_are_recorded_after_the_walk_with_ignored_names_removed(extractor):
    content = (
        "<!-- wp:group -->"
        "<!-- wp:acme/card /-->"
        "<!-- wp:paragraph --><p>Text</p><!-- /wp:paragraph -->"
        "<!-- /wp:group -->"
        '<!-- wp:block {"ref":12} /-->'
    )

    refs = extractor.scan(make_post(1, content))
    blocks = [ref for ref in refs if ref.to_kind == ReferenceKind.BLOCK]

    assert [ref.to_block_name for ref in blocks] == ["acme/card", "core/block"]
    assert blocks[1].to_post_id == 12
    assert blocks[1].to_post_type == "wp_block"
    assert all(ref.to_url_status == STATUS_NOT_APPLICABLE for ref in blocks)


def test_featured_image_and_excerpt(extractor):
    post = make_post(1, "", featured_image_id=99, excerpt='<a href="https://elsewhere.net/e">e</a>')

    refs = extractor.scan(post)
    by_where = {ref.from_where: ref for ref in refs}

    assert by_where[FromWhere.FEATURED_IMAGE.value].to_post_id == 99
    assert by_where[FromWhere.FEATURED_IMAGE.value].to_kind == ReferenceKind.IMAGE
    assert by_where[FromWhere.EXCERPT.value].to_url == "https://elsewhere.net/e"


def test_meta_values_skip_ignored_keys(extractor):
    post = make_post(
        1,
        meta={
            "_edit_lock": '<a href="/locked">no</a>',
            "sidebar": '<a href="https://elsewhere.net/m">m</a>',
            "count": 3,
        },
    )

    refs = extractor.scan(post)

    assert [(ref.from_where, ref.from_key, ref.to_url) for ref in refs] == [
        (FromWhere.POST_META.value, "sidebar", "https://elsewhere.net/m"),
    ]


def test_meta_handler_replaces_the_default_walk(config, repository, index):
    def gallery(entity, key, value):
        return [
            Reference(
                from_id=entity.id,
                from_kind=entity.kind,
                from_site_id=entity.site_id,
                from_where=FromWhere.POST_META.value,
                from_key=key,
                to_kind=ReferenceKind.ID,
                to_post_id=int(item),
                to_post_type="attachment",
            )
            for item in value.split(",")
        ]

    extractor = ReferenceExtractor(config, repository, index, meta_handlers={"gallery": gallery})

    refs = extractor.scan(make_post(1, meta={"gallery": "5,6"}))

    assert [ref.to_post_id for ref in refs] == [5, 6]


def test_term_description_and_menu_items(extractor, repository):
    repository.add(make_post(3))
    term = make_term(7, '<a href="/post-3/">three</a>')
    menu = make_menu(
        4,
        [
            MenuItem(url="https://example.com/post-3/", title="Three", object_id=3, object_type="post"),
            MenuItem(url="https://elsewhere.net/", title="Out"),
        ],
    )

    term_refs = extractor.scan(term)
    menu_refs = extractor.scan(menu)

    assert term_refs[0].from_where == FromWhere.TERM_DESCRIPTION.value
    assert term_refs[0].to_post_id == 3
    assert [ref.from_where for ref in menu_refs] == [FromWhere.MENU.value] * 2
    assert menu_refs[0].to_post_id == 3
    assert menu_refs[0].to_anchor_text == "Three"
    assert menu_refs[1].to_url_is_external


def test_mailto_and_private_targets_have_no_status(extractor, repository):
    repository.add(make_post(5, is_public=False))

    refs = extractor.scan(make_post(1, '<a href="mailto:a@example.com">m</a><a href="/post-5/">p</a>'))

    assert [ref.to_url_status for ref in refs] == [STATUS_NOT_APPLICABLE, STATUS_NOT_APPLICABLE]


def test_status_checks_use_the_cache(extractor, options, clock):
    checker = StubChecker({"https://elsewhere.net/gone": 404}, clock=clock)
    cache = StatusCache(options, cache_key("scan", 1), checker, clock=clock)
    content = '<a href="https://elsewhere.net/gone">a</a><a href="https://elsewhere.net/gone#x">b</a>'

    refs = extractor.scan(make_post(1, content), cache=cache)

    assert [ref.to_url_status for ref in refs] == [404, 404]
    assert checker.calls == ["https://elsewhere.net/gone"]
    assert extractor.stats.get("status_cache_hits") == 1


def test_deferred_mode_never_makes_requests(extractor, options, clock):
    checker = StubChecker(clock=clock)
    cache = StatusCache(options, cache_key("scan_post", 1, 1), checker, clock=clock)

    refs = extractor.scan(make_post(1, '<a href="https://elsewhere.net/">x</a>'), cache=cache, defer_status=True)

    assert checker.calls == []
    assert refs[0].to_url_status == STATUS_DEFERRED


def test_redirect_rules_pointing_at_the_post_become_references(config, repository, index):
    store = InMemoryRedirectStore(
        [RedirectRule(id=5, url="/old-page", action_data="https://example.com/post-1/")]
    )
    extractor = ReferenceExtractor(config, repository, index, RedirectCorrelator(config, store))

    refs = extractor.scan(make_post(1, ""))

    assert len(refs) == 1
    assert refs[0].from_where == FromWhere.REDIRECT.value
    assert refs[0].redirection_id == 5
    assert refs[0].redirection_url == "/old-page"
    assert refs[0].to_url == "https://example.com/post-1/"


def test_local_redirecting_link_is_linked_to_its_rule(config, repository, index, options, clock):
    repository.add(make_post(1))
    store = InMemoryRedirectStore(
        [RedirectRule(id=8, url="/old-page", action_data="https://example.com/post-1/")]
    )
    extractor = ReferenceExtractor(config, repository, index, RedirectCorrelator(config, store))
    checker = StubChecker(
        {"https://example.com/old-page": (301, "https://example.com/post-1/")},
        clock=clock,
    )
    cache = StatusCache(options, cache_key("scan", 1), checker, clock=clock)

    refs = extractor.scan(make_post(2, '<a href="/old-page">old</a>'), cache=cache)
    link = refs[0]

    assert link.to_url_status == 301
    assert link.to_url_redirect == "https://example.com/post-1/"
    assert link.redirection_id == 8
    assert link.to_post_id == 1


def test_seed_results_skip_unchecked_references():
    checked = Reference(
        from_id=1,
        from_kind=EntityKind.POST,
        from_site_id=1,
        from_where="content",
        to_url_absolute="https://elsewhere.net/",
        to_url_status=200,
        to_url_status_date="2026-10-19 09:00:00",
    )
    deferred = Reference(
        from_id=1,
        from_kind=EntityKind.POST,
        from_site_id=1,
        from_where="content",
        to_url_absolute="https://elsewhere.net/later",
        to_url_status=STATUS_DEFERRED,
    )

    results = seed_results_from([checked, deferred])

    assert [(item.url, item.status_code) for item in results] == [("https://elsewhere.net/", 200)]
