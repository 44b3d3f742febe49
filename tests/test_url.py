"""URL normalization tests."""

from __future__ import annotations

import pytest

from refscan.config import SiteConfig
from refscan.url import normalize, url_variants

from .conftest import SITE_URL


SITES = [
    SiteConfig(site_id=1, url=SITE_URL, aliases=("cdn.example.com",)),
    SiteConfig(site_id=2, url="https://other.example.org", shared_media=True),
]


def norm(raw, base=None, site_id=1):
    return normalize(raw, base, sites=SITES, current_site_id=site_id)


def test_relative_path_resolves_against_current_site():
    result = norm("/about")

    assert result.full_url == "https://example.com/about"
    assert result.absolute_url == "https://example.com/about"
    assert result.relative_url == "/about"
    assert result.is_relative
    assert result.is_local
    assert result.site_id == 1


def test_path_without_leading_slash_is_site_relative():
    assert norm("about/team").full_url == "https://example.com/about/team"


def test_protocol_relative_gets_site_scheme():
    result = norm("//other.example.org/page")

    assert result.full_url == "https://other.example.org/page"
    assert result.site_id == 2
    assert not result.is_relative


def test_bare_www_host_gets_scheme():
    result = norm("www.elsewhere.net/page")

    assert result.full_url == "https://www.elsewhere.net/page"
    assert result.is_external
    assert not result.is_local


def test_www_and_alias_hosts_are_local():
    assert norm("https://www.example.com/x").site_id == 1
    assert norm("https://CDN.example.com/img.png").site_id == 1


def test_fragment_resolves_against_page_and_is_stripped_from_absolute():
    result = norm("#comments", "https://example.com/post-1/")

    assert result.full_url == "https://example.com/post-1/#comments"
    assert result.absolute_url == "https://example.com/post-1/"


def test_query_resolves_against_page_without_its_query():
    result = norm("?page=2", "https://example.com/blog/?page=1")

    assert result.full_url == "https://example.com/blog/?page=2"


def test_urls_differing_only_by_fragment_share_identity():
    first = norm("https://example.com/a#one")
    second = norm("https://example.com/a#two")

    assert first.full_url != second.full_url
    assert first.absolute_url == second.absolute_url


def test_root_slash_is_stripped_and_host_lowercased():
    assert norm("https://EXAMPLE.com/").full_url == "https://example.com"


def test_non_root_trailing_slash_is_kept():
    assert norm("https://example.com/about/").full_url == "https://example.com/about/"


@pytest.mark.parametrize(
    "raw",
    ["/about", "#top", "https://Example.com/", "//other.example.org/p?q=1#f", "www.elsewhere.net"],
)
def test_normalize_is_idempotent(raw):
    once = norm(raw, "https://example.com/post-1/")
    twice = norm(once.full_url, "https://example.com/post-1/")

    assert twice.full_url == once.full_url
    assert twice.absolute_url == once.absolute_url


def test_mailto_and_tel_are_flagged_and_not_checkable():
    mail = norm("mailto:someone@example.com")
    tel = norm("tel:+15551234")

    assert mail.is_mail and not mail.is_checkable
    assert tel.is_tel and not tel.is_checkable


def test_other_schemes_are_external_and_not_checkable():
    result = norm("ftp://files.example.com/a.zip")

    assert result.is_external
    assert not result.is_checkable


def test_empty_and_placeholder_values_are_invalid():
    assert not norm("").is_valid
    assert not norm("null").is_valid
    assert not norm(None).is_valid


def test_url_variants_cover_schemes_slashes_and_relative_forms():
    variants = url_variants(norm("https://example.com/about"), sites=SITES, current_site_id=1)

    assert "https://example.com/about" in variants
    assert "http://example.com/about/" in variants
    assert "/about" in variants
    assert "/about/" in variants
    assert len(variants) == len(set(variants))


def test_url_variants_skip_relative_forms_for_other_sites():
    target = norm("https://other.example.org/page")

    plain = url_variants(target, sites=SITES, current_site_id=1)
    shared = url_variants(target, sites=SITES, current_site_id=1, include_shared_media=True)

    assert "/page" not in plain
    assert "/page" in shared


def test_url_variants_empty_for_external_urls():
    assert url_variants(norm("https://elsewhere.net/x"), sites=SITES, current_site_id=1) == []
