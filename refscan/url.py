"""URL canonicalization and local/external classification.

Every URL found in content goes through `normalize`, which never raises.
The `absolute_url` it returns (fragment stripped) is the identity used for
status checks, the status cache and redirect lookups.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence
from urllib.parse import quote, urlsplit, urlunsplit

from .config import SiteConfig


HTTP_SCHEMES = ("http", "https")
NON_URL_VALUES = {"", "null", "none", "#"}

_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.-]*):", re.IGNORECASE)
_BARE_WWW_RE = re.compile(r"^www\.[^/\s]+\.[^/\s]+", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class NormalizedURL:
    """Canonical form of one authored URL plus classification flags."""

    raw: str
    full_url: str
    absolute_url: str
    relative_url: str = ""
    is_relative: bool = False
    is_external: bool = True
    site_id: int | None = None
    is_mail: bool = False
    is_tel: bool = False
    is_valid: bool = True

    @property
    def is_local(self) -> bool:
        return self.is_valid and not self.is_external and self.site_id is not None

    @property
    def is_checkable(self) -> bool:
        """True when an HTTP status check makes sense for this URL."""

        if not self.is_valid or self.is_mail or self.is_tel:
            return False
        return urlsplit(self.absolute_url).scheme in HTTP_SCHEMES


def normalize_domain(domain_or_url: str) -> str:
    """Normalize a domain (or URL containing one) for matching.

    This strips `www.` and leading/trailing dots and lowercases the host.
    """

    raw = (domain_or_url or "").strip().lower()
    if not raw:
        return ""

    try:
        parsed = urlsplit(raw if "://" in raw else f"//{raw}")
        host = (parsed.hostname or "").strip().lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host.strip(".")


def host_from_url(url: str) -> str:
    """Extract normalized host from URL."""

    try:
        host = (urlsplit(url).hostname or "").strip().lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host.strip(".")


def _normalize_netloc(parsed_url) -> str:
    host = (parsed_url.hostname or "").lower()
    if not host:
        return parsed_url.netloc.lower()

    userinfo = ""
    if parsed_url.username:
        userinfo = quote(parsed_url.username, safe="")
        if parsed_url.password:
            userinfo += ":" + quote(parsed_url.password, safe="")
        userinfo += "@"

    port: int | None
    try:
        port = parsed_url.port
    except ValueError:
        port = None

    if ":" in host:
        host = f"[{host}]"
    if port is not None:
        return f"{userinfo}{host}:{port}"
    return f"{userinfo}{host}"


def strip_fragment(url: str) -> str:
    """Return scheme, credentials, host, port, path and query without `#...`."""

    if "#" not in url:
        return url
    return url.split("#", maxsplit=1)[0]


def to_relative(url: str) -> str:
    """Path + query + fragment of an absolute URL."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return ""
    relative = parts.path or "/"
    if parts.query:
        relative += "?" + parts.query
    if parts.fragment:
        relative += "#" + parts.fragment
    return relative


def find_site(host: str, sites: Iterable[SiteConfig]) -> SiteConfig | None:
    """Match a host against every configured site url and alias."""

    normalized = normalize_domain(host)
    if not normalized:
        return None
    for site in sites:
        if normalized in site.hosts:
            return site
    return None


def _invalid(raw: str) -> NormalizedURL:
    return NormalizedURL(raw=raw, full_url=raw, absolute_url=raw, is_external=True, is_valid=False)


def _canonical_absolute(url: str) -> str | None:
    try:
        parsed = urlsplit(url)
    except ValueError:
        return None
    if not parsed.netloc:
        return None

    netloc = _normalize_netloc(parsed)
    path = parsed.path
    # Host redirects `https://site/` to `https://site`; keep the shorter form.
    if path == "/" and not parsed.query and not parsed.fragment:
        path = ""
    return urlunsplit((parsed.scheme.lower(), netloc, path, parsed.query, parsed.fragment))


def normalize(
    raw_url: str | None,
    base_url: str | None = None,
    *,
    sites: Sequence[SiteConfig],
    current_site_id: int,
) -> NormalizedURL:
    """Canonicalize an authored URL.

    Relative input is resolved against the current site. A leading `#` or `?`
    resolves against `base_url` (the page the link appears on), falling back
    to the current site url.
    """

    raw = (raw_url or "").strip()
    if raw.lower() in NON_URL_VALUES - {"#"} or not raw:
        return _invalid(raw)

    current_site = next((site for site in sites if site.site_id == current_site_id), None)
    if current_site is None:
        return _invalid(raw)

    scheme_match = _SCHEME_RE.match(raw)
    if scheme_match is not None and not raw.startswith("//"):
        scheme = scheme_match.group(1).lower()
        if scheme == "mailto":
            return NormalizedURL(raw=raw, full_url=raw, absolute_url=raw, is_mail=True)
        if scheme == "tel":
            return NormalizedURL(raw=raw, full_url=raw, absolute_url=raw, is_tel=True)
        if scheme not in HTTP_SCHEMES:
            return NormalizedURL(raw=raw, full_url=raw, absolute_url=strip_fragment(raw))
        return _classify_absolute(raw, raw, sites=sites, is_relative=False)

    if raw.startswith("//"):
        return _classify_absolute(raw, f"{current_site.scheme}:{raw}", sites=sites, is_relative=False)

    if _BARE_WWW_RE.match(raw):
        return _classify_absolute(raw, f"{current_site.scheme}://{raw}", sites=sites, is_relative=False)

    if raw.startswith(("#", "?")):
        base = (base_url or current_site.url).strip() or current_site.url
        base = strip_fragment(base)
        if raw.startswith("?"):
            base = base.split("?", maxsplit=1)[0]
        return _classify_absolute(raw, base + raw, sites=sites, is_relative=True)

    site_root = urlsplit(current_site.url)
    path = raw if raw.startswith("/") else "/" + raw
    full = f"{site_root.scheme or current_site.scheme}://{site_root.netloc}{path}"
    return _classify_absolute(raw, full, sites=sites, is_relative=True)


def _classify_absolute(
    raw: str,
    candidate: str,
    *,
    sites: Sequence[SiteConfig],
    is_relative: bool,
) -> NormalizedURL:
    full_url = _canonical_absolute(candidate)
    if full_url is None:
        return _invalid(raw)

    host = host_from_url(full_url)
    site = find_site(host, sites)
    absolute = strip_fragment(full_url)

    if site is None:
        return NormalizedURL(
            raw=raw,
            full_url=full_url,
            absolute_url=absolute,
            relative_url="",
            is_relative=is_relative,
            is_external=True,
        )

    return NormalizedURL(
        raw=raw,
        full_url=full_url,
        absolute_url=absolute,
        relative_url=to_relative(full_url),
        is_relative=is_relative,
        is_external=False,
        site_id=site.site_id,
    )


def url_variants(
    normalized: NormalizedURL,
    *,
    sites: Sequence[SiteConfig],
    current_site_id: int,
    include_shared_media: bool = False,
) -> list[str]:
    """All spellings of a local URL that a redirect rule could be stored as.

    Produces http/https forms with and without a trailing slash, plus the
    relative path forms. Relative forms are only added when the URL belongs
    to the current site, or to a site sharing the media layer when
    `include_shared_media` is set. Non-local URLs yield no variants.
    """

    if not normalized.is_local or not normalized.is_checkable:
        return []

    try:
        parts = urlsplit(normalized.absolute_url)
    except ValueError:
        return []

    path = parts.path or "/"
    trimmed = path.rstrip("/")
    paths = [trimmed + "/"] if not trimmed else [trimmed, trimmed + "/"]
    query = ("?" + parts.query) if parts.query else ""

    variants: list[str] = []
    for scheme in HTTP_SCHEMES:
        for item in paths:
            variants.append(urlunsplit((scheme, parts.netloc, item, parts.query, "")))
        if not trimmed:
            variants.append(urlunsplit((scheme, parts.netloc, "", parts.query, "")))

    site = next((item for item in sites if item.site_id == normalized.site_id), None)
    allow_relative = normalized.site_id == current_site_id or (
        include_shared_media and site is not None and site.shared_media
    )
    if allow_relative:
        for item in paths:
            variants.append(item + query)

    seen: set[str] = set()
    out: list[str] = []
    for variant in variants:
        if variant and variant not in seen:
            seen.add(variant)
            out.append(variant)
    return out


__all__ = [
    "HTTP_SCHEMES",
    "NormalizedURL",
    "find_site",
    "host_from_url",
    "normalize",
    "normalize_domain",
    "strip_fragment",
    "to_relative",
    "url_variants",
]
