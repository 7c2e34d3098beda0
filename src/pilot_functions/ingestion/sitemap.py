"""Sitemap discovery, URL filtering and expansion into child sources."""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field

import requests

from pilot_functions.config import settings
from pilot_functions.errors import FetchError, RowStoreError
from pilot_functions.ingestion.cleanup import SOURCES, delete_children
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import KnowledgeSource, SourceStatus, SourceType, utcnow_iso

logger = logging.getLogger(__name__)

_LOC_RE = re.compile(r"<loc>(.*?)</loc>", re.IGNORECASE)
_SITEMAP_BLOCK_RE = re.compile(r"<sitemap>[\s\S]*?</sitemap>", re.IGNORECASE)

INSERT_BATCH_SIZE = 50
CHILD_FETCH_DELAY = 0.1
MAX_INDEX_DEPTH = 3


@dataclass
class SitemapDiscovery:
    """Page URLs found in a sitemap (or sitemap index) tree."""

    urls: list[str] = field(default_factory=list)
    child_sitemaps: int = 0


@dataclass
class SitemapExpansion:
    """Outcome of turning a sitemap parent into pending child rows."""

    batch_id: str
    url_count: int
    filtered_count: int
    child_sitemaps: int


# ── parsing ──────────────────────────────────────────────────────────
def is_sitemap_url(url: str) -> bool:
    lower = url.lower()
    return lower.endswith(".xml") or "sitemap" in lower or lower.endswith("/sitemap")


def parse_sitemap_locs(xml: str) -> list[str]:
    """Every ``<loc>`` value that looks like an absolute http(s) URL."""
    urls = []
    for match in _LOC_RE.findall(xml):
        url = match.strip()
        if url.startswith("http"):
            urls.append(url)
    return urls


def is_sitemap_index(xml: str) -> bool:
    return "<sitemapindex" in xml or "<sitemap>" in xml


def extract_child_sitemaps(xml: str) -> list[str]:
    """The ``<loc>`` of each ``<sitemap>`` block of a sitemap index."""
    children = []
    for block in _SITEMAP_BLOCK_RE.findall(xml):
        loc = _LOC_RE.search(block)
        if loc and loc.group(1).strip():
            children.append(loc.group(1).strip())
    return children


# ── filtering ────────────────────────────────────────────────────────
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``*`` glob to an unanchored regex (``/tag/*`` -> ``/tag/.*``)."""
    escaped = re.sub(r"[.+?^${}()|\[\]\\]", lambda m: "\\" + m.group(0), pattern)
    return re.compile(escaped.replace("*", ".*"))


def matches_pattern(url: str, pattern: str) -> bool:
    return glob_to_regex(pattern).search(url) is not None


def filter_urls(
    urls: list[str],
    exclude_patterns: list[str] | None = None,
    include_patterns: list[str] | None = None,
    page_limit: int | None = None,
) -> list[str]:
    """Apply exclude patterns, then include patterns, then the page limit.

    An empty include list keeps everything.  The limit keeps the first
    *page_limit* URLs in sitemap order.
    """
    filtered = list(urls)
    if exclude_patterns:
        filtered = [u for u in filtered if not any(matches_pattern(u, p) for p in exclude_patterns)]
    if include_patterns:
        filtered = [u for u in filtered if any(matches_pattern(u, p) for p in include_patterns)]

    limit = settings.default_page_limit if page_limit is None else page_limit
    if len(filtered) > limit:
        logger.info("Limiting URLs from %d to %d", len(filtered), limit)
        filtered = filtered[:limit]
    return filtered


# ── discovery ────────────────────────────────────────────────────────
def _get_xml(url: str, session: requests.Session | None) -> str:
    http = session or requests
    try:
        resp = http.get(url, headers={"User-Agent": settings.user_agent}, timeout=settings.request_timeout)
    except requests.RequestException as exc:
        raise FetchError(f"Failed to fetch sitemap: {exc}") from exc
    if not resp.ok:
        raise FetchError(f"Failed to fetch sitemap: {resp.status_code} {resp.reason}")
    return resp.text


def _walk(url: str, xml: str, session: requests.Session | None, depth: int, found: SitemapDiscovery) -> None:
    if not is_sitemap_index(xml):
        found.urls.extend(parse_sitemap_locs(xml))
        return

    children = extract_child_sitemaps(xml)
    found.child_sitemaps += len(children)
    logger.info("Sitemap index %s lists %d child sitemaps", url, len(children))
    if depth >= MAX_INDEX_DEPTH:
        logger.warning("Sitemap index nesting deeper than %d at %s, not descending", MAX_INDEX_DEPTH, url)
        return

    for child_url in children:
        try:
            child_xml = _get_xml(child_url, session)
        except FetchError as exc:
            logger.error("Failed to fetch child sitemap %s: %s", child_url, exc)
        else:
            _walk(child_url, child_xml, session, depth + 1, found)
        time.sleep(CHILD_FETCH_DELAY)


def discover_sitemap_urls(url: str, *, session: requests.Session | None = None) -> SitemapDiscovery:
    """Collect page URLs from a sitemap, following nested sitemap indexes.

    Failing child sitemaps are logged and skipped; a failing root raises
    :class:`FetchError`.  URLs are de-duplicated in first-seen order and
    anything that itself looks like a sitemap is dropped.
    """
    logger.info("Processing sitemap: %s", url)
    found = SitemapDiscovery()
    _walk(url, _get_xml(url, session), session, 0, found)

    seen: set[str] = set()
    pages = []
    for u in found.urls:
        if u not in seen and not is_sitemap_url(u):
            seen.add(u)
            pages.append(u)
    logger.info("Sitemap %s: %d URLs found, %d page URLs", url, len(found.urls), len(pages))
    return SitemapDiscovery(urls=pages, child_sitemaps=found.child_sitemaps)


# ── expansion ────────────────────────────────────────────────────────
def expand_sitemap(
    store: RowStoreBase,
    parent: KnowledgeSource,
    *,
    session: requests.Session | None = None,
) -> SitemapExpansion:
    """Replace *parent*'s children with one pending ``url`` row per page.

    Existing children (and their chunks) are deleted first so that
    re-processing a sitemap never duplicates rows.  All new children
    share a freshly generated ``batch_id``.
    """
    meta = parent.typed_metadata
    delete_children(store, parent.id)

    discovery = discover_sitemap_urls(parent.source, session=session)
    urls = filter_urls(
        discovery.urls,
        exclude_patterns=getattr(meta, "exclude_patterns", None),
        include_patterns=getattr(meta, "include_patterns", None),
        page_limit=getattr(meta, "page_limit", None),
    )
    filtered_count = len(discovery.urls) - len(urls)

    batch_id = str(uuid.uuid4())
    added_at = utcnow_iso()
    rows = [
        {
            "agent_id": parent.agent_id,
            "user_id": parent.user_id,
            "type": SourceType.URL.value,
            "source": url,
            "status": SourceStatus.PENDING.value,
            "metadata": {"parent_source_id": parent.id, "batch_id": batch_id, "added_at": added_at},
        }
        for url in urls
    ]

    inserted = 0
    for start in range(0, len(rows), INSERT_BATCH_SIZE):
        try:
            inserted += len(store.insert(SOURCES, rows[start : start + INSERT_BATCH_SIZE]))
        except RowStoreError as exc:
            logger.error("Failed to insert child batch %d: %s", start // INSERT_BATCH_SIZE + 1, exc)

    logger.info(
        "Created %d child sources for %s (batch %s, %d filtered out)", inserted, parent.id, batch_id, filtered_count
    )
    return SitemapExpansion(
        batch_id=batch_id,
        url_count=inserted,
        filtered_count=filtered_count,
        child_sitemaps=discovery.child_sitemaps,
    )
