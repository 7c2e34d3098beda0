"""Unit tests for sitemap parsing, filtering and expansion."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from pilot_functions.errors import FetchError
from pilot_functions.ingestion.cleanup import CHUNKS, SOURCES
from pilot_functions.ingestion.sitemap import (
    discover_sitemap_urls,
    expand_sitemap,
    extract_child_sitemaps,
    filter_urls,
    is_sitemap_index,
    is_sitemap_url,
    parse_sitemap_locs,
)
from pilot_functions.store.models import KnowledgeSource

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/</loc></url>
  <url><loc>https://example.com/about</loc></url>
  <url><loc> https://example.com/blog/first-post </loc></url>
  <url><loc>/relative/ignored</loc></url>
</urlset>"""

INDEX = """<sitemapindex>
  <sitemap><loc>https://example.com/pages.xml</loc></sitemap>
  <sitemap><loc>https://example.com/posts.xml</loc></sitemap>
</sitemapindex>"""


def _response(text: str, ok: bool = True, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status
    resp.reason = "OK" if ok else "Not Found"
    resp.text = text
    return resp


# ──────────────────────────────────────────────────────────────────────
# parsing
# ──────────────────────────────────────────────────────────────────────


class TestParsing:
    def test_locs_are_trimmed_and_absolute(self) -> None:
        """Relative locs are dropped and whitespace is stripped."""
        assert parse_sitemap_locs(URLSET) == [
            "https://example.com/",
            "https://example.com/about",
            "https://example.com/blog/first-post",
        ]

    def test_index_detection(self) -> None:
        assert is_sitemap_index(INDEX)
        assert not is_sitemap_index(URLSET)
        assert extract_child_sitemaps(INDEX) == ["https://example.com/pages.xml", "https://example.com/posts.xml"]

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://example.com/sitemap.xml", True),
            ("https://example.com/wp-sitemap-posts-1.xml", True),
            ("https://example.com/page-sitemap", True),
            ("https://example.com/about", False),
        ],
    )
    def test_is_sitemap_url(self, url: str, expected: bool) -> None:
        assert is_sitemap_url(url) is expected


# ──────────────────────────────────────────────────────────────────────
# filtering
# ──────────────────────────────────────────────────────────────────────


class TestFilterUrls:
    URLS = [f"https://example.com/page-{i}" for i in range(8)] + [
        "https://example.com/blog/a",
        "https://example.com/blog/b",
        "https://example.com/tag/news",
    ]

    def test_exclude_glob(self) -> None:
        """``/blog/*`` removes every blog URL."""
        result = filter_urls(self.URLS, exclude_patterns=["/blog/*"])
        assert not any("/blog/" in u for u in result)
        assert len(result) == 9

    def test_include_glob(self) -> None:
        """Include patterns keep only matching URLs."""
        assert filter_urls(self.URLS, include_patterns=["/blog/*"]) == [
            "https://example.com/blog/a",
            "https://example.com/blog/b",
        ]

    def test_zero_limit_keeps_nothing(self) -> None:
        """An explicit limit of 0 is honoured rather than replaced by the default."""
        assert filter_urls(self.URLS, page_limit=0) == []
        assert len(filter_urls(self.URLS, page_limit=None)) == len(self.URLS)

    def test_exclude_then_limit(self) -> None:
        """The limit keeps the first N URLs after filtering, in order."""
        result = filter_urls(self.URLS, exclude_patterns=["/blog/*", "/tag/*"], page_limit=5)
        assert result == [f"https://example.com/page-{i}" for i in range(5)]

    def test_dots_are_literal(self) -> None:
        """Regex metacharacters in a pattern are matched literally."""
        urls = ["https://example.com/file.pdf", "https://example.com/filexpdf"]
        assert filter_urls(urls, exclude_patterns=["*.pdf"]) == ["https://example.com/filexpdf"]


# ──────────────────────────────────────────────────────────────────────
# discovery
# ──────────────────────────────────────────────────────────────────────


class TestDiscovery:
    @patch("pilot_functions.ingestion.sitemap.time.sleep")
    def test_index_is_followed_and_deduplicated(self, _sleep: MagicMock) -> None:
        """Child sitemaps are fetched and duplicate pages collapse."""
        pages = "<urlset><url><loc>https://example.com/a</loc></url><url><loc>https://example.com/b</loc></url></urlset>"
        posts = "<urlset><url><loc>https://example.com/b</loc></url><url><loc>https://example.com/c</loc></url></urlset>"
        session = MagicMock()
        session.get.side_effect = [_response(INDEX), _response(pages), _response(posts)]

        found = discover_sitemap_urls("https://example.com/sitemap.xml", session=session)

        assert found.urls == ["https://example.com/a", "https://example.com/b", "https://example.com/c"]
        assert found.child_sitemaps == 2

    @patch("pilot_functions.ingestion.sitemap.time.sleep")
    def test_failing_child_is_skipped(self, _sleep: MagicMock) -> None:
        """A child sitemap that 404s does not abort discovery."""
        pages = "<urlset><url><loc>https://example.com/a</loc></url></urlset>"
        session = MagicMock()
        session.get.side_effect = [_response(INDEX), _response(pages), _response("", ok=False, status=404)]

        found = discover_sitemap_urls("https://example.com/sitemap.xml", session=session)

        assert found.urls == ["https://example.com/a"]

    def test_failing_root_raises(self) -> None:
        session = MagicMock()
        session.get.return_value = _response("", ok=False, status=404)
        with pytest.raises(FetchError):
            discover_sitemap_urls("https://example.com/sitemap.xml", session=session)


# ──────────────────────────────────────────────────────────────────────
# expansion
# ──────────────────────────────────────────────────────────────────────


class TestExpandSitemap:
    def _parent(self, store, **metadata) -> KnowledgeSource:
        row = store.insert(
            SOURCES,
            {
                "agent_id": "agent-1",
                "user_id": "user-1",
                "type": "url",
                "source": "https://example.com/sitemap.xml",
                "status": "pending",
                "metadata": {"is_sitemap": True, **metadata},
            },
        )[0]
        return KnowledgeSource.model_validate(row)

    def test_children_share_a_batch(self, store) -> None:
        """One pending child per filtered URL, all tagged with the same batch."""
        session = MagicMock()
        session.get.return_value = _response(URLSET)
        parent = self._parent(store, exclude_patterns=["/blog/*"])

        expansion = expand_sitemap(store, parent, session=session)

        children = [c for c in store.select(SOURCES) if c["id"] != parent.id]
        assert expansion.url_count == 2
        assert expansion.filtered_count == 1
        assert {c["source"] for c in children} == {"https://example.com/", "https://example.com/about"}
        assert all(c["status"] == "pending" for c in children)
        assert {c["metadata"]["batch_id"] for c in children} == {expansion.batch_id}
        assert all(c["metadata"]["parent_source_id"] == parent.id for c in children)

    def test_reexpansion_replaces_children(self, store) -> None:
        """Expanding twice leaves one generation of children and no stale chunks."""
        session = MagicMock()
        session.get.return_value = _response(URLSET)
        parent = self._parent(store)

        first = expand_sitemap(store, parent, session=session)
        old_child = next(c for c in store.select(SOURCES) if c["id"] != parent.id)
        store.insert(CHUNKS, {"source_id": old_child["id"], "content": "stale", "chunk_index": 0})

        second = expand_sitemap(store, parent, session=session)

        assert first.batch_id != second.batch_id
        assert store.count(SOURCES) == 1 + second.url_count
        assert store.count(CHUNKS) == 0
