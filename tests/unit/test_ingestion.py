"""Unit tests for single-source ingestion, refresh, search and cleanup.

Everything runs against :class:`InMemoryRowStore` with a deterministic
embedding client, so no network access is needed.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from pilot_functions.errors import FetchError, InvalidRequestError, NotFoundError
from pilot_functions.ingestion.cleanup import CHUNKS, SOURCES, cleanup_orphans, delete_source
from pilot_functions.ingestion.processor import CHUNKING_VERSION, SourceProcessor
from pilot_functions.ingestion.refresh import RefreshJob, hash_content
from pilot_functions.ingestion.search import search_knowledge
from pilot_functions.ingestion.service import IngestionService, sitemap_progress_message
from pilot_functions.ingestion.sitemap import SitemapExpansion

PAGE = "\n\n".join(f"Paragraph {i}. " + "Manufactured homes for sale. " * 40 for i in range(6))


def _source(store, **overrides) -> dict:
    row = {
        "agent_id": "agent-1",
        "user_id": "user-1",
        "type": "url",
        "source": "https://example.com/homes",
        "status": "pending",
        "refresh_strategy": "daily",
        "metadata": {},
    }
    row.update(overrides)
    return store.insert(SOURCES, row)[0]


# ──────────────────────────────────────────────────────────────────────
# SourceProcessor
# ──────────────────────────────────────────────────────────────────────


class TestSourceProcessor:
    def test_url_source_is_fetched_chunked_and_embedded(self, store, embedder) -> None:
        """A URL source ends ``ready`` with its chunks and bookkeeping metadata."""
        source = _source(store)
        processor = SourceProcessor(store, embedder, fetcher=lambda url: PAGE)

        result = processor.process_source(source["id"])

        row = store.get(SOURCES, source["id"])
        assert row["status"] == "ready"
        assert row["content"] == PAGE
        assert row["metadata"]["chunks_count"] == result.chunks == store.count(CHUNKS)
        assert row["metadata"]["chunking_version"] == CHUNKING_VERSION
        assert row["metadata"]["embedding_model"] == "test-embedding"
        assert result.chunks > 1
        chunk = store.first(CHUNKS)
        assert chunk["agent_id"] == "agent-1"
        assert len(chunk["embedding"]) == 4

    def test_reprocessing_does_not_accumulate_chunks(self, store, embedder) -> None:
        """Processing twice replaces the previous chunks."""
        source = _source(store)
        processor = SourceProcessor(store, embedder, fetcher=lambda url: PAGE)

        first = processor.process_source(source["id"])
        second = processor.process_source(source["id"])

        assert first.chunks == second.chunks
        assert store.count(CHUNKS) == second.chunks

    def test_text_source_is_not_fetched(self, store, embedder) -> None:
        fetcher = MagicMock()
        source = _source(store, type="text", source="Pasted", content="Office hours are 9 to 5.")

        result = SourceProcessor(store, embedder, fetcher=fetcher).process_source(source["id"])

        fetcher.assert_not_called()
        assert result.chunks == 1

    def test_fetch_failure_marks_error_and_keeps_metadata(self, store, embedder) -> None:
        """The error lands on the row and is re-raised for the HTTP layer."""
        source = _source(store, metadata={"added_at": "2024-01-01T00:00:00+00:00"})
        fetcher = MagicMock(side_effect=FetchError("Failed to fetch URL: 404 Not Found"))

        with pytest.raises(FetchError):
            SourceProcessor(store, embedder, fetcher=fetcher).process_source(source["id"])

        row = store.get(SOURCES, source["id"])
        assert row["status"] == "error"
        assert row["metadata"]["error"] == "Failed to fetch URL: 404 Not Found"
        assert row["metadata"]["added_at"] == "2024-01-01T00:00:00+00:00"

    def test_pdf_upload_is_unsupported(self, store, embedder) -> None:
        source = _source(store, type="pdf", source="uploads/brochure.pdf")
        with pytest.raises(Exception, match="PDF processing is not currently supported"):
            SourceProcessor(store, embedder).process_source(source["id"])
        assert store.get(SOURCES, source["id"])["status"] == "error"

    def test_missing_source(self, store, embedder) -> None:
        with pytest.raises(NotFoundError):
            SourceProcessor(store, embedder).process_source("nope")

    def test_failed_embeddings_are_skipped(self, store) -> None:
        """Chunks whose embedding failed are not stored but still counted in the total."""
        embedder = MagicMock()
        embedder.model = "m"
        embedder.dimensions = 4
        embedder.embed_batch.side_effect = lambda texts: [None] + [[1.0, 0.0, 0.0, 0.0]] * (len(texts) - 1)
        source = _source(store)

        result = SourceProcessor(store, embedder, fetcher=lambda url: PAGE).process_source(source["id"])

        assert result.chunks == result.total_chunks - 1
        assert store.count(CHUNKS) == result.chunks


# ──────────────────────────────────────────────────────────────────────
# IngestionService
# ──────────────────────────────────────────────────────────────────────


class TestIngestionService:
    def _service(self, store, embedder) -> tuple[IngestionService, MagicMock]:
        runner = MagicMock()
        processor = SourceProcessor(store, embedder, fetcher=lambda url: PAGE)
        return IngestionService(store, processor=processor, runner=runner), runner

    def test_source_id_required(self, store, embedder) -> None:
        service, _ = self._service(store, embedder)
        with pytest.raises(InvalidRequestError, match="sourceId is required"):
            service.process(None)

    def test_single_source_runs_in_foreground(self, store, embedder) -> None:
        service, runner = self._service(store, embedder)
        source = _source(store)

        body = service.process(source["id"])

        assert body["success"] is True
        assert body["chunks"] == store.count(CHUNKS)
        assert body["embeddingModel"] == "test-embedding"
        runner.run.assert_not_called()

    def test_continue_runs_the_next_slice(self, store, embedder) -> None:
        service, runner = self._service(store, embedder)

        body = service.process("parent", continue_batch=True, batch_id="b-1", agent_id="agent-1")

        assert body["continued"] is True
        runner.run.assert_called_once_with("parent", "b-1", "agent-1")

    def test_continue_uses_background_tasks(self, store, embedder) -> None:
        """With a BackgroundTasks object the slice is deferred, not run inline."""
        service, runner = self._service(store, embedder)
        background = MagicMock()

        service.process("parent", continue_batch=True, batch_id="b-1", agent_id="agent-1", background=background)

        runner.run.assert_not_called()
        background.add_task.assert_called_once()

    def test_resume_restarts_the_stored_batch(self, store, embedder) -> None:
        service, runner = self._service(store, embedder)
        parent = _source(store, source="https://example.com/sitemap.xml", metadata={"is_sitemap": True, "batch_id": "b-9"})

        body = service.process(parent["id"], resume=True)

        assert body["resumed"] is True
        runner.run.assert_called_once_with(parent["id"], "b-9", "agent-1")

    def test_sitemap_is_expanded_then_batched(self, store, embedder) -> None:
        service, runner = self._service(store, embedder)
        parent = _source(store, source="https://example.com/sitemap.xml")
        expansion = SitemapExpansion(batch_id="b-2", url_count=12, filtered_count=3, child_sitemaps=2)

        with patch("pilot_functions.ingestion.service.expand_sitemap", return_value=expansion):
            body = service.process(parent["id"])

        assert body["isSitemap"] is True
        assert body["batchId"] == "b-2"
        row = store.get(SOURCES, parent["id"])
        assert row["status"] == "processing"
        assert row["metadata"]["remaining_count"] == 12
        assert row["content"] == "Sitemap parsed. Processing 12 page URLs from 2 child sitemaps (3 filtered out)..."
        runner.run.assert_called_once_with(parent["id"], "b-2", "agent-1")

    def test_sitemap_failure_marks_parent(self, store, embedder) -> None:
        service, _ = self._service(store, embedder)
        parent = _source(store, source="https://example.com/sitemap.xml")

        with patch("pilot_functions.ingestion.service.expand_sitemap", side_effect=FetchError("Failed to fetch sitemap")):
            with pytest.raises(FetchError):
                service.process(parent["id"])

        assert store.get(SOURCES, parent["id"])["status"] == "error"

    def test_progress_message_omits_empty_parts(self) -> None:
        assert sitemap_progress_message(4, 0, 0) == "Sitemap parsed. Processing 4 page URLs..."


# ──────────────────────────────────────────────────────────────────────
# RefreshJob
# ──────────────────────────────────────────────────────────────────────


class TestRefreshJob:
    def test_unchanged_content_is_not_reprocessed(self, store) -> None:
        source = _source(store, content_hash=hash_content("same"))
        service = MagicMock(store=store)

        result = RefreshJob(service, fetcher=lambda url: "same").run()

        assert result["results"] == {"processed": 1, "changed": 0, "unchanged": 1, "errors": 0}
        service.process.assert_not_called()
        assert store.get(SOURCES, source["id"])["next_refresh_at"]

    def test_changed_content_is_reprocessed(self, store) -> None:
        source = _source(store, content_hash=hash_content("old"))
        service = MagicMock(store=store)

        result = RefreshJob(service, fetcher=lambda url: "new").run()

        assert result["results"]["changed"] == 1
        service.process.assert_called_once_with(source["id"], agent_id="agent-1")
        assert store.get(SOURCES, source["id"])["content_hash"] == hash_content("new")

    def test_manual_and_future_sources_are_skipped(self, store) -> None:
        _source(store, refresh_strategy="manual")
        _source(store, next_refresh_at="2999-01-01T00:00:00+00:00")
        due = _source(store, next_refresh_at="2000-01-01T00:00:00+00:00")
        service = MagicMock(store=store)

        assert [s["id"] for s in RefreshJob(service).due_sources()] == [due["id"]]

    def test_fetch_errors_are_counted(self, store) -> None:
        _source(store)
        service = MagicMock(store=store)
        fetcher = MagicMock(side_effect=FetchError("Failed to fetch URL: 500 Server Error"))

        result = RefreshJob(service, fetcher=fetcher).run()

        assert result["results"]["errors"] == 1

    def test_unexpected_error_does_not_stop_the_run(self, store) -> None:
        first = _source(store, source="https://example.com/a", content_hash=hash_content("same"))
        broken = _source(store, source="https://example.com/b")
        last = _source(store, source="https://example.com/c", content_hash=hash_content("old"))
        service = MagicMock(store=store)

        def fetcher(url: str) -> str:
            if url.endswith("/b"):
                raise requests.ConnectionError("connection reset")
            return "same" if url.endswith("/a") else "new"

        result = RefreshJob(service, fetcher=fetcher).run()

        assert result["results"] == {"processed": 3, "changed": 1, "unchanged": 1, "errors": 1}
        service.process.assert_called_once_with(last["id"], agent_id="agent-1")
        for row in (first, broken, last):
            assert store.get(SOURCES, row["id"])["next_refresh_at"]

    def test_single_source_not_found(self, store) -> None:
        with pytest.raises(NotFoundError):
            RefreshJob(MagicMock(store=store)).run("missing")


# ──────────────────────────────────────────────────────────────────────
# search & cleanup
# ──────────────────────────────────────────────────────────────────────


class TestSearch:
    def test_best_match_first_with_source_url(self, store, embedder) -> None:
        source = _source(store)
        store.insert(
            CHUNKS,
            [
                {"source_id": source["id"], "agent_id": "agent-1", "chunk_index": 0, "content": "exact",
                 "embedding": embedder.embed("pet policy")},
                {"source_id": source["id"], "agent_id": "agent-2", "chunk_index": 0, "content": "other agent",
                 "embedding": embedder.embed("pet policy")},
            ],
        )

        hits = search_knowledge(store, embedder, "agent-1", "pet policy", match_threshold=0.5)

        assert [h.content for h in hits] == ["exact"]
        assert hits[0].similarity == pytest.approx(1.0)
        assert hits[0].source_url == "https://example.com/homes"
        assert hits[0].model_dump(by_alias=True)["sourceUrl"] == "https://example.com/homes"

    def test_blank_query_rejected(self, store, embedder) -> None:
        with pytest.raises(InvalidRequestError):
            search_knowledge(store, embedder, "agent-1", "   ")


class TestCleanup:
    def test_delete_source_removes_children_and_chunks(self, store) -> None:
        parent = _source(store, source="https://example.com/sitemap.xml")
        child = _source(store, metadata={"parent_source_id": parent["id"]})
        store.insert(CHUNKS, [{"source_id": parent["id"]}, {"source_id": child["id"]}])

        assert delete_source(store, parent["id"]) == {"deleted": 1, "children": 1, "chunks": 1}
        assert store.count(SOURCES) == 0
        assert store.count(CHUNKS) == 0

    def test_orphans_are_removed(self, store) -> None:
        parent = _source(store)
        kept = _source(store, metadata={"parent_source_id": parent["id"]})
        orphan = _source(store, metadata={"parent_source_id": "deleted-parent"})
        store.insert(CHUNKS, {"source_id": orphan["id"]})

        assert cleanup_orphans(store) == {"orphans": 1, "chunks": 1}
        assert store.get(SOURCES, kept["id"]) is not None
        assert store.get(SOURCES, orphan["id"]) is None
