"""Single-source ingestion: fetch, chunk, embed, store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from pilot_functions.config import settings
from pilot_functions.errors import FunctionError, NotFoundError, UnsupportedContentError
from pilot_functions.ingestion.chunker import chunk_text
from pilot_functions.ingestion.cleanup import CHUNKS, SOURCES, delete_chunks
from pilot_functions.ingestion.embedder import Embedder
from pilot_functions.ingestion.fetcher import fetch_url_content
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import (
    KnowledgeChunk,
    KnowledgeSource,
    SourceStatus,
    SourceType,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

CHUNKING_VERSION = 2

PDF_UPLOAD_NOT_SUPPORTED = (
    "PDF processing is not currently supported. "
    "Please delete this source and try adding a URL or text content instead."
)


@dataclass
class ProcessResult:
    source_id: str
    chunks: int
    total_chunks: int
    embedding_model: str


@dataclass
class ChildResult:
    source_id: str
    success: bool
    error: str | None = None


class SourceProcessor:
    """Turns one knowledge source into stored, embedded chunks.

    Parameters
    ----------
    store:
        Row store holding ``knowledge_sources`` / ``knowledge_chunks``.
    embedder:
        Chunk embedder; a default :class:`Embedder` when *None*.
    fetcher:
        ``url -> text`` callable, :func:`fetch_url_content` by default.
    """

    def __init__(
        self,
        store: RowStoreBase,
        embedder: Embedder | None = None,
        fetcher: Callable[[str], str] = fetch_url_content,
    ) -> None:
        self.store = store
        self.embedder = embedder or Embedder()
        self.fetcher = fetcher

    # -- public API -----------------------------------------------------------

    def load(self, source_id: str) -> KnowledgeSource:
        row = self.store.get(SOURCES, source_id)
        if row is None:
            raise NotFoundError("Knowledge source not found")
        return KnowledgeSource.model_validate(row)

    def process_source(self, source_id: str) -> ProcessResult:
        """Ingest a url/text/pdf source in the foreground.

        On failure the row is flagged ``error`` and the exception is
        re-raised so the caller can answer with its status code.
        """
        try:
            source = self.load(source_id)
            self._set_status(source_id, SourceStatus.PROCESSING)
            content = source.content or ""

            if source.type == SourceType.URL.value and not content:
                content = self.fetcher(source.source)
            elif source.type == SourceType.PDF.value and not content:
                content = self._fetch_pdf(source)

            if not content:
                raise FunctionError("No content to process - the URL may be empty or inaccessible")
            logger.info("Content for %s: %d characters", source_id, len(content))

            if not source.content:
                self.store.update_by_id(SOURCES, source_id, {"content": content})

            return self._index(source_id, source.agent_id, content)
        except NotFoundError:
            raise
        except Exception as exc:
            self.mark_error(source_id, str(exc) or type(exc).__name__)
            raise

    def process_url_child(self, source: dict[str, Any]) -> ChildResult:
        """Ingest one sitemap child.  Never raises; failures land on the row."""
        source_id = source["id"]
        try:
            self._set_status(source_id, SourceStatus.PROCESSING)
            content = self.fetcher(source["source"])
            if not content:
                raise FunctionError("No content to process")
            self.store.update_by_id(SOURCES, source_id, {"content": content})
            self._index(source_id, source.get("agent_id"), content)
            return ChildResult(source_id=source_id, success=True)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Failed to process %s: %s", source.get("source", source_id), message)
            self.mark_error(source_id, message)
            return ChildResult(source_id=source_id, success=False, error=message)

    def mark_error(self, source_id: str, message: str) -> None:
        """Flag *source_id* as failed, keeping its existing metadata."""
        try:
            self._merge_metadata(
                source_id,
                {"error": message, "failed_at": utcnow_iso()},
                status=SourceStatus.ERROR,
            )
        except FunctionError:
            logger.exception("Failed to update error status for %s", source_id)

    # -- internals ------------------------------------------------------------

    def _fetch_pdf(self, source: KnowledgeSource) -> str:
        if settings.pdf_parsing_enabled and source.source.startswith("http"):
            return fetch_url_content(source.source, allow_pdf=True)
        raise UnsupportedContentError(PDF_UPLOAD_NOT_SUPPORTED)

    def _set_status(self, source_id: str, status: SourceStatus) -> None:
        self.store.update_by_id(SOURCES, source_id, {"status": status.value})

    def _merge_metadata(self, source_id: str, values: dict[str, Any], *, status: SourceStatus) -> None:
        current = self.store.get(SOURCES, source_id, columns="metadata") or {}
        metadata = {**(current.get("metadata") or {}), **values}
        self.store.update_by_id(SOURCES, source_id, {"status": status.value, "metadata": metadata})

    def _index(self, source_id: str, agent_id: str | None, content: str) -> ProcessResult:
        delete_chunks(self.store, [source_id])

        documents = chunk_text(content, settings.chunk_max_tokens, settings.chunk_overlap_tokens)
        logger.info("Created %d chunks for %s", len(documents), source_id)
        embeddings = self.embedder.embed_batch([d.page_content for d in documents])

        rows = [
            KnowledgeChunk(
                source_id=source_id,
                agent_id=agent_id,
                chunk_index=doc.metadata["chunk_index"],
                content=doc.page_content,
                embedding=embedding,
                token_count=doc.metadata["token_count"],
                metadata={"original_length": len(doc.page_content), "embedding_model": self.embedder.model},
            ).to_row()
            for doc, embedding in zip(documents, embeddings)
            if embedding is not None
        ]
        stored = len(self.store.insert(CHUNKS, rows)) if rows else 0

        self._merge_metadata(
            source_id,
            {
                "processed_at": utcnow_iso(),
                "chunks_count": stored,
                "total_chunks": len(documents),
                "content_length": len(content),
                "chunking_version": CHUNKING_VERSION,
                "embedding_model": self.embedder.model,
                "embedding_dimensions": self.embedder.dimensions,
            },
            status=SourceStatus.READY,
        )
        logger.info("Knowledge source %s processed: %d/%d chunks stored", source_id, stored, len(documents))
        return ProcessResult(
            source_id=source_id,
            chunks=stored,
            total_chunks=len(documents),
            embedding_model=self.embedder.model,
        )
