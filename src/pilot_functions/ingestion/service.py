"""``process-knowledge-source`` request handling.

Dispatches one request to the right pipeline:

* ``continue`` — next slice of a running sitemap batch (background);
* ``resume`` — restart the batch of a stalled sitemap parent (background);
* a ``url`` source that looks like a sitemap — expand into child rows,
  then start the batch (background);
* anything else — single-source ingestion in the foreground.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import BackgroundTasks

from pilot_functions.errors import InvalidRequestError
from pilot_functions.ingestion.batch import BatchRunner
from pilot_functions.ingestion.cleanup import SOURCES
from pilot_functions.ingestion.continuation import ContinuationTrigger, get_trigger
from pilot_functions.ingestion.processor import SourceProcessor
from pilot_functions.ingestion.sitemap import expand_sitemap, is_sitemap_url
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import KnowledgeSource, SitemapSourceMetadata, SourceStatus, SourceType, utcnow_iso

logger = logging.getLogger(__name__)


def sitemap_progress_message(url_count: int, child_sitemaps: int, filtered: int) -> str:
    parts = [f"Sitemap parsed. Processing {url_count} page URLs"]
    if child_sitemaps > 0:
        parts.append(f" from {child_sitemaps} child sitemaps")
    if filtered > 0:
        parts.append(f" ({filtered} filtered out)")
    parts.append("...")
    return "".join(parts)


class IngestionService:
    """Entry point shared by the HTTP route, the refresh job and the queue.

    Parameters
    ----------
    store:
        Row store.
    processor:
        Single-source pipeline; built from *store* when *None*.
    trigger:
        Continuation mechanism; :func:`get_trigger` when *None*.
    runner:
        Batch runner; built from the above when *None*.
    """

    def __init__(
        self,
        store: RowStoreBase,
        processor: SourceProcessor | None = None,
        trigger: ContinuationTrigger | None = None,
        runner: BatchRunner | None = None,
    ) -> None:
        self.store = store
        self.processor = processor or SourceProcessor(store)
        self.runner = runner or BatchRunner(store, self.processor, trigger or get_trigger(store))

    # -- background -----------------------------------------------------------

    def _run_batch(self, parent_id: str, batch_id: str, agent_id: str) -> None:
        try:
            outcome = self.runner.run(parent_id, batch_id, agent_id)
            logger.info("Batch %s slice finished: %s", batch_id, outcome.state.value)
        except Exception:
            logger.exception("Background batch processing failed for %s", batch_id)

    def _start_batch(
        self, background: BackgroundTasks | None, parent_id: str, batch_id: str, agent_id: str
    ) -> None:
        if background is None:
            self._run_batch(parent_id, batch_id, agent_id)
        else:
            background.add_task(self._run_batch, parent_id, batch_id, agent_id)

    # -- entry point ----------------------------------------------------------

    def process(
        self,
        source_id: str | None,
        *,
        resume: bool = False,
        continue_batch: bool = False,
        batch_id: str | None = None,
        agent_id: str | None = None,
        background: BackgroundTasks | None = None,
    ) -> dict[str, Any]:
        """Handle one ``process-knowledge-source`` request body.

        Without *background* the batch slice runs inline, which is what
        the refresh job and tests want.
        """
        if not source_id:
            raise InvalidRequestError("sourceId is required")

        if continue_batch and batch_id and agent_id:
            logger.info("Continuing batch %s", batch_id)
            self._start_batch(background, source_id, batch_id, agent_id)
            return {
                "success": True,
                "sourceId": source_id,
                "continued": True,
                "batchId": batch_id,
                "message": "Batch continuation started",
            }

        source = self.processor.load(source_id)
        logger.info("Source %s type=%s source=%s", source_id, source.type, source.source[:100])
        metadata = source.typed_metadata

        if resume and isinstance(metadata, SitemapSourceMetadata) and metadata.batch_id:
            logger.info("Resuming stalled sitemap %s, batch %s", source_id, metadata.batch_id)
            self._start_batch(background, source_id, metadata.batch_id, source.agent_id)
            return {
                "success": True,
                "sourceId": source_id,
                "resumed": True,
                "message": "Resuming sitemap processing...",
            }

        if source.type in (SourceType.URL.value, SourceType.SITEMAP.value) and is_sitemap_url(source.source):
            return self._process_sitemap(source, background)

        result = self.processor.process_source(source_id)
        return {
            "success": True,
            "sourceId": source_id,
            "chunks": result.chunks,
            "totalChunks": result.total_chunks,
            "embeddingModel": result.embedding_model,
        }

    def _process_sitemap(self, source: KnowledgeSource, background: BackgroundTasks | None) -> dict[str, Any]:
        logger.info("Detected sitemap URL %s", source.source)
        try:
            expansion = expand_sitemap(self.store, source)
            self.store.update_by_id(
                SOURCES,
                source.id,
                {
                    "status": SourceStatus.PROCESSING.value,
                    "content": sitemap_progress_message(
                        expansion.url_count, expansion.child_sitemaps, expansion.filtered_count
                    ),
                    "metadata": {
                        **source.metadata,
                        "processed_at": utcnow_iso(),
                        "is_sitemap": True,
                        "urls_found": expansion.url_count,
                        "urls_filtered": expansion.filtered_count,
                        "child_sitemaps": expansion.child_sitemaps,
                        "batch_id": expansion.batch_id,
                        "processed_count": 0,
                        "error_count": 0,
                        "remaining_count": expansion.url_count,
                    },
                },
            )
        except Exception as exc:
            self.processor.mark_error(source.id, str(exc) or type(exc).__name__)
            raise

        logger.info(
            "Sitemap parsed: %d URLs queued (%d filtered), starting batch %s",
            expansion.url_count,
            expansion.filtered_count,
            expansion.batch_id,
        )
        self._start_batch(background, source.id, expansion.batch_id, source.agent_id)
        return {
            "success": True,
            "sourceId": source.id,
            "isSitemap": True,
            "urlsFound": expansion.url_count,
            "urlsFiltered": expansion.filtered_count,
            "childSitemaps": expansion.child_sitemaps,
            "batchId": expansion.batch_id,
            "message": f"Processing {expansion.url_count} pages with self-chaining batches...",
        }
