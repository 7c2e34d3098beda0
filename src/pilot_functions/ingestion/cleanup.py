"""Deletion helpers: a source's chunks, its sitemap children, orphans."""

from __future__ import annotations

import logging

from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import Filter

logger = logging.getLogger(__name__)

SOURCES = "knowledge_sources"
CHUNKS = "knowledge_chunks"


def delete_chunks(store: RowStoreBase, source_ids: list[str]) -> int:
    """Remove every chunk belonging to *source_ids*."""
    if not source_ids:
        return 0
    return store.delete(CHUNKS, [Filter.one_of("source_id", source_ids)])


def delete_children(store: RowStoreBase, parent_id: str) -> int:
    """Delete the child sources of a sitemap parent, chunks first."""
    children = store.select(SOURCES, [Filter.contains("metadata", {"parent_source_id": parent_id})], columns="id")
    if not children:
        return 0
    child_ids = [c["id"] for c in children]
    logger.info("Deleting %d existing child sources of %s", len(child_ids), parent_id)
    delete_chunks(store, child_ids)
    return store.delete(SOURCES, [Filter.one_of("id", child_ids)])


def delete_source(store: RowStoreBase, source_id: str) -> dict[str, int]:
    """Delete a source together with its children and all their chunks."""
    children = delete_children(store, source_id)
    chunks = delete_chunks(store, [source_id])
    deleted = store.delete(SOURCES, [Filter.equals("id", source_id)])
    logger.info("Deleted source %s (%d children, %d chunks)", source_id, children, chunks)
    return {"deleted": deleted, "children": children, "chunks": chunks}


def cleanup_orphans(store: RowStoreBase, agent_id: str | None = None) -> dict[str, int]:
    """Delete child sources whose sitemap parent no longer exists.

    Returns
    -------
    dict
        ``{"orphans": <sources removed>, "chunks": <chunks removed>}``.
    """
    filters = [Filter.not_null("metadata->parent_source_id")]
    if agent_id:
        filters.append(Filter.equals("agent_id", agent_id))
    children = store.select(SOURCES, filters, columns="id,metadata")

    parent_ids = sorted({c["metadata"]["parent_source_id"] for c in children})
    existing = (
        {p["id"] for p in store.select(SOURCES, [Filter.one_of("id", parent_ids)], columns="id")}
        if parent_ids
        else set()
    )
    orphan_ids = [c["id"] for c in children if c["metadata"]["parent_source_id"] not in existing]
    if not orphan_ids:
        return {"orphans": 0, "chunks": 0}

    chunks = delete_chunks(store, orphan_ids)
    removed = store.delete(SOURCES, [Filter.one_of("id", orphan_ids)])
    logger.info("Removed %d orphaned child sources (%d chunks)", removed, chunks)
    return {"orphans": removed, "chunks": chunks}
