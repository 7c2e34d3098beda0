"""Semantic search over an agent's knowledge chunks."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from pilot_functions.errors import InvalidRequestError
from pilot_functions.ingestion.embedder import Embedder
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import SourceType

logger = logging.getLogger(__name__)


class SearchHit(BaseModel):
    """One matching chunk with provenance."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    source_id: str
    content: str
    chunk_index: int
    similarity: float
    source_name: str = ""
    source_type: str = ""
    source_url: str | None = None


def search_knowledge(
    store: RowStoreBase,
    embedder: Embedder,
    agent_id: str,
    query: str,
    *,
    match_threshold: float = 0.7,
    match_count: int = 5,
) -> list[SearchHit]:
    """Embed *query* and return the closest chunks for *agent_id*.

    Parameters
    ----------
    store:
        Row store exposing the ``search_knowledge_chunks`` procedure.
    embedder:
        Must produce vectors of the same model/dimensions as ingestion.
    agent_id:
        Restricts the search to one agent's knowledge.
    query:
        Free-text question.
    match_threshold:
        Minimum cosine similarity.
    match_count:
        Maximum number of hits.

    Returns
    -------
    list[SearchHit]
        Hits sorted by descending similarity.
    """
    if not agent_id or not query or not query.strip():
        raise InvalidRequestError("agentId and query are required")

    vector = embedder.embed(query)
    rows = store.rpc(
        "search_knowledge_chunks",
        {
            "p_agent_id": agent_id,
            "p_query_embedding": vector,
            "p_match_threshold": match_threshold,
            "p_match_count": match_count,
        },
    ) or []

    hits = []
    for row in rows:
        hit = SearchHit.model_validate(row)
        if hit.source_type == SourceType.URL.value:
            hit.source_url = hit.source_name
        hits.append(hit)
    hits.sort(key=lambda h: h.similarity, reverse=True)
    logger.info("Knowledge search for agent %s: %d hits", agent_id, len(hits[:match_count]))
    return hits[:match_count]
