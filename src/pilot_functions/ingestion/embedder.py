"""Embedding generation — single place to swap providers.

Vectors come from an OpenAI-compatible ``/embeddings`` endpoint
(OpenRouter by default), so ``OpenAIEmbeddings`` works unchanged.  The
model returns more dimensions than the vector column stores; the
leading ``settings.embedding_dimensions`` components are kept
(Matryoshka truncation).
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from langchain_openai import OpenAIEmbeddings

from pilot_functions.config import settings
from pilot_functions.errors import UpstreamError

logger = logging.getLogger(__name__)

ATTRIBUTION_HEADERS = {"HTTP-Referer": "https://getpilot.io", "X-Title": "Pilot"}


class EmbeddingClient(Protocol):
    def embed_query(self, text: str) -> list[float]: ...


def get_embedding_client() -> OpenAIEmbeddings:
    """Return the configured embeddings client.

    Raises
    ------
    UpstreamError
        When ``OPENROUTER_API_KEY`` is not set.
    """
    if not settings.openrouter_api_key:
        raise UpstreamError("OPENROUTER_API_KEY not configured")
    return OpenAIEmbeddings(
        model=settings.embedding_model,
        api_key=settings.openrouter_api_key,
        base_url=settings.embedding_base_url,
        default_headers=ATTRIBUTION_HEADERS,
        # Non-OpenAI model: send raw strings, not tiktoken ids.
        check_embedding_ctx_length=False,
    )


class Embedder:
    """Generate chunk embeddings in rate-limited concurrent waves.

    Parameters
    ----------
    client:
        Anything with ``embed_query(text) -> list[float]``.  When *None*
        the OpenRouter-backed client is created lazily on first use.
    model:
        Model name recorded on chunks and sources.
    dimensions:
        Number of leading vector components to keep.
    batch_size:
        Chunks embedded concurrently per wave.
    delay_ms:
        Pause between waves.
    """

    def __init__(
        self,
        client: EmbeddingClient | None = None,
        *,
        model: str = settings.embedding_model,
        dimensions: int = settings.embedding_dimensions,
        batch_size: int = settings.embedding_batch_size,
        delay_ms: int = settings.embedding_batch_delay_ms,
    ) -> None:
        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = max(1, batch_size)
        self.delay_ms = delay_ms

    @property
    def client(self) -> EmbeddingClient:
        if self._client is None:
            self._client = get_embedding_client()
        return self._client

    def embed(self, text: str) -> list[float]:
        """Embed one text, truncated to :attr:`dimensions`."""
        try:
            vector = self.client.embed_query(text)
        except UpstreamError:
            raise
        except Exception as exc:
            raise UpstreamError(f"Embedding generation failed: {exc}") from exc
        return list(vector[: self.dimensions])

    def _embed_or_none(self, text: str) -> list[float] | None:
        try:
            return self.embed(text)
        except UpstreamError as exc:
            logger.error("Failed to generate embedding for chunk: %s", exc)
            return None

    def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        """Embed *texts* in waves of :attr:`batch_size`.

        A failed slot yields ``None`` instead of aborting the batch, so the
        result always lines up index-for-index with *texts*.
        """
        results: list[list[float] | None] = []
        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for start in range(0, len(texts), self.batch_size):
                wave = texts[start : start + self.batch_size]
                results.extend(pool.map(self._embed_or_none, wave))
                if start + self.batch_size < len(texts) and self.delay_ms:
                    time.sleep(self.delay_ms / 1000)
        return results
