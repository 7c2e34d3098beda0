"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from pilot_functions.ingestion.embedder import Embedder
from pilot_functions.store.memory_store import InMemoryRowStore


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


class FakeEmbeddingClient:
    """Deterministic stand-in for ``OpenAIEmbeddings``."""

    def __init__(self, dimensions: int = 8) -> None:
        self.dimensions = dimensions
        self.calls: list[str] = []

    def embed_query(self, text: str) -> list[float]:
        self.calls.append(text)
        seed = sum(ord(c) for c in text) or 1
        return [float((seed * (i + 1)) % 97) + 1.0 for i in range(self.dimensions)]


@pytest.fixture
def store() -> InMemoryRowStore:
    return InMemoryRowStore()


@pytest.fixture
def embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def embedder(embedding_client: FakeEmbeddingClient) -> Embedder:
    return Embedder(embedding_client, model="test-embedding", dimensions=4, batch_size=2, delay_ms=0)
