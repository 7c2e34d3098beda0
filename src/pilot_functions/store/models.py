"""Row filters and domain models for the tables the functions touch."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow_iso() -> str:
    """Current UTC time as an ISO-8601 string (the format rows store)."""
    return datetime.now(timezone.utc).isoformat()


class Filter(BaseModel):
    """Declarative row filter understood by every row-store backend.

    Attributes
    ----------
    field:
        Column name.  JSON paths use ``->`` (e.g. ``"deployment_config->wordpress"``).
    operator:
        One of ``eq``, ``neq``, ``gt``, ``gte``, ``lt``, ``lte``, ``in``,
        ``is_null``, ``not_null``, ``contains``.  ``contains`` is JSON
        containment on a dict column (``metadata @> {...}``).
    value:
        Comparison value (a list for ``in``, a dict for ``contains``).
    """

    field: str
    operator: str = "eq"
    value: Any = None

    # -- helpers for common filters ------------------------------------------

    @classmethod
    def equals(cls, field: str, value: Any) -> Filter:
        return cls(field=field, operator="eq", value=value)

    @classmethod
    def not_equals(cls, field: str, value: Any) -> Filter:
        return cls(field=field, operator="neq", value=value)

    @classmethod
    def one_of(cls, field: str, values: list[Any]) -> Filter:
        return cls(field=field, operator="in", value=list(values))

    @classmethod
    def contains(cls, field: str, value: dict[str, Any]) -> Filter:
        return cls(field=field, operator="contains", value=value)

    @classmethod
    def older_than(cls, field: str, value: str) -> Filter:
        return cls(field=field, operator="lt", value=value)

    @classmethod
    def at_least(cls, field: str, value: Any) -> Filter:
        return cls(field=field, operator="gte", value=value)

    @classmethod
    def is_null(cls, field: str) -> Filter:
        return cls(field=field, operator="is_null")

    @classmethod
    def not_null(cls, field: str) -> Filter:
        return cls(field=field, operator="not_null")


# ── Knowledge sources ─────────────────────────────────────────────────


class SourceStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class SourceType(str, Enum):
    URL = "url"
    SITEMAP = "sitemap"
    PDF = "pdf"
    TEXT = "text"


class _SourceMetadataBase(BaseModel):
    """Fields every source variant may carry.

    Unknown keys are kept so that metadata written by other components
    survives a read-modify-write cycle.
    """

    model_config = ConfigDict(extra="allow")

    parent_source_id: str | None = None
    batch_id: str | None = None
    added_at: str | None = None
    processed_at: str | None = None
    chunks_count: int | None = None
    total_chunks: int | None = None
    content_length: int | None = None
    chunking_version: int | None = None
    embedding_model: str | None = None
    embedding_dimensions: int | None = None
    error: str | None = None
    failed_at: str | None = None


class UrlSourceMetadata(_SourceMetadataBase):
    pass


class SitemapSourceMetadata(_SourceMetadataBase):
    is_sitemap: bool = True
    include_patterns: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    page_limit: int | None = None
    urls_found: int | None = None
    urls_filtered: int | None = None
    child_sitemaps: int | None = None
    processed_count: int | None = None
    error_count: int | None = None
    remaining_count: int | None = None
    last_progress_at: str | None = None
    completed_at: str | None = None


class PdfSourceMetadata(_SourceMetadataBase):
    file_name: str | None = None
    page_count: int | None = None


class TextSourceMetadata(_SourceMetadataBase):
    title: str | None = None


SourceMetadata = Union[UrlSourceMetadata, SitemapSourceMetadata, PdfSourceMetadata, TextSourceMetadata]


def parse_source_metadata(source_type: str | None, raw: dict[str, Any] | None) -> SourceMetadata:
    """Validate a raw ``metadata`` blob into the variant for *source_type*.

    A ``url`` row whose metadata says ``is_sitemap`` (or an explicit
    ``sitemap`` row) is read as :class:`SitemapSourceMetadata`.
    """
    raw = dict(raw or {})
    if source_type == SourceType.SITEMAP.value or raw.get("is_sitemap"):
        return SitemapSourceMetadata.model_validate(raw)
    if source_type == SourceType.PDF.value:
        return PdfSourceMetadata.model_validate(raw)
    if source_type == SourceType.TEXT.value:
        return TextSourceMetadata.model_validate(raw)
    return UrlSourceMetadata.model_validate(raw)


class KnowledgeSource(BaseModel):
    """One ingestible content unit (URL, sitemap, PDF, pasted text)."""

    model_config = ConfigDict(extra="allow")

    id: str
    agent_id: str | None = None
    user_id: str | None = None
    type: str = SourceType.URL.value
    source: str = ""
    status: str = SourceStatus.PENDING.value
    content: str | None = None
    content_hash: str | None = None
    refresh_strategy: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None

    @property
    def typed_metadata(self) -> SourceMetadata:
        return parse_source_metadata(self.type, self.metadata)


class KnowledgeChunk(BaseModel):
    """A token-bounded slice of a source's text with its embedding."""

    source_id: str
    agent_id: str | None = None
    chunk_index: int
    content: str
    embedding: list[float]
    token_count: int
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ── CRM rows ──────────────────────────────────────────────────────────


class Conversation(BaseModel):
    agent_id: str
    user_id: str
    status: str = "active"
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Lead(BaseModel):
    user_id: str
    name: str
    email: str
    data: dict[str, Any] = Field(default_factory=dict)
    status: str = "new"
    conversation_id: str | None = None

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Location(BaseModel):
    """Local mirror of a WordPress "community" post."""

    agent_id: str
    user_id: str | None = None
    name: str
    wordpress_community_id: int
    wordpress_community_term_id: int | None = None
    wordpress_slug: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    phone: str | None = None
    email: str | None = None
    timezone: str = "America/New_York"
    metadata: dict[str, Any] | None = None

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Property(BaseModel):
    """Local mirror of a WordPress "home" listing."""

    agent_id: str
    knowledge_source_id: str | None = None
    location_id: str | None = None
    external_id: str
    wordpress_home_id: int
    community_name: str | None = None
    address: str | None = None
    lot_number: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    status: str = "available"
    price: int | None = None
    price_type: str = "sale"
    beds: float | None = None
    baths: float | None = None
    sqft: float | None = None
    year_built: int | None = None
    description: str | None = None
    features: list[str] = Field(default_factory=list)
    images: list[dict[str, Any]] = Field(default_factory=list)
    listing_url: str | None = None

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
