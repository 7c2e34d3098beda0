"""Shared configuration loaded from environment / .env."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Row store (managed Postgres behind a PostgREST gateway)
    supabase_url: str = Field(default="", description="Base URL of the managed backend, e.g. https://xyz.supabase.co")
    supabase_service_role_key: str = Field(default="", description="Service-role key used for server-side row access")
    row_store: str = Field(
        default="rest",
        description="Row-store backend: 'rest' (PostgREST) or 'memory' (local development / tests)",
    )

    # Embeddings
    openrouter_api_key: str = ""
    embedding_base_url: str = "https://openrouter.ai/api/v1"
    embedding_model: str = "qwen/qwen3-embedding-8b"
    embedding_dimensions: int = Field(
        default=1024,
        description="Vectors longer than this are truncated (Matryoshka slice).",
    )
    embedding_batch_size: int = 5
    embedding_batch_delay_ms: int = 200

    # Ingestion pipeline
    user_agent: str = "Mozilla/5.0 (compatible; Pilot/1.0; +https://getpilot.io)"
    request_timeout: int = 30
    chunk_max_tokens: int = 500
    chunk_overlap_tokens: int = 50
    default_page_limit: int = 200
    urls_per_batch: int = 5
    max_processing_seconds: float = 60.0
    stalled_threshold_minutes: int = 5
    delay_between_urls: float = 1.0
    pdf_parsing_enabled: bool = False
    continuation_mode: str = Field(
        default="http",
        description=(
            "How sitemap batches resume: 'http' re-invokes process-knowledge-source, "
            "'queue' writes to the ingestion_jobs table drained by process-ingestion-queue."
        ),
    )

    # Email
    resend_api_key: str = ""
    resend_webhook_secret: str = ""
    email_from: str = "Pilot <team@getpilot.io>"
    app_url: str = "https://getpilot.io"

    # Web Push
    vapid_public_key: str = ""
    vapid_private_key: str = ""
    vapid_subject: str = ""

    # Billing
    stripe_secret_key: str = ""

    # Widget lead capture
    min_form_time_ms: int = 2000
    lead_rate_limit_per_minute: int = 5

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


# Process-wide settings, read once from the environment.
settings = Settings()
