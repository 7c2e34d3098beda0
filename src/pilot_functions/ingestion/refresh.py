"""Scheduled re-fetch of knowledge sources with hash-based change detection."""

from __future__ import annotations

import hashlib
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pilot_functions.errors import FunctionError, NotFoundError
from pilot_functions.ingestion.cleanup import SOURCES
from pilot_functions.ingestion.fetcher import fetch_url_content
from pilot_functions.ingestion.service import IngestionService
from pilot_functions.store.models import Filter, SourceStatus, utcnow_iso

logger = logging.getLogger(__name__)

REFRESH_HOURS = {
    "hourly_1": 1,
    "hourly_2": 2,
    "hourly_3": 3,
    "hourly_4": 4,
    "hourly_6": 6,
    "hourly_12": 12,
    "daily": 24,
}
DEFAULT_REFRESH_HOURS = 24
REFRESH_BATCH_LIMIT = 10

_COLUMNS = "id,source,type,content_hash,agent_id,metadata,refresh_strategy"


def hash_content(content: str) -> str:
    """Hex SHA-256 of *content*."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def next_refresh_at(strategy: str | None, now: datetime | None = None) -> str:
    hours = REFRESH_HOURS.get(strategy or "", DEFAULT_REFRESH_HOURS)
    return ((now or datetime.now(timezone.utc)) + timedelta(hours=hours)).isoformat()


class RefreshJob:
    """Re-fetch due sources and re-ingest only those whose content changed.

    Parameters
    ----------
    service:
        Ingestion entry point used to re-process changed sources.
    fetcher:
        ``url -> text`` callable.
    """

    def __init__(self, service: IngestionService, fetcher: Callable[[str], str] = fetch_url_content) -> None:
        self.service = service
        self.store = service.store
        self.fetcher = fetcher

    def due_sources(self) -> list[dict[str, Any]]:
        """Sources with an automatic strategy whose next refresh is unset or past."""
        automatic = Filter.not_equals("refresh_strategy", "manual")
        never = self.store.select(
            SOURCES, [automatic, Filter.is_null("next_refresh_at")], columns=_COLUMNS, limit=REFRESH_BATCH_LIMIT
        )
        due = self.store.select(
            SOURCES,
            [automatic, Filter(field="next_refresh_at", operator="lte", value=utcnow_iso())],
            columns=_COLUMNS,
            limit=REFRESH_BATCH_LIMIT,
        )
        seen: set[str] = set()
        merged = []
        for row in never + due:
            if row["id"] not in seen:
                seen.add(row["id"])
                merged.append(row)
        return merged[:REFRESH_BATCH_LIMIT]

    def refresh_source(self, source: dict[str, Any]) -> bool:
        """Return ``True`` when the content changed and was re-ingested."""
        content = self.fetcher(source["source"])
        new_hash = hash_content(content)
        if source.get("content_hash") == new_hash:
            logger.info("Content unchanged for source %s", source["id"])
            return False

        logger.info("Content changed for source %s, re-processing", source["id"])
        self.store.update_by_id(
            SOURCES,
            source["id"],
            {"content": content, "content_hash": new_hash, "status": SourceStatus.PROCESSING.value},
        )
        self.service.process(source["id"], agent_id=source.get("agent_id"))
        return True

    def run(self, source_id: str | None = None) -> dict[str, Any]:
        """Refresh one source (manual) or every due source (cron).

        Returns
        -------
        dict
            ``{"success", "duration", "results": {processed, changed, unchanged, errors}}``.
        """
        started = time.monotonic()
        if source_id:
            row = self.store.get(SOURCES, source_id, columns=_COLUMNS)
            if row is None:
                raise NotFoundError(f"Source not found: {source_id}")
            sources = [row]
        else:
            sources = self.due_sources()
        logger.info("Refreshing %d knowledge sources", len(sources))

        results = {"processed": 0, "changed": 0, "unchanged": 0, "errors": 0}
        for source in sources:
            results["processed"] += 1
            try:
                changed = self.refresh_source(source)
            except FunctionError as exc:
                logger.error("Error refreshing source %s: %s", source["id"], exc.message)
                results["errors"] += 1
            except Exception:
                logger.exception("Unexpected error refreshing source %s", source["id"])
                results["errors"] += 1
            else:
                results["changed" if changed else "unchanged"] += 1

            self.store.update_by_id(
                SOURCES,
                source["id"],
                {"last_fetched_at": utcnow_iso(), "next_refresh_at": next_refresh_at(source.get("refresh_strategy"))},
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Refresh job completed in %dms: %s", duration_ms, results)
        return {"success": True, "duration": duration_ms, "results": results}
