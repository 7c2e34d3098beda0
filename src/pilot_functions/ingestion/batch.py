"""Self-continuing batch loop over a sitemap's child sources.

One invocation processes a bounded slice of a batch (``urls_per_batch``
URLs or ``max_seconds`` of wall time, whichever comes first), persists
progress counters on the parent row and hands off to a
:class:`~pilot_functions.ingestion.continuation.ContinuationTrigger` so
the next slice runs in a fresh invocation.  Children stuck in
``processing`` past the stall threshold (their invocation was killed)
are reaped to ``error`` at the start of every slice.

States of one run::

    CONTINUE  pending children remain; next slice triggered
    WAITING   nothing pending but some still processing; re-check triggered
    COMPLETE  nothing pending or processing; parent marked ready
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from pilot_functions.config import settings
from pilot_functions.ingestion.cleanup import SOURCES
from pilot_functions.ingestion.processor import SourceProcessor
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import Filter, SourceStatus, utcnow_iso

if TYPE_CHECKING:
    from pilot_functions.ingestion.continuation import ContinuationTrigger

logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    CONTINUE = "continue"
    WAITING = "waiting"
    COMPLETE = "complete"


@dataclass
class BatchOutcome:
    state: BatchState
    processed: int
    errors: int
    remaining: int


def completion_message(ready: int, failed: int) -> str:
    suffix = f", {failed} failed" if failed > 0 else ""
    return f"Sitemap processed. {ready} pages indexed successfully{suffix}."


class BatchRunner:
    """Drive one slice of a sitemap batch.

    Parameters
    ----------
    store:
        Row store.
    processor:
        Performs the per-URL ingestion.
    trigger:
        Schedules the next slice.
    urls_per_batch:
        Maximum children processed per invocation.
    max_seconds:
        Wall-clock budget per invocation.
    stalled_minutes:
        Age after which a ``processing`` child is considered abandoned.
    delay_between_urls:
        Pause (seconds) after each child.
    clock:
        Monotonic seconds, injectable for tests.
    now:
        Current UTC time, injectable for tests.
    """

    def __init__(
        self,
        store: RowStoreBase,
        processor: SourceProcessor,
        trigger: ContinuationTrigger,
        *,
        urls_per_batch: int = settings.urls_per_batch,
        max_seconds: float = settings.max_processing_seconds,
        stalled_minutes: int = settings.stalled_threshold_minutes,
        delay_between_urls: float = settings.delay_between_urls,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.store = store
        self.processor = processor
        self.trigger = trigger
        self.urls_per_batch = urls_per_batch
        self.max_seconds = max_seconds
        self.stalled_minutes = stalled_minutes
        self.delay_between_urls = delay_between_urls
        self._clock = clock
        self._now = now

    # -- counting helpers -----------------------------------------------------

    def _batch_filters(self, batch_id: str, status: SourceStatus) -> list[Filter]:
        # the parent row carries the same batch_id; only children count
        return [
            Filter.equals("status", status.value),
            Filter.contains("metadata", {"batch_id": batch_id}),
            Filter.not_null("metadata->parent_source_id"),
        ]

    def _count_batch(self, batch_id: str, status: SourceStatus) -> int:
        return self.store.count(SOURCES, self._batch_filters(batch_id, status))

    def _count_children(self, parent_id: str, status: SourceStatus | None = None) -> int:
        filters = [Filter.contains("metadata", {"parent_source_id": parent_id})]
        if status is not None:
            filters.append(Filter.equals("status", status.value))
        return self.store.count(SOURCES, filters)

    # -- steps ----------------------------------------------------------------

    def reap_stalled(self, batch_id: str) -> int:
        """Mark children abandoned in ``processing`` as errors."""
        cutoff = (self._now() - timedelta(minutes=self.stalled_minutes)).isoformat()
        stalled = self.store.select(
            SOURCES,
            [*self._batch_filters(batch_id, SourceStatus.PROCESSING), Filter.older_than("updated_at", cutoff)],
            columns="id,source",
        )
        for row in stalled:
            self.processor.mark_error(row["id"], f"Processing timed out after {self.stalled_minutes} minutes")
            logger.warning("Marked stalled source as error: %s", (row.get("source") or "")[:60])
        if stalled:
            logger.info("Recovered %d stalled sources in batch %s", len(stalled), batch_id)
        return len(stalled)

    def _claim_next(self, batch_id: str) -> dict[str, Any] | None:
        """Select the next pending child and move it to ``processing``.

        The update is conditioned on the row still being ``pending``; if
        another invocation got there first the next candidate is tried.
        """
        while True:
            candidate = self.store.first(
                SOURCES, self._batch_filters(batch_id, SourceStatus.PENDING), columns="id,source,agent_id"
            )
            if candidate is None:
                return None
            claimed = self.store.update(
                SOURCES,
                {"status": SourceStatus.PROCESSING.value},
                [Filter.equals("id", candidate["id"]), Filter.equals("status", SourceStatus.PENDING.value)],
            )
            if claimed:
                return candidate
            logger.debug("Source %s claimed elsewhere, trying next", candidate["id"])

    def _complete(self, parent_id: str, batch_id: str, parent_metadata: dict[str, Any]) -> tuple[int, int]:
        ready = self._count_children(parent_id, SourceStatus.READY)
        failed = self._count_children(parent_id, SourceStatus.ERROR)
        metadata = {
            **parent_metadata,
            "is_sitemap": True,
            "batch_id": batch_id,
            "urls_found": self._count_children(parent_id),
            "processed_count": ready,
            "error_count": failed,
            "remaining_count": 0,
            "completed_at": utcnow_iso(),
        }
        self.store.update_by_id(
            SOURCES,
            parent_id,
            {"status": SourceStatus.READY.value, "content": completion_message(ready, failed), "metadata": metadata},
        )
        logger.info("Batch %s complete: %d processed, %d errors", batch_id, ready, failed)
        return ready, failed

    # -- entry point ----------------------------------------------------------

    def run(self, parent_id: str, batch_id: str, agent_id: str) -> BatchOutcome:
        """Process one slice of *batch_id* and decide what happens next."""
        started = self._clock()
        logger.info("Processing batch %s for parent %s", batch_id, parent_id)

        errors = self.reap_stalled(batch_id)
        parent = self.store.get(SOURCES, parent_id, columns="metadata") or {}
        parent_metadata: dict[str, Any] = parent.get("metadata") or {}

        processed = 0
        handled = 0
        while True:
            elapsed = self._clock() - started
            if elapsed > self.max_seconds:
                logger.info("Time limit reached (%.1fs), continuing in next invocation", elapsed)
                break
            if handled >= self.urls_per_batch:
                logger.info("Batch limit reached (%d URLs), continuing in next invocation", handled)
                break

            child = self._claim_next(batch_id)
            if child is None:
                break

            logger.info("Processing: %s", child["source"][:80])
            result = self.processor.process_url_child(child)
            if result.success:
                processed += 1
            else:
                errors += 1
            handled += 1
            if self.delay_between_urls:
                time.sleep(self.delay_between_urls)

        remaining = self._count_batch(batch_id, SourceStatus.PENDING)
        in_flight = self._count_batch(batch_id, SourceStatus.PROCESSING) if remaining == 0 else 0

        if remaining == 0 and in_flight == 0:
            ready, failed = self._complete(parent_id, batch_id, parent_metadata)
            return BatchOutcome(state=BatchState.COMPLETE, processed=ready, errors=failed, remaining=0)

        processed_total = (parent_metadata.get("processed_count") or 0) + processed
        error_total = (parent_metadata.get("error_count") or 0) + errors
        self.store.update_by_id(
            SOURCES,
            parent_id,
            {
                "metadata": {
                    **parent_metadata,
                    "is_sitemap": True,
                    "batch_id": batch_id,
                    "urls_found": self._count_children(parent_id),
                    "processed_count": processed_total,
                    "error_count": error_total,
                    "remaining_count": remaining,
                    "last_progress_at": utcnow_iso(),
                }
            },
        )
        logger.info("Progress: %d processed, %d errors, %d remaining", processed_total, error_total, remaining)

        state = BatchState.CONTINUE if remaining else BatchState.WAITING
        if state is BatchState.WAITING:
            logger.info("%d sources still processing, triggering re-check", in_flight)
        self.trigger.schedule(parent_id, batch_id, agent_id)
        return BatchOutcome(state=state, processed=processed_total, errors=error_total, remaining=remaining)
