"""How a sitemap batch gets its next slice.

Two interchangeable mechanisms:

* :class:`HttpContinuationTrigger` — re-invokes ``process-knowledge-source``
  over HTTP with ``continue: true`` (fire-and-forget).
* :class:`QueueContinuationTrigger` — records a due job in the
  ``ingestion_jobs`` table; the ``process-ingestion-queue`` cron route
  drains it with :func:`drain_queue`.  A crashed slice leaves its job
  behind instead of silently ending the chain.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import requests

from pilot_functions.config import settings
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import Filter, utcnow_iso

if TYPE_CHECKING:
    from pilot_functions.ingestion.batch import BatchRunner

logger = logging.getLogger(__name__)

JOBS = "ingestion_jobs"


class ContinuationTrigger(ABC):
    """Schedules the next slice of a sitemap batch."""

    @abstractmethod
    def schedule(self, parent_id: str, batch_id: str, agent_id: str) -> None: ...


class HttpContinuationTrigger(ContinuationTrigger):
    """POST ``{sourceId, batchId, agentId, continue: true}`` back to ourselves.

    Failures are logged, not raised: a dropped continuation is recovered
    by a later ``resume`` request and the stalled-row reaper.
    """

    def __init__(
        self,
        base_url: str = settings.supabase_url,
        service_key: str = settings.supabase_service_role_key,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self._http = session or requests

    def schedule(self, parent_id: str, batch_id: str, agent_id: str) -> None:
        if not self.base_url or not self.service_key:
            logger.error("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY for continuation")
            return

        logger.info("Triggering next batch for %s", batch_id)
        try:
            resp = self._http.post(
                f"{self.base_url}/functions/v1/process-knowledge-source",
                json={"sourceId": parent_id, "batchId": batch_id, "agentId": agent_id, "continue": True},
                headers={"Authorization": f"Bearer {self.service_key}"},
                timeout=settings.request_timeout,
            )
        except requests.RequestException as exc:
            logger.error("Error triggering next batch: %s", exc)
            return
        if not resp.ok:
            logger.error("Failed to trigger next batch: %s %s", resp.status_code, resp.text)
        else:
            logger.info("Next batch triggered successfully")


class QueueContinuationTrigger(ContinuationTrigger):
    """Persist the continuation as a row in ``ingestion_jobs``."""

    def __init__(self, store: RowStoreBase, *, delay_seconds: float = 0.0) -> None:
        self.store = store
        self.delay_seconds = delay_seconds

    def schedule(self, parent_id: str, batch_id: str, agent_id: str) -> None:
        run_after = (datetime.now(timezone.utc) + timedelta(seconds=self.delay_seconds)).isoformat()
        queued = [Filter.equals("batch_id", batch_id), Filter.equals("status", "queued")]
        if self.store.update(JOBS, {"run_after": run_after}, queued):
            logger.info("Refreshed queued job for batch %s", batch_id)
            return
        self.store.insert(
            JOBS,
            {
                "parent_source_id": parent_id,
                "batch_id": batch_id,
                "agent_id": agent_id,
                "status": "queued",
                "run_after": run_after,
                "attempts": 0,
            },
        )
        logger.info("Queued next slice of batch %s", batch_id)


def drain_queue(store: RowStoreBase, runner: BatchRunner, *, limit: int = 5) -> dict[str, Any]:
    """Run due ``ingestion_jobs`` rows through *runner*.

    A job is claimed by flipping ``queued`` to ``running`` (conditioned
    on its current status) so overlapping drains skip each other's work.

    Returns
    -------
    dict
        ``{"claimed": n, "completed": n, "failed": n}``.
    """
    due = store.select(
        JOBS,
        [Filter.equals("status", "queued"), Filter(field="run_after", operator="lte", value=utcnow_iso())],
        order="run_after",
        limit=limit,
    )
    summary = {"claimed": 0, "completed": 0, "failed": 0}
    for job in due:
        claimed = store.update(
            JOBS,
            {"status": "running", "attempts": (job.get("attempts") or 0) + 1, "started_at": utcnow_iso()},
            [Filter.equals("id", job["id"]), Filter.equals("status", "queued")],
        )
        if not claimed:
            continue
        summary["claimed"] += 1
        try:
            outcome = runner.run(job["parent_source_id"], job["batch_id"], job["agent_id"])
        except Exception as exc:
            logger.exception("Queued batch %s failed", job["batch_id"])
            store.update_by_id(JOBS, job["id"], {"status": "failed", "last_error": str(exc)})
            summary["failed"] += 1
            continue
        store.update_by_id(JOBS, job["id"], {"status": "done", "outcome": outcome.state.value})
        summary["completed"] += 1
    return summary


def get_trigger(store: RowStoreBase) -> ContinuationTrigger:
    """Return the trigger selected by ``settings.continuation_mode``."""
    if settings.continuation_mode == "queue":
        return QueueContinuationTrigger(store)
    return HttpContinuationTrigger()
