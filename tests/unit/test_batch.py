"""Unit tests for the sitemap batch loop and its continuation triggers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from pilot_functions.errors import FetchError
from pilot_functions.ingestion.batch import BatchOutcome, BatchRunner, BatchState, completion_message
from pilot_functions.ingestion.cleanup import SOURCES
from pilot_functions.ingestion.continuation import (
    JOBS,
    HttpContinuationTrigger,
    QueueContinuationTrigger,
    drain_queue,
)
from pilot_functions.ingestion.processor import SourceProcessor

BATCH = "batch-1"


def _fetch(url: str) -> str:
    if "broken" in url:
        raise FetchError("Failed to fetch URL: 404 Not Found")
    return f"Content of {url}."


def _sitemap(store, urls: list[str], status: str = "pending", **child_fields) -> dict:
    parent = store.insert(
        SOURCES,
        {
            "agent_id": "agent-1",
            "type": "url",
            "source": "https://example.com/sitemap.xml",
            "status": "processing",
            "metadata": {"is_sitemap": True, "batch_id": BATCH, "processed_count": 0, "error_count": 0},
        },
    )[0]
    store.insert(
        SOURCES,
        [
            {
                "agent_id": "agent-1",
                "type": "url",
                "source": url,
                "status": status,
                "metadata": {"parent_source_id": parent["id"], "batch_id": BATCH},
                **child_fields,
            }
            for url in urls
        ],
    )
    return parent


def _runner(store, embedder, trigger, **kwargs) -> BatchRunner:
    processor = SourceProcessor(store, embedder, fetcher=_fetch)
    kwargs.setdefault("delay_between_urls", 0)
    return BatchRunner(store, processor, trigger, **kwargs)


# ──────────────────────────────────────────────────────────────────────
# BatchRunner
# ──────────────────────────────────────────────────────────────────────


class TestBatchRunner:
    def test_slice_stops_at_url_limit_and_continues(self, store, embedder) -> None:
        """A partial slice persists progress and schedules the next one."""
        urls = [f"https://example.com/p{i}" for i in range(3)]
        parent = _sitemap(store, urls)
        trigger = MagicMock()

        outcome = _runner(store, embedder, trigger, urls_per_batch=2).run(parent["id"], BATCH, "agent-1")

        assert outcome == BatchOutcome(state=BatchState.CONTINUE, processed=2, errors=0, remaining=1)
        trigger.schedule.assert_called_once_with(parent["id"], BATCH, "agent-1")
        meta = store.get(SOURCES, parent["id"])["metadata"]
        assert meta["processed_count"] == 2
        assert meta["remaining_count"] == 1
        assert meta["last_progress_at"]

    def test_last_slice_completes_the_parent(self, store, embedder) -> None:
        """When nothing is pending or processing the parent becomes ready."""
        urls = ["https://example.com/a", "https://example.com/b", "https://example.com/broken"]
        parent = _sitemap(store, urls)
        trigger = MagicMock()
        runner = _runner(store, embedder, trigger, urls_per_batch=2)

        runner.run(parent["id"], BATCH, "agent-1")
        outcome = runner.run(parent["id"], BATCH, "agent-1")

        assert outcome.state is BatchState.COMPLETE
        assert trigger.schedule.call_count == 1
        row = store.get(SOURCES, parent["id"])
        assert row["status"] == "ready"
        assert row["content"] == "Sitemap processed. 2 pages indexed successfully, 1 failed."
        assert row["metadata"]["processed_count"] == 2
        assert row["metadata"]["error_count"] == 1
        assert row["metadata"]["remaining_count"] == 0
        assert row["metadata"]["completed_at"]

    def test_time_budget_ends_the_slice(self, store, embedder) -> None:
        """Once the wall-clock budget is spent no further child is claimed."""
        parent = _sitemap(store, [f"https://example.com/p{i}" for i in range(3)])
        ticks = iter([0.0, 0.0, 100.0])
        runner = _runner(store, embedder, MagicMock(), max_seconds=50, clock=lambda: next(ticks))

        outcome = runner.run(parent["id"], BATCH, "agent-1")

        assert outcome.state is BatchState.CONTINUE
        assert outcome.remaining == 2

    def test_stalled_children_are_reaped(self, store, embedder) -> None:
        """A child stuck in processing past the threshold is marked as an error."""
        old = (datetime.now(timezone.utc) - timedelta(minutes=30)).isoformat()
        parent = _sitemap(store, ["https://example.com/stuck"], status="processing", updated_at=old)

        outcome = _runner(store, embedder, MagicMock(), stalled_minutes=5).run(parent["id"], BATCH, "agent-1")

        assert outcome.state is BatchState.COMPLETE
        stuck = next(r for r in store.select(SOURCES) if r["id"] != parent["id"])
        assert stuck["status"] == "error"
        assert stuck["metadata"]["error"] == "Processing timed out after 5 minutes"
        assert store.get(SOURCES, parent["id"])["content"].endswith("0 pages indexed successfully, 1 failed.")

    def test_recent_processing_child_waits(self, store, embedder) -> None:
        """A child still legitimately in flight keeps the batch waiting."""
        parent = _sitemap(store, ["https://example.com/busy"], status="processing")
        trigger = MagicMock()

        outcome = _runner(store, embedder, trigger).run(parent["id"], BATCH, "agent-1")

        assert outcome.state is BatchState.WAITING
        trigger.schedule.assert_called_once()

    def test_claim_skips_rows_taken_elsewhere(self, store, embedder) -> None:
        """If the conditional update matches nothing, the next candidate is tried."""
        _sitemap(store, ["https://example.com/a", "https://example.com/b"])
        runner = _runner(store, embedder, MagicMock())
        original_update = store.update
        raced: list[str] = []

        def racing_update(table, values, filters):
            if not raced:
                # another invocation claims the first candidate in between
                id_filter = [f for f in filters if f.field == "id"]
                raced.append(id_filter[0].value)
                original_update(table, {"status": "processing"}, id_filter)
            return original_update(table, values, filters)

        store.update = racing_update
        child = runner._claim_next(BATCH)

        assert child is not None
        assert child["id"] != raced[0]
        assert store.get(SOURCES, child["id"])["status"] == "processing"

    @pytest.mark.parametrize(
        "ready, failed, message",
        [
            (3, 0, "Sitemap processed. 3 pages indexed successfully."),
            (3, 2, "Sitemap processed. 3 pages indexed successfully, 2 failed."),
        ],
    )
    def test_completion_message(self, ready: int, failed: int, message: str) -> None:
        assert completion_message(ready, failed) == message


# ──────────────────────────────────────────────────────────────────────
# continuation triggers
# ──────────────────────────────────────────────────────────────────────


class TestHttpContinuationTrigger:
    def test_posts_continue_request(self) -> None:
        session = MagicMock()
        session.post.return_value.ok = True
        trigger = HttpContinuationTrigger("https://project.example.co/", "service-key", session=session)

        trigger.schedule("parent", BATCH, "agent-1")

        args, kwargs = session.post.call_args
        assert args[0] == "https://project.example.co/functions/v1/process-knowledge-source"
        assert kwargs["json"] == {"sourceId": "parent", "batchId": BATCH, "agentId": "agent-1", "continue": True}
        assert kwargs["headers"]["Authorization"] == "Bearer service-key"

    def test_missing_configuration_skips_request(self) -> None:
        session = MagicMock()
        HttpContinuationTrigger("", "", session=session).schedule("parent", BATCH, "agent-1")
        session.post.assert_not_called()

    def test_transport_errors_are_swallowed(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("down")
        HttpContinuationTrigger("https://x.example.co", "k", session=session).schedule("parent", BATCH, "agent-1")


class TestQueueContinuation:
    def test_schedule_keeps_one_queued_job_per_batch(self, store) -> None:
        trigger = QueueContinuationTrigger(store)
        trigger.schedule("parent", BATCH, "agent-1")
        trigger.schedule("parent", BATCH, "agent-1")

        jobs = store.select(JOBS)
        assert len(jobs) == 1
        assert jobs[0]["status"] == "queued"

    def test_drain_runs_due_jobs(self, store) -> None:
        QueueContinuationTrigger(store).schedule("parent", BATCH, "agent-1")
        runner = MagicMock()
        runner.run.return_value = BatchOutcome(state=BatchState.COMPLETE, processed=1, errors=0, remaining=0)

        summary = drain_queue(store, runner)

        assert summary == {"claimed": 1, "completed": 1, "failed": 0}
        runner.run.assert_called_once_with("parent", BATCH, "agent-1")
        job = store.first(JOBS)
        assert job["status"] == "done"
        assert job["outcome"] == "complete"
        assert job["attempts"] == 1

    def test_future_jobs_are_not_drained(self, store) -> None:
        QueueContinuationTrigger(store, delay_seconds=3600).schedule("parent", BATCH, "agent-1")
        runner = MagicMock()

        assert drain_queue(store, runner) == {"claimed": 0, "completed": 0, "failed": 0}
        runner.run.assert_not_called()

    def test_failed_run_is_recorded(self, store) -> None:
        QueueContinuationTrigger(store).schedule("parent", BATCH, "agent-1")
        runner = MagicMock()
        runner.run.side_effect = RuntimeError("boom")

        assert drain_queue(store, runner)["failed"] == 1
        job = store.first(JOBS)
        assert job["status"] == "failed"
        assert job["last_error"] == "boom"
