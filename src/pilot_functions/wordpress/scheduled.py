"""``scheduled-wordpress-sync`` — cron fan-out over every connected agent."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from pilot_functions.errors import FunctionError
from pilot_functions.store.models import Filter
from pilot_functions.wordpress.service import AGENTS, WordPressSyncService, wordpress_config

logger = logging.getLogger(__name__)

INTERVAL_MINUTES = {
    "hourly_1": 60,
    "hourly_2": 120,
    "hourly_3": 180,
    "hourly_4": 240,
    "hourly_6": 360,
    "hourly_12": 720,
    "daily": 1440,
}


def interval_to_minutes(interval: str | None) -> int | None:
    """Minutes for a sync interval; ``None`` for manual or unknown values."""
    return INTERVAL_MINUTES.get(interval or "")


def is_sync_due(last_sync: str | None, interval_minutes: int, now: datetime | None = None) -> bool:
    if not last_sync:
        return True
    last = datetime.fromisoformat(last_sync.replace("Z", "+00:00"))
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) - last >= timedelta(minutes=interval_minutes)


def run_scheduled_sync(service: WordPressSyncService, now: datetime | None = None) -> dict[str, Any]:
    """Run every due community/home sync.

    Returns
    -------
    dict
        ``{"success", "communitySyncs", "homeSyncs", "errors", "duration_ms"}``.
    """
    started = time.monotonic()
    agents = service.store.select(
        AGENTS, [Filter.not_null("deployment_config->wordpress")], columns="id,user_id,deployment_config"
    )
    logger.info("Checking %d agents with WordPress configured", len(agents))

    community_syncs = 0
    home_syncs = 0
    errors: list[str] = []
    for agent in agents:
        config = wordpress_config(agent)
        if not config.get("site_url"):
            continue

        minutes = interval_to_minutes(config.get("community_sync_interval"))
        if minutes and is_sync_due(config.get("last_community_sync"), minutes, now):
            logger.info("Agent %s: community sync is due", agent["id"])
            try:
                service.communities("sync", agent["id"], scheduled=True)
                community_syncs += 1
            except FunctionError as exc:
                logger.error("Community sync failed for agent %s: %s", agent["id"], exc.message)
                errors.append(f"Agent {agent['id']} community sync: {exc.message}")

        minutes = interval_to_minutes(config.get("home_sync_interval"))
        if minutes and is_sync_due(config.get("last_home_sync"), minutes, now):
            logger.info("Agent %s: home sync is due", agent["id"])
            try:
                payload, status = service.homes("sync", agent["id"], scheduled=True)
                if status >= 400:
                    errors.append(f"Agent {agent['id']} home sync: {payload.get('error')}")
                else:
                    home_syncs += 1
            except FunctionError as exc:
                logger.error("Home sync failed for agent %s: %s", agent["id"], exc.message)
                errors.append(f"Agent {agent['id']} home sync: {exc.message}")

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Scheduled WordPress sync done in %dms: %d community, %d home, %d errors",
        duration_ms,
        community_syncs,
        home_syncs,
        len(errors),
    )
    return {
        "success": True,
        "communitySyncs": community_syncs,
        "homeSyncs": home_syncs,
        "errors": errors,
        "duration_ms": duration_ms,
    }
