"""Action dispatch for ``sync-wordpress-communities`` and ``sync-wordpress-homes``.

Handlers return ``(payload, status_code)`` because connection tests
answer 400 with a normal body rather than an error.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from pilot_functions.errors import ForbiddenError, InvalidRequestError, NotFoundError, UnauthorizedError
from pilot_functions.store.base import Row, RowStoreBase
from pilot_functions.store.models import Filter, utcnow_iso
from pilot_functions.wordpress.client import WordPressClient, normalize_site_url
from pilot_functions.wordpress.discovery import discover_endpoints
from pilot_functions.wordpress.sync import LOCATIONS, sync_communities, sync_homes

logger = logging.getLogger(__name__)

AGENTS = "agents"
TEAM_MEMBERS = "team_members"

HOME_ENDPOINTS = ["home", "homes", "property", "properties"]
HOME_TEST_ENDPOINTS = HOME_ENDPOINTS + ["listing", "listings"]

Response = tuple[dict[str, Any], int]


def wordpress_config(agent: Row) -> dict[str, Any]:
    return dict((agent.get("deployment_config") or {}).get("wordpress") or {})


class WordPressSyncService:
    """Agent-scoped WordPress actions.

    Parameters
    ----------
    store:
        Row store.
    session:
        Optional ``requests.Session`` handed to every :class:`WordPressClient`.
    """

    def __init__(self, store: RowStoreBase, *, session: requests.Session | None = None) -> None:
        self.store = store
        self.session = session

    # -- agent access ---------------------------------------------------------

    def load_agent(self, agent_id: str | None) -> Row:
        if not agent_id:
            raise InvalidRequestError("agentId is required")
        agent = self.store.get(AGENTS, agent_id, columns="id,user_id,deployment_config")
        if agent is None:
            raise NotFoundError("Agent not found")
        return agent

    def check_access(self, agent: Row, caller_id: str | None) -> None:
        """Owner or a team member of the owner."""
        if not caller_id:
            raise UnauthorizedError("Unauthorized")
        if agent.get("user_id") == caller_id:
            return
        member = self.store.first(
            TEAM_MEMBERS,
            [Filter.equals("owner_id", agent.get("user_id")), Filter.equals("member_id", caller_id)],
            columns="id",
        )
        if member is None:
            raise ForbiddenError("Access denied")

    def _authorize(self, agent_id: str | None, caller_id: str | None, scheduled: bool) -> Row:
        agent = self.load_agent(agent_id)
        if scheduled:
            logger.info("Scheduled sync for agent %s, skipping caller check", agent["id"])
        else:
            self.check_access(agent, caller_id)
        return agent

    def save_config(self, agent: Row, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge *updates* into ``deployment_config.wordpress`` and persist."""
        deployment = dict(agent.get("deployment_config") or {})
        config = {**wordpress_config(agent), **updates}
        deployment["wordpress"] = config
        self.store.update_by_id(AGENTS, agent["id"], {"deployment_config": deployment})
        agent["deployment_config"] = deployment
        return config

    def _client(self, site_url: str) -> WordPressClient:
        return WordPressClient(site_url, session=self.session)

    # -- communities ----------------------------------------------------------

    def communities(
        self,
        action: str,
        agent_id: str | None,
        *,
        caller_id: str | None = None,
        scheduled: bool = False,
        site_url: str | None = None,
        endpoint: str | None = None,
        community_endpoint: str | None = None,
        home_endpoint: str | None = None,
        community_sync_interval: str | None = None,
        home_sync_interval: str | None = None,
        delete_locations: bool = False,
        modified_after: str | None = None,
    ) -> Response:
        agent = self._authorize(agent_id, caller_id, scheduled)
        config = wordpress_config(agent)

        if action == "test":
            if not site_url:
                raise InvalidRequestError("Site URL is required")
            test = self._client(site_url).test_connection(endpoint or community_endpoint or "community")
            payload = {"success": test.success, "message": test.message, "count": test.count, "endpoint": test.endpoint}
            return payload, 200 if test.success else 400

        if action == "discover":
            if not site_url:
                raise InvalidRequestError("Site URL is required")
            found = discover_endpoints(self._client(site_url))
            return {"success": True, **found}, 200

        if action == "save":
            updates: dict[str, Any] = {}
            if site_url is not None:
                updates["site_url"] = normalize_site_url(site_url)
            for key, value in (
                ("community_endpoint", community_endpoint),
                ("home_endpoint", home_endpoint),
                ("community_sync_interval", community_sync_interval),
                ("home_sync_interval", home_sync_interval),
            ):
                if value is not None:
                    updates[key] = value
            saved = self.save_config(agent, updates)
            return {"success": True, "message": "WordPress settings saved", "config": saved}, 200

        if action == "sync":
            url = site_url or config.get("site_url")
            if not url:
                raise InvalidRequestError("No WordPress site URL configured")
            client = self._client(url)
            slug = endpoint or community_endpoint or config.get("community_endpoint") or "community"
            result = sync_communities(self.store, client, agent, slug, modified_after=modified_after)
            self.save_config(
                agent,
                {
                    "site_url": client.site_url,
                    "community_endpoint": slug,
                    "last_community_sync": utcnow_iso(),
                    "community_count": result.total,
                },
            )
            logger.info("Community sync for agent %s: %s", agent["id"], result)
            return result.to_dict(), 200

        if action == "disconnect":
            deleted = 0
            if delete_locations:
                deleted = self.store.delete(
                    LOCATIONS, [Filter.equals("agent_id", agent["id"]), Filter.not_null("wordpress_community_id")]
                )
            deployment = dict(agent.get("deployment_config") or {})
            deployment.pop("wordpress", None)
            self.store.update_by_id(AGENTS, agent["id"], {"deployment_config": deployment})
            return {"success": True, "message": "WordPress disconnected", "deletedLocations": deleted}, 200

        raise InvalidRequestError('Invalid action. Use "test", "sync", "save", "discover", or "disconnect"')

    # -- homes ----------------------------------------------------------------

    def homes(
        self,
        action: str,
        agent_id: str | None,
        *,
        caller_id: str | None = None,
        scheduled: bool = False,
        site_url: str | None = None,
        endpoint: str | None = None,
        modified_after: str | None = None,
    ) -> Response:
        agent = self._authorize(agent_id, caller_id, scheduled)
        config = wordpress_config(agent)

        if action == "test":
            if not site_url:
                raise InvalidRequestError("Site URL is required")
            client = self._client(site_url)
            test = client.test_connection(endpoint) if endpoint else client.probe_endpoint(HOME_TEST_ENDPOINTS)
            payload = {"success": test.success, "message": test.message, "count": test.count, "endpoint": test.endpoint}
            return payload, 200 if test.success else 400

        if action == "sync":
            url = site_url or config.get("site_url")
            if not url:
                raise InvalidRequestError("No WordPress site URL configured")
            client = self._client(url)
            slug = endpoint or config.get("home_endpoint")
            if not slug:
                probe = client.probe_endpoint(HOME_ENDPOINTS)
                if not probe.success:
                    return {"success": False, "error": probe.message}, 400
                slug = probe.endpoint
            result = sync_homes(self.store, client, agent, slug, modified_after=modified_after)
            self.save_config(
                agent,
                {"home_endpoint": slug, "last_home_sync": utcnow_iso(), "home_count": result.total},
            )
            logger.info("Home sync for agent %s: %s", agent["id"], result)
            return result.to_dict(), 200

        raise InvalidRequestError('Invalid action. Use "test" or "sync"')
