"""Thin client for the WordPress REST API (``/wp-json/wp/v2``)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from pilot_functions.config import settings
from pilot_functions.errors import UpstreamError

logger = logging.getLogger(__name__)

PER_PAGE = 100

_API_SUFFIXES = (
    "/wp-json/wp/v2/community",
    "/wp-json/wp/v2/communities",
    "/wp-json/wp/v2/home",
    "/wp-json/wp/v2/homes",
    "/wp-json/wp/v2/property",
    "/wp-json/wp/v2/properties",
    "/wp-json/wp/v2/listing",
    "/wp-json/wp/v2/listings",
    "/wp-json/wp/v2",
    "/wp-json",
)


def normalize_site_url(url: str) -> str:
    """Scheme-qualified site root without a trailing slash or REST API path."""
    normalized = url.strip()
    if not normalized:
        return ""
    if not normalized.startswith(("http://", "https://")):
        normalized = f"https://{normalized}"
    normalized = normalized.rstrip("/")
    for suffix in _API_SUFFIXES:
        if normalized.endswith(suffix):
            normalized = normalized[: -len(suffix)]
            break
    return normalized


@dataclass
class ConnectionTest:
    success: bool
    message: str
    count: int | None = None
    endpoint: str | None = None


class WordPressClient:
    """Read-only access to one WordPress site.

    Parameters
    ----------
    site_url:
        Site root (normalised with :func:`normalize_site_url`).
    session:
        Optional ``requests.Session``.
    """

    def __init__(self, site_url: str, *, session: requests.Session | None = None) -> None:
        self.site_url = normalize_site_url(site_url)
        self._http = session or requests
        self._headers = {"Accept": "application/json", "User-Agent": "Pilot/1.0"}

    def _get(self, path: str, params: dict[str, Any] | None = None) -> requests.Response:
        return self._http.get(
            f"{self.site_url}{path}", params=params, headers=self._headers, timeout=settings.request_timeout
        )

    # -- collections ----------------------------------------------------------

    def fetch_collection(self, endpoint: str, *, modified_after: str | None = None) -> list[dict[str, Any]]:
        """All items of a post-type collection, following ``X-WP-TotalPages``.

        A 400 after the first page means we paged past the end.
        """
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            params: dict[str, Any] = {"per_page": PER_PAGE, "page": page, "_embed": ""}
            if modified_after:
                params["modified_after"] = modified_after
            logger.info("Fetching WordPress /%s page %d", endpoint, page)
            try:
                resp = self._get(f"/wp-json/wp/v2/{endpoint}", params)
            except requests.RequestException as exc:
                raise UpstreamError(f"WordPress API request failed: {exc}") from exc

            if not resp.ok:
                if resp.status_code == 400 and page > 1:
                    break
                raise UpstreamError(f"WordPress API error: {resp.status_code} for endpoint /{endpoint}")

            data = resp.json()
            if not isinstance(data, list) or not data:
                break
            items.extend(data)

            total_pages = int(resp.headers.get("X-WP-TotalPages", "1") or 1)
            if page >= total_pages:
                break
            page += 1
        return items

    def fetch_taxonomy_terms(self, taxonomies: list[str]) -> dict[str, int]:
        """``slug -> term id`` from the first taxonomy that has any terms."""
        for taxonomy in taxonomies:
            terms: dict[str, int] = {}
            page = 1
            while True:
                try:
                    resp = self._get(f"/wp-json/wp/v2/{taxonomy}", {"per_page": PER_PAGE, "page": page})
                except requests.RequestException:
                    break
                if not resp.ok:
                    break
                data = resp.json()
                if not isinstance(data, list) or not data:
                    break
                for term in data:
                    if term.get("slug") and term.get("id"):
                        terms[term["slug"]] = term["id"]
                if page >= int(resp.headers.get("X-WP-TotalPages", "1") or 1):
                    break
                page += 1
            if terms:
                logger.info("Found taxonomy terms at /%s: %d terms", taxonomy, len(terms))
                return terms
        return {}

    # -- discovery ------------------------------------------------------------

    def fetch_routes(self) -> dict[str, Any]:
        """The ``routes`` map of the REST API index, or ``{}``."""
        try:
            resp = self._get("/wp-json")
        except requests.RequestException as exc:
            logger.error("Error reading REST API index of %s: %s", self.site_url, exc)
            return {}
        if not resp.ok:
            logger.info("Could not fetch /wp-json of %s: %s", self.site_url, resp.status_code)
            return {}
        return (resp.json() or {}).get("routes", {}) or {}

    def fetch_sample(self, endpoint: str) -> dict[str, Any] | None:
        """First item of a collection, used for schema sniffing."""
        try:
            resp = self._get(f"/wp-json/wp/v2/{endpoint}", {"per_page": 1})
        except requests.RequestException:
            return None
        if not resp.ok:
            return None
        data = resp.json()
        return data[0] if isinstance(data, list) and data else None

    def test_connection(self, endpoint: str) -> ConnectionTest:
        try:
            resp = self._get(f"/wp-json/wp/v2/{endpoint}", {"per_page": 1})
        except requests.RequestException as exc:
            return ConnectionTest(success=False, message=f"Connection failed: {exc}")

        if not resp.ok:
            if resp.status_code == 404:
                return ConnectionTest(
                    success=False,
                    message=f'Endpoint "/{endpoint}" not found. '
                    "Try a different custom post type slug or use auto-detect.",
                )
            return ConnectionTest(success=False, message=f"WordPress API returned status {resp.status_code}")

        if not isinstance(resp.json(), list):
            return ConnectionTest(success=False, message="Invalid response format from WordPress API")
        total = int(resp.headers.get("X-WP-Total", "0") or 0)
        return ConnectionTest(success=True, message=f"Found {total} items at /{endpoint}", count=total, endpoint=endpoint)

    def probe_endpoint(self, candidates: list[str], *, label: str = "homes/properties") -> ConnectionTest:
        """First candidate slug that answers 2xx."""
        for slug in candidates:
            try:
                resp = self._get(f"/wp-json/wp/v2/{slug}", {"per_page": 1})
            except requests.RequestException:
                continue
            if resp.ok:
                data = resp.json()
                total = resp.headers.get("X-WP-Total")
                count = int(total) if total else (len(data) if isinstance(data, list) else 0)
                return ConnectionTest(
                    success=True, message=f"Found {label} endpoint at /wp-json/wp/v2/{slug}", count=count, endpoint=slug
                )
        return ConnectionTest(
            success=False,
            message=f"No {label} endpoint found. WordPress may not have it configured.",
        )
