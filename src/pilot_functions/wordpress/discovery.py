"""Auto-detection of community and home post types on a WordPress site."""

from __future__ import annotations

import logging
import re
from typing import Any

from pilot_functions.wordpress.client import WordPressClient
from pilot_functions.wordpress.extraction import CORE_TYPES, EndpointClassification, classify_endpoint

logger = logging.getLogger(__name__)

_ROUTE_RE = re.compile(r"^/wp/v2/([a-z0-9_-]+)$", re.IGNORECASE)

COMMUNITY_FALLBACK = ["community", "communities", "location", "locations"]
HOME_FALLBACK = ["home", "homes", "property", "properties"]


def _endpoint(slug: str, classification: EndpointClassification) -> dict[str, Any]:
    return {
        "slug": slug,
        "name": slug.replace("-", " ").replace("_", " "),
        "rest_base": slug,
        "confidence": classification.confidence,
        "matched_keywords": classification.matched_keywords,
    }


def custom_post_types(routes: dict[str, Any]) -> list[str]:
    """Non-core ``/wp/v2/<slug>`` collection routes, in index order."""
    slugs = []
    for route in routes:
        match = _ROUTE_RE.match(route)
        if match and match.group(1).lower() not in CORE_TYPES:
            slugs.append(match.group(1))
    return slugs


def discover_endpoints(client: WordPressClient) -> dict[str, list[dict[str, Any]]]:
    """Classify the site's custom post types.

    Walks the REST index, samples one item of each custom type to read
    its ACF keys, and scores it with :func:`classify_endpoint`.  When the
    index is unavailable (or yields nothing) the common slugs are probed
    directly.

    Returns
    -------
    dict
        ``{"communities": [...], "homes": [...]}``, each list sorted by
        descending confidence.
    """
    found: dict[str, list[dict[str, Any]]] = {"communities": [], "homes": []}

    for slug in custom_post_types(client.fetch_routes()):
        acf = (client.fetch_sample(slug) or {}).get("acf")
        classification = classify_endpoint(slug, list(acf) if isinstance(acf, dict) else [])
        logger.info("Endpoint /%s classified as %s (%.2f)", slug, classification.kind, classification.confidence)
        if classification.kind == "community":
            found["communities"].append(_endpoint(slug, classification))
        elif classification.kind == "home":
            found["homes"].append(_endpoint(slug, classification))

    if not found["communities"] and not found["homes"]:
        logger.info("No custom post types classified on %s, probing common slugs", client.site_url)
        for key, candidates in (("communities", COMMUNITY_FALLBACK), ("homes", HOME_FALLBACK)):
            probe = client.probe_endpoint(candidates, label=key)
            if probe.success and probe.endpoint:
                found[key].append(_endpoint(probe.endpoint, classify_endpoint(probe.endpoint)))

    for endpoints in found.values():
        endpoints.sort(key=lambda e: e["confidence"], reverse=True)
    return found
