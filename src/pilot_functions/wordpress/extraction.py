"""Keyword heuristics for mapping WordPress/ACF payloads onto local rows.

None of this is ground truth: ACF field names are site-specific, so every
lookup is a best guess (exact key, then ``*_keyword`` suffix, then
substring).  Endpoint classification reports a confidence so a human can
review the mapping before trusting it.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Any

_NON_NUMERIC_RE = re.compile(r"[^0-9.-]")
_ZIP_RE = re.compile(r"\b(\d{5})(-\d{4})?\b")
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")
_SLUG_PREFIX_RE = re.compile(r"^(the-|lake-|park-|community-|village-|estates-|manor-)")

COMMUNITY_KEYWORDS = ("community", "communities", "location", "locations", "site", "sites", "park", "parks")
HOME_KEYWORDS = (
    "home",
    "homes",
    "property",
    "properties",
    "listing",
    "listings",
    "house",
    "houses",
    "unit",
    "units",
)
# ACF keys that hint at what a post type holds.
COMMUNITY_FIELD_HINTS = ("address", "city", "state", "zip", "phone", "email", "latitude", "longitude", "amenities")
HOME_FIELD_HINTS = ("beds", "bedrooms", "baths", "bathrooms", "sqft", "square_feet", "price", "rent", "lot", "year_built")

CORE_TYPES = frozenset(
    {
        "posts",
        "pages",
        "media",
        "blocks",
        "templates",
        "template-parts",
        "navigation",
        "comments",
        "search",
        "categories",
        "tags",
        "users",
        "settings",
        "themes",
        "plugins",
        "block-types",
        "block-patterns",
        "block-directory",
    }
)

DEFAULT_TIMEZONE = "America/New_York"

_EASTERN = {
    "ct", "connecticut", "de", "delaware", "fl", "florida", "ga", "georgia",
    "me", "maine", "md", "maryland", "ma", "massachusetts", "mi", "michigan",
    "nh", "new hampshire", "nj", "new jersey", "ny", "new york", "nc", "north carolina",
    "oh", "ohio", "pa", "pennsylvania", "ri", "rhode island", "sc", "south carolina",
    "vt", "vermont", "va", "virginia", "wv", "west virginia", "dc", "district of columbia",
}  # fmt: skip
_CENTRAL = {
    "al", "alabama", "ar", "arkansas", "il", "illinois", "ia", "iowa",
    "ks", "kansas", "ky", "kentucky", "la", "louisiana", "mn", "minnesota",
    "ms", "mississippi", "mo", "missouri", "ne", "nebraska", "nd", "north dakota",
    "ok", "oklahoma", "sd", "south dakota", "tn", "tennessee", "tx", "texas", "wi", "wisconsin",
}  # fmt: skip
_MOUNTAIN = {"co", "colorado", "id", "idaho", "mt", "montana", "nm", "new mexico", "ut", "utah", "wy", "wyoming"}
_PACIFIC = {"ca", "california", "nv", "nevada", "or", "oregon", "wa", "washington"}
_SPECIAL_ZONES = {
    "az": "America/Phoenix",
    "arizona": "America/Phoenix",
    "hi": "Pacific/Honolulu",
    "hawaii": "Pacific/Honolulu",
    "ak": "America/Anchorage",
    "alaska": "America/Anchorage",
    "in": "America/Indiana/Indianapolis",
    "indiana": "America/Indiana/Indianapolis",
}


# ── ACF field lookup ─────────────────────────────────────────────────
def _present(value: Any) -> bool:
    return value is not None and value != ""


def extract_acf_field(acf: dict[str, Any] | None, *keywords: str) -> str | None:
    """First non-empty ACF value whose key matches one of *keywords*.

    For each keyword in turn: exact key, then a key ending in the
    keyword (``community_city`` for ``city``), then any key containing it.
    """
    if not acf:
        return None
    keys = list(acf)
    for keyword in keywords:
        kw = keyword.lower()
        matchers = (
            lambda k: k.lower() == kw,
            lambda k: k.lower().endswith(f"_{kw}") or k.lower().endswith(kw),
            lambda k: kw in k.lower(),
        )
        for matches in matchers:
            key = next((k for k in keys if matches(k) and _present(acf[k])), None)
            if key is not None:
                value = acf[key]
                return str(value).lower() if isinstance(value, bool) else str(value)
    return None


def extract_acf_number(acf: dict[str, Any] | None, *keywords: str) -> float | None:
    value = extract_acf_field(acf, *keywords)
    if not value:
        return None
    match = re.match(r"-?\d*\.?\d+", _NON_NUMERIC_RE.sub("", value))
    return float(match.group(0)) if match else None


def extract_acf_array(acf: dict[str, Any] | None, *keywords: str) -> list[Any]:
    if not acf:
        return []
    for keyword in keywords:
        kw = keyword.lower()
        key = next((k for k in acf if k.lower() == kw or k.lower().endswith(f"_{kw}") or kw in k.lower()), None)
        if key is not None and isinstance(acf[key], list):
            return acf[key]
    return []


# ── text helpers ─────────────────────────────────────────────────────
def extract_zip(address: str | None) -> str | None:
    if not address:
        return None
    match = _ZIP_RE.search(address)
    return match.group(1) if match else None


def decode_html_entities(text: str) -> str:
    return html.unescape(text or "")


def strip_html(markup: str) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", markup or "")).strip()


def infer_timezone(state: str | None) -> str:
    """IANA zone for a US state (abbreviation or full name)."""
    if not state:
        return DEFAULT_TIMEZONE
    normalized = state.lower().strip()
    if normalized in _SPECIAL_ZONES:
        return _SPECIAL_ZONES[normalized]
    if normalized in _EASTERN:
        return "America/New_York"
    if normalized in _CENTRAL:
        return "America/Chicago"
    if normalized in _MOUNTAIN:
        return "America/Denver"
    if normalized in _PACIFIC:
        return "America/Los_Angeles"
    return DEFAULT_TIMEZONE


# ── listing fields ───────────────────────────────────────────────────
def map_status(wp_status: str | None) -> str:
    if not wp_status:
        return "available"
    lower = wp_status.lower()
    if "sold" in lower:
        return "sold"
    if "pending" in lower or "under contract" in lower:
        return "pending"
    if "rent" in lower:
        return "rented"
    if "coming" in lower or "soon" in lower:
        return "coming_soon"
    return "available"


def parse_price(value: float | int | str | None) -> int | None:
    """Dollar amount (number or ``"$1,234.50"``) to integer cents."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return round(value * 100)
    cleaned = re.sub(r"[$,\s]", "", str(value))
    try:
        return round(float(cleaned) * 100)
    except ValueError:
        return None


def extract_images(item: dict[str, Any]) -> list[dict[str, Any]]:
    images: list[dict[str, Any]] = []
    featured = ((item.get("_embedded") or {}).get("wp:featuredmedia") or [None])[0]
    if featured and featured.get("source_url"):
        images.append({"url": featured["source_url"], "alt": featured.get("alt_text")})
    acf = item.get("acf") or {}
    for key in ("images", "gallery"):
        gallery = acf.get(key)
        for image in gallery if isinstance(gallery, list) else []:
            # ACF returns either a URL string or an image array
            if isinstance(image, str) and image:
                images.append({"url": image, "alt": None})
            elif isinstance(image, dict) and (image.get("url") or image.get("source_url")):
                images.append({"url": image.get("url") or image["source_url"], "alt": image.get("alt")})
    return images


# ── taxonomy matching ────────────────────────────────────────────────
def find_matching_term_id(terms: dict[str, int], slug: str) -> int | None:
    """Term id for a community slug: exact, then containment, then prefix-normalised."""
    if slug in terms:
        return terms[slug]
    for term_slug, term_id in terms.items():
        if term_slug in slug or slug in term_slug:
            return term_id
    normalized = _SLUG_PREFIX_RE.sub("", slug)
    for term_slug, term_id in terms.items():
        if _SLUG_PREFIX_RE.sub("", term_slug) == normalized:
            return term_id
    return None


# ── endpoint classification ──────────────────────────────────────────
@dataclass
class EndpointClassification:
    """Best guess at what a custom post type holds.

    Attributes
    ----------
    kind:
        ``"community"``, ``"home"`` or ``"unknown"``.
    confidence:
        0.0 (no evidence) to 1.0.
    matched_keywords:
        Slug keywords and ACF keys that contributed.
    """

    kind: str
    confidence: float
    matched_keywords: list[str] = field(default_factory=list)


def _score(slug: str, acf_keys: list[str], slug_words: tuple[str, ...], hints: tuple[str, ...]) -> tuple[float, list[str]]:
    matched = [w for w in slug_words if w in slug]
    field_hits = [h for h in hints if any(h in k for k in acf_keys)]
    score = (0.6 if matched else 0.0) + 0.4 * min(1.0, len(field_hits) / 3)
    return score, matched + field_hits


def classify_endpoint(slug: str, sample_acf_keys: list[str] | None = None) -> EndpointClassification:
    """Classify a post-type slug as community-like or home-like.

    The slug keyword is worth 0.6; ACF field hints add up to 0.4 (three
    or more hints saturate).  Community keywords win ties, matching the
    order endpoints are usually labelled.
    """
    lower = slug.lower()
    keys = [k.lower() for k in sample_acf_keys or []]
    community, community_hits = _score(lower, keys, COMMUNITY_KEYWORDS, COMMUNITY_FIELD_HINTS)
    home, home_hits = _score(lower, keys, HOME_KEYWORDS, HOME_FIELD_HINTS)

    if community == 0 and home == 0:
        return EndpointClassification(kind="unknown", confidence=0.0)
    if community >= home:
        return EndpointClassification(kind="community", confidence=round(community, 2), matched_keywords=community_hits)
    return EndpointClassification(kind="home", confidence=round(home, 2), matched_keywords=home_hits)
