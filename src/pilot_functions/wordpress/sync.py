"""Mirror WordPress communities and homes into ``locations`` / ``properties``.

Both syncs are idempotent: each mapped record carries a content hash and
rows whose hash did not change are left untouched.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from pilot_functions.errors import FunctionError
from pilot_functions.ingestion.cleanup import SOURCES
from pilot_functions.store.base import Row, RowStoreBase
from pilot_functions.store.models import Filter, Location, Property, SourceStatus, SourceType, utcnow_iso
from pilot_functions.wordpress.client import WordPressClient
from pilot_functions.wordpress.extraction import (
    decode_html_entities,
    extract_acf_array,
    extract_acf_field,
    extract_acf_number,
    extract_images,
    extract_zip,
    find_matching_term_id,
    infer_timezone,
    map_status,
    parse_price,
    strip_html,
)

logger = logging.getLogger(__name__)

LOCATIONS = "locations"
PROPERTIES = "properties"


def content_hash(record: dict[str, Any]) -> str:
    """Deterministic hash of a mapped record.

    ``h = h * 31 + ord(c)`` over the sorted-key JSON, wrapped to a signed
    32-bit integer and rendered as hex.
    """
    h = 0
    for ch in json.dumps(record, sort_keys=True, default=str):
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(h, "x")


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"success": True, **asdict(self)}


def _acf(item: dict[str, Any]) -> dict[str, Any]:
    acf = item.get("acf")
    return acf if isinstance(acf, dict) else {}


def _title(item: dict[str, Any]) -> str:
    return decode_html_entities((item.get("title") or {}).get("rendered", ""))


# ── mapping ──────────────────────────────────────────────────────────
def community_to_location(item: dict[str, Any], agent: Row, terms: dict[str, int]) -> Location:
    """Map one community post onto a :class:`Location`."""
    acf = _acf(item)
    address = extract_acf_field(acf, "full_address", "address", "street")
    state = extract_acf_field(acf, "state")
    slug = item.get("slug") or None
    return Location(
        agent_id=agent["id"],
        user_id=agent.get("user_id"),
        name=_title(item),
        wordpress_community_id=item["id"],
        wordpress_community_term_id=find_matching_term_id(terms, slug) if slug else None,
        wordpress_slug=slug,
        address=address,
        city=extract_acf_field(acf, "city"),
        state=state,
        zip=extract_acf_field(acf, "zip", "zipcode", "postal", "postal_code") or extract_zip(address),
        phone=extract_acf_field(acf, "phone", "telephone", "tel", "phone_number"),
        email=extract_acf_field(acf, "email", "mail", "email_address", "contact_email", "e_mail"),
        timezone=infer_timezone(state),
        metadata={
            "latitude": extract_acf_number(acf, "latitude", "lat"),
            "longitude": extract_acf_number(acf, "longitude", "lng", "long"),
            "age_category": extract_acf_field(acf, "age", "age_category", "age_restriction") or None,
            "community_type": extract_acf_field(acf, "type", "community_type") or None,
        },
    )


class LocationMaps:
    """Lookup tables for matching a home to one of the agent's locations.

    Precedence: community term id, then ``city|state``, then name.
    """

    def __init__(self, locations: list[Row]) -> None:
        self.by_community: dict[int, Row] = {}
        self.by_city_state: dict[str, Row] = {}
        self.by_name: dict[str, Row] = {}
        for loc in locations:
            for key in ("wordpress_community_term_id", "wordpress_community_id"):
                if loc.get(key) is not None:
                    self.by_community.setdefault(int(loc[key]), loc)
            if loc.get("city") and loc.get("state"):
                self.by_city_state.setdefault(self._city_key(loc["city"], loc["state"]), loc)
            if loc.get("name"):
                self.by_name.setdefault(loc["name"].strip().lower(), loc)

    @staticmethod
    def _city_key(city: str, state: str) -> str:
        return f"{city.strip().lower()}|{state.strip().lower()}"

    def match(
        self,
        community_id: int | None = None,
        city: str | None = None,
        state: str | None = None,
        community_name: str | None = None,
    ) -> Row | None:
        if community_id is not None and community_id in self.by_community:
            return self.by_community[community_id]
        if city and state:
            loc = self.by_city_state.get(self._city_key(city, state))
            if loc:
                return loc
        if community_name:
            return self.by_name.get(community_name.strip().lower())
        return None


def home_to_property(item: dict[str, Any], agent: Row, source_id: str, locations: LocationMaps) -> Property:
    """Map one home post onto a :class:`Property`, linking its community."""
    acf = _acf(item)
    community_ids = item.get("home_community") or []
    community_id = community_ids[0] if isinstance(community_ids, list) and community_ids else None
    city = extract_acf_field(acf, "city")
    state = extract_acf_field(acf, "state")
    community_name = extract_acf_field(acf, "community", "community_name", "park", "park_name")
    location = locations.match(community_id, city, state, community_name)

    rent = extract_acf_field(acf, "rent", "monthly_rent", "rental")
    price = parse_price(rent if rent else extract_acf_field(acf, "price", "sale_price", "asking_price"))
    year_built = extract_acf_number(acf, "year_built", "year", "built")
    content = (item.get("content") or {}).get("rendered") or (item.get("excerpt") or {}).get("rendered") or ""

    return Property(
        agent_id=agent["id"],
        knowledge_source_id=source_id,
        location_id=location["id"] if location else None,
        external_id=f"wp_home_{item['id']}",
        wordpress_home_id=item["id"],
        address=extract_acf_field(acf, "address", "full_address", "street") or _title(item),
        community_name=community_name or (location or {}).get("name"),
        lot_number=extract_acf_field(acf, "lot", "lot_number"),
        city=city or (location or {}).get("city"),
        state=state or (location or {}).get("state"),
        zip=extract_acf_field(acf, "zip", "zipcode", "postal_code") or (location or {}).get("zip"),
        status=map_status(extract_acf_field(acf, "status")),
        price=price,
        price_type="rent_monthly" if rent else "sale",
        beds=extract_acf_number(acf, "beds", "bedrooms", "bedroom"),
        baths=extract_acf_number(acf, "baths", "bathrooms", "bathroom"),
        sqft=extract_acf_number(acf, "sqft", "square_feet", "sq_ft", "size"),
        year_built=int(year_built) if year_built else None,
        description=extract_acf_field(acf, "description") or strip_html(content) or None,
        features=[str(f) for f in extract_acf_array(acf, "features", "amenities")],
        images=extract_images(item),
        listing_url=item.get("link"),
    )


# ── upsert with change detection ─────────────────────────────────────
def _apply(
    store: RowStoreBase,
    table: str,
    row: Row,
    existing: Row | None,
    result: SyncResult,
    *,
    first_seen: bool = False,
) -> None:
    row["content_hash"] = content_hash(row)
    if existing is not None:
        if existing.get("content_hash") == row["content_hash"]:
            result.unchanged += 1
            return
        store.update_by_id(table, existing["id"], row)
        result.updated += 1
        return
    if first_seen:
        row["first_seen_at"] = utcnow_iso()
    store.insert(table, row)
    result.created += 1


def sync_communities(
    store: RowStoreBase,
    client: WordPressClient,
    agent: Row,
    endpoint: str = "community",
    *,
    modified_after: str | None = None,
) -> SyncResult:
    """Pull every community post and mirror it into ``locations``.

    Parameters
    ----------
    store:
        Row store.
    client:
        Client bound to the agent's site.
    agent:
        ``agents`` row (needs ``id`` and ``user_id``).
    endpoint:
        Community post-type slug.
    modified_after:
        ISO timestamp for an incremental sync.  Incremental syncs never
        delete, since absent posts are merely unmodified.
    """
    items = client.fetch_collection(endpoint, modified_after=modified_after)
    terms = client.fetch_taxonomy_terms([f"{endpoint}_category", f"home_{endpoint}", "home_community", endpoint])
    logger.info("Syncing %d communities for agent %s (%d taxonomy terms)", len(items), agent["id"], len(terms))

    existing = {
        row["wordpress_community_id"]: row
        for row in store.select(
            LOCATIONS, [Filter.equals("agent_id", agent["id"]), Filter.not_null("wordpress_community_id")]
        )
    }
    result = SyncResult(total=len(items))
    seen: set[int] = set()
    for item in items:
        try:
            location = community_to_location(item, agent, terms)
            seen.add(location.wordpress_community_id)
            _apply(store, LOCATIONS, location.to_row(), existing.get(location.wordpress_community_id), result)
        except (FunctionError, KeyError, ValueError) as exc:
            logger.error("Error syncing community %s: %s", item.get("id"), exc)
            result.errors.append(f"{_title(item) or item.get('id')}: {exc}")

    if modified_after is None:
        stale = [wp_id for wp_id in existing if wp_id not in seen]
        if stale:
            result.deleted = store.delete(
                LOCATIONS, [Filter.equals("agent_id", agent["id"]), Filter.one_of("wordpress_community_id", stale)]
            )
            logger.info("Deleted %d communities no longer in WordPress", result.deleted)
    return result


def ensure_home_source(store: RowStoreBase, agent: Row, site_url: str, endpoint: str) -> str:
    """Id of the knowledge source that owns the agent's synced homes, creating it if needed."""
    row = store.first(
        SOURCES, [Filter.equals("agent_id", agent["id"]), Filter.equals("source_type", "wordpress_home")]
    )
    if row:
        return row["id"]
    created = store.insert(
        SOURCES,
        {
            "agent_id": agent["id"],
            "user_id": agent.get("user_id"),
            "name": "WordPress Homes",
            "type": SourceType.URL.value,
            "source": f"{site_url}/wp-json/wp/v2/{endpoint}",
            "source_type": "wordpress_home",
            "status": SourceStatus.READY.value,
            "refresh_strategy": "daily",
            "metadata": {"wordpress_homes": True, "auto_created": True},
        },
    )
    logger.info("Created WordPress homes knowledge source for agent %s", agent["id"])
    return created[0]["id"]


def sync_homes(
    store: RowStoreBase,
    client: WordPressClient,
    agent: Row,
    endpoint: str = "home",
    *,
    modified_after: str | None = None,
) -> SyncResult:
    """Pull every home post and mirror it into ``properties``.

    Same contract as :func:`sync_communities`; rows are keyed by
    ``external_id = "wp_home_<id>"`` within the agent's homes source.
    """
    source_id = ensure_home_source(store, agent, client.site_url, endpoint)
    locations = LocationMaps(store.select(LOCATIONS, [Filter.equals("agent_id", agent["id"])]))
    items = client.fetch_collection(endpoint, modified_after=modified_after)
    logger.info("Syncing %d homes for agent %s", len(items), agent["id"])

    existing = {
        row["external_id"]: row
        for row in store.select(PROPERTIES, [Filter.equals("knowledge_source_id", source_id)])
    }
    result = SyncResult(total=len(items))
    seen: set[str] = set()
    for item in items:
        try:
            prop = home_to_property(item, agent, source_id, locations)
            seen.add(prop.external_id)
            row = prop.to_row()
            _apply(store, PROPERTIES, row, existing.get(prop.external_id), result, first_seen=True)
        except (FunctionError, KeyError, ValueError) as exc:
            logger.error("Error syncing home %s: %s", item.get("id"), exc)
            result.errors.append(f"{_title(item) or item.get('id')}: {exc}")

    if modified_after is None:
        stale = [ext_id for ext_id in existing if ext_id not in seen]
        if stale:
            result.deleted = store.delete(
                PROPERTIES, [Filter.equals("knowledge_source_id", source_id), Filter.one_of("external_id", stale)]
            )
            logger.info("Deleted %d homes no longer in WordPress", result.deleted)
    return result
