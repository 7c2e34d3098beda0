"""Unit tests for the WordPress community/home sync."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from pilot_functions.errors import ForbiddenError, InvalidRequestError, NotFoundError, UnauthorizedError
from pilot_functions.ingestion.cleanup import SOURCES
from pilot_functions.ingestion.refresh import REFRESH_HOURS
from pilot_functions.wordpress.client import ConnectionTest, WordPressClient, normalize_site_url
from pilot_functions.wordpress.discovery import custom_post_types, discover_endpoints
from pilot_functions.wordpress.extraction import (
    classify_endpoint,
    extract_acf_field,
    extract_images,
    find_matching_term_id,
    infer_timezone,
    map_status,
    parse_price,
)
from pilot_functions.wordpress.scheduled import interval_to_minutes, is_sync_due, run_scheduled_sync
from pilot_functions.wordpress.service import AGENTS, TEAM_MEMBERS, WordPressSyncService
from pilot_functions.wordpress.sync import LOCATIONS, PROPERTIES, content_hash, sync_communities, sync_homes

SITE = "https://homes.example.com"

COMMUNITY = {
    "id": 11,
    "slug": "lake-shore",
    "title": {"rendered": "Lake Shore &amp; Pines"},
    "acf": {
        "community_address": "12 Main St, Orlando, FL 32801",
        "community_city": "Orlando",
        "community_state": "FL",
        "phone": "555-1111",
    },
}
OTHER_COMMUNITY = {
    "id": 12,
    "slug": "desert-palms",
    "title": {"rendered": "Desert Palms"},
    "acf": {"city": "Mesa", "state": "AZ"},
}
HOME = {
    "id": 501,
    "slug": "lot-12",
    "title": {"rendered": "Lot 12"},
    "link": f"{SITE}/home/lot-12",
    "home_community": [77],
    "acf": {
        "bedrooms": "3",
        "bathrooms": "2",
        "square_feet": "1,456",
        "price": "$89,900",
        "home_status": "Available",
        "lot_number": "12",
    },
}


def _client(communities=None, homes=None, terms=None) -> MagicMock:
    client = MagicMock(spec=WordPressClient)
    client.site_url = SITE
    client.fetch_taxonomy_terms.return_value = terms if terms is not None else {"lake-shore": 77}

    def fetch_collection(endpoint: str, *, modified_after=None):
        return list(homes or []) if endpoint == "home" else list(communities or [])

    client.fetch_collection.side_effect = fetch_collection
    return client


@pytest.fixture
def agent(store) -> dict:
    return store.insert(
        AGENTS,
        {"id": "agent-1", "user_id": "owner-1", "deployment_config": {"wordpress": {"site_url": SITE}}},
    )[0]


# ──────────────────────────────────────────────────────────────────────
# extraction helpers
# ──────────────────────────────────────────────────────────────────────


class TestExtraction:
    def test_acf_lookup_prefers_exact_then_suffix_then_contains(self) -> None:
        acf = {"mailing_city_note": "contains", "community_city": "suffix", "city": "exact"}
        assert extract_acf_field(acf, "city") == "exact"
        del acf["city"]
        assert extract_acf_field(acf, "city") == "suffix"
        del acf["community_city"]
        assert extract_acf_field(acf, "city") == "contains"

    def test_acf_lookup_skips_empty_values_and_lowercases_bools(self) -> None:
        assert extract_acf_field({"phone": "", "phone_number": "555"}, "phone") == "555"
        assert extract_acf_field({"pets_allowed": True}, "pets") == "true"
        assert extract_acf_field(None, "phone") is None

    @pytest.mark.parametrize(
        "value, cents",
        [("$89,900", 8990000), (1250, 125000), ("1,234.50", 123450), ("", None), ("call us", None), (None, None)],
    )
    def test_parse_price(self, value, cents) -> None:
        assert parse_price(value) == cents

    @pytest.mark.parametrize(
        "status, expected",
        [
            ("SOLD", "sold"),
            ("Under Contract", "pending"),
            ("Rented", "rented"),
            ("Coming Soon", "coming_soon"),
            ("For Sale", "available"),
            (None, "available"),
        ],
    )
    def test_map_status(self, status, expected) -> None:
        assert map_status(status) == expected

    @pytest.mark.parametrize(
        "state, zone",
        [
            ("FL", "America/New_York"),
            ("texas", "America/Chicago"),
            ("AZ", "America/Phoenix"),
            ("Oregon", "America/Los_Angeles"),
            ("", "America/New_York"),
            ("Ontario", "America/New_York"),
        ],
    )
    def test_infer_timezone(self, state, zone) -> None:
        assert infer_timezone(state) == zone

    def test_term_matching(self) -> None:
        terms = {"lake-shore": 1, "park-meadows": 3}
        assert find_matching_term_id(terms, "lake-shore") == 1
        assert find_matching_term_id(terms, "lake-shore-north") == 1
        assert find_matching_term_id(terms, "village-meadows") == 3
        assert find_matching_term_id(terms, "unrelated") is None

    def test_images_from_featured_media_and_gallery(self) -> None:
        item = {
            "_embedded": {"wp:featuredmedia": [{"source_url": "https://cdn/x.jpg", "alt_text": "Front"}]},
            "acf": {"gallery": ["https://cdn/y.jpg", {"url": "https://cdn/z.jpg", "alt": "Kitchen"}, {}], "images": False},
        }
        assert extract_images(item) == [
            {"url": "https://cdn/x.jpg", "alt": "Front"},
            {"url": "https://cdn/y.jpg", "alt": None},
            {"url": "https://cdn/z.jpg", "alt": "Kitchen"},
        ]


class TestClassifyEndpoint:
    def test_slug_and_fields_give_full_confidence(self) -> None:
        result = classify_endpoint("communities", ["community_address", "city", "state"])
        assert result.kind == "community"
        assert result.confidence == 1.0
        assert "communities" in result.matched_keywords

    def test_home_with_one_hint(self) -> None:
        result = classify_endpoint("homes", ["beds"])
        assert result.kind == "home"
        assert result.confidence == pytest.approx(0.73)

    def test_fields_alone_classify_an_oddly_named_type(self) -> None:
        result = classify_endpoint("inventory", ["bedrooms", "bathrooms", "price"])
        assert result.kind == "home"
        assert result.confidence == pytest.approx(0.4)

    def test_no_evidence_is_unknown(self) -> None:
        result = classify_endpoint("testimonials", ["quote"])
        assert result.kind == "unknown"
        assert result.confidence == 0.0


# ──────────────────────────────────────────────────────────────────────
# client & discovery
# ──────────────────────────────────────────────────────────────────────


class TestClient:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("homes.example.com", SITE),
            ("https://homes.example.com/", SITE),
            ("https://homes.example.com/wp-json/wp/v2/homes", SITE),
            ("  http://homes.example.com/wp-json  ", "http://homes.example.com"),
            ("", ""),
        ],
    )
    def test_normalize_site_url(self, raw: str, expected: str) -> None:
        assert normalize_site_url(raw) == expected

    def test_fetch_collection_follows_total_pages(self) -> None:
        page1 = MagicMock(ok=True, headers={"X-WP-TotalPages": "2"})
        page1.json.return_value = [{"id": 1}, {"id": 2}]
        page2 = MagicMock(ok=True, headers={"X-WP-TotalPages": "2"})
        page2.json.return_value = [{"id": 3}]
        session = MagicMock()
        session.get.side_effect = [page1, page2]

        items = WordPressClient(SITE, session=session).fetch_collection("home", modified_after="2024-05-01T00:00:00")

        assert [i["id"] for i in items] == [1, 2, 3]
        first_params = session.get.call_args_list[0].kwargs["params"]
        assert first_params["modified_after"] == "2024-05-01T00:00:00"
        assert first_params["per_page"] == 100

    def test_test_connection_404(self) -> None:
        session = MagicMock()
        session.get.return_value = MagicMock(ok=False, status_code=404)
        result = WordPressClient(SITE, session=session).test_connection("communities")
        assert not result.success
        assert '"/communities" not found' in result.message


class TestDiscovery:
    def test_custom_post_types_skip_core_and_item_routes(self) -> None:
        routes = {"/wp/v2/posts": {}, "/wp/v2/community": {}, "/wp/v2/community/(?P<id>[\\d]+)": {}, "/wp/v2/home": {}}
        assert custom_post_types(routes) == ["community", "home"]

    def test_endpoints_are_classified_from_samples(self) -> None:
        client = MagicMock()
        client.fetch_routes.return_value = {"/wp/v2/community": {}, "/wp/v2/home": {}, "/wp/v2/faq": {}}
        samples = {
            "community": {"acf": {"address": "1 Main", "city": "Mesa"}},
            "home": {"acf": {"beds": 3, "baths": 2, "price": 1}},
            "faq": {"acf": {"question": "?"}},
        }
        client.fetch_sample.side_effect = samples.get

        found = discover_endpoints(client)

        assert [e["slug"] for e in found["communities"]] == ["community"]
        assert [e["slug"] for e in found["homes"]] == ["home"]
        assert found["homes"][0]["confidence"] == 1.0

    def test_falls_back_to_probing(self) -> None:
        client = MagicMock()
        client.fetch_routes.return_value = {}
        client.probe_endpoint.side_effect = [
            ConnectionTest(success=True, message="ok", count=4, endpoint="locations"),
            ConnectionTest(success=False, message="none"),
        ]

        found = discover_endpoints(client)

        assert [e["slug"] for e in found["communities"]] == ["locations"]
        assert found["homes"] == []


# ──────────────────────────────────────────────────────────────────────
# sync
# ──────────────────────────────────────────────────────────────────────


class TestContentHash:
    def test_key_order_does_not_matter(self) -> None:
        assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})

    def test_values_change_the_hash(self) -> None:
        assert content_hash({"a": 1}) != content_hash({"a": 2})


class TestSyncCommunities:
    def test_first_sync_creates_locations(self, store, agent) -> None:
        result = sync_communities(store, _client([COMMUNITY, OTHER_COMMUNITY]), agent)

        assert (result.created, result.updated, result.unchanged, result.total) == (2, 0, 0, 2)
        row = next(r for r in store.select(LOCATIONS) if r["wordpress_community_id"] == 11)
        assert row["name"] == "Lake Shore & Pines"
        assert row["wordpress_community_term_id"] == 77
        assert row["city"] == "Orlando"
        assert row["zip"] == "32801"
        assert row["timezone"] == "America/New_York"
        assert row["content_hash"]

    def test_second_sync_is_a_no_op(self, store, agent) -> None:
        """Unchanged posts are counted, not rewritten."""
        client = _client([COMMUNITY, OTHER_COMMUNITY])
        sync_communities(store, client, agent)

        result = sync_communities(store, client, agent)

        assert result.updated == 0
        assert result.created == 0
        assert result.unchanged == result.total == 2

    def test_changed_post_is_updated(self, store, agent) -> None:
        sync_communities(store, _client([COMMUNITY]), agent)
        edited = {**COMMUNITY, "acf": {**COMMUNITY["acf"], "phone": "555-2222"}}

        result = sync_communities(store, _client([edited]), agent)

        assert result.updated == 1
        assert store.first(LOCATIONS)["phone"] == "555-2222"

    def test_full_sync_deletes_missing_posts(self, store, agent) -> None:
        sync_communities(store, _client([COMMUNITY, OTHER_COMMUNITY]), agent)

        result = sync_communities(store, _client([COMMUNITY]), agent)

        assert result.deleted == 1
        assert store.count(LOCATIONS) == 1

    def test_incremental_sync_never_deletes(self, store, agent) -> None:
        sync_communities(store, _client([COMMUNITY, OTHER_COMMUNITY]), agent)

        result = sync_communities(store, _client([COMMUNITY]), agent, modified_after="2024-01-01T00:00:00")

        assert result.deleted == 0
        assert store.count(LOCATIONS) == 2

    def test_bad_item_is_reported_not_fatal(self, store, agent) -> None:
        broken = {"slug": "no-id", "title": {"rendered": "Broken"}}

        result = sync_communities(store, _client([broken, COMMUNITY]), agent)

        assert result.created == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Broken")


class TestSyncHomes:
    def test_home_is_linked_to_its_community(self, store, agent) -> None:
        client = _client([COMMUNITY], [HOME])
        sync_communities(store, client, agent)

        result = sync_homes(store, client, agent)

        assert result.created == 1
        location = store.first(LOCATIONS)
        home = store.first(PROPERTIES)
        assert home["external_id"] == "wp_home_501"
        assert home["location_id"] == location["id"]
        assert home["community_name"] == "Lake Shore & Pines"
        assert home["price"] == 8990000
        assert home["price_type"] == "sale"
        assert (home["beds"], home["baths"], home["sqft"]) == (3.0, 2.0, 1456.0)
        assert home["lot_number"] == "12"
        assert home["status"] == "available"
        assert home["first_seen_at"]

    def test_homes_source_is_created_once(self, store, agent) -> None:
        client = _client([], [HOME])
        sync_homes(store, client, agent)
        sync_homes(store, client, agent)

        sources = store.select(SOURCES, [])
        assert len(sources) == 1
        assert sources[0]["source_type"] == "wordpress_home"

    def test_resync_is_idempotent(self, store, agent) -> None:
        client = _client([], [HOME])
        sync_homes(store, client, agent)

        result = sync_homes(store, client, agent)

        assert (result.created, result.updated, result.unchanged) == (0, 0, 1)
        assert store.count(PROPERTIES) == 1

    def test_rent_sets_monthly_price_type(self, store, agent) -> None:
        rental = {**HOME, "acf": {"monthly_rent": "950", "status": "For Rent"}}

        sync_homes(store, _client([], [rental]), agent)

        home = store.first(PROPERTIES)
        assert home["price"] == 95000
        assert home["price_type"] == "rent_monthly"
        assert home["status"] == "rented"


# ──────────────────────────────────────────────────────────────────────
# service
# ──────────────────────────────────────────────────────────────────────


class TestWordPressSyncService:
    def test_agent_id_required(self, store) -> None:
        with pytest.raises(InvalidRequestError, match="agentId is required"):
            WordPressSyncService(store).communities("sync", None, caller_id="owner-1")

    def test_unknown_agent(self, store) -> None:
        with pytest.raises(NotFoundError):
            WordPressSyncService(store).communities("sync", "nope", caller_id="owner-1")

    def test_anonymous_caller_rejected(self, store, agent) -> None:
        with pytest.raises(UnauthorizedError):
            WordPressSyncService(store).communities("save", agent["id"])

    def test_stranger_rejected(self, store, agent) -> None:
        with pytest.raises(ForbiddenError):
            WordPressSyncService(store).communities("save", agent["id"], caller_id="stranger")

    def test_team_member_allowed(self, store, agent) -> None:
        store.insert(TEAM_MEMBERS, {"owner_id": "owner-1", "member_id": "member-1"})
        body, status = WordPressSyncService(store).communities(
            "save", agent["id"], caller_id="member-1", site_url="homes.example.com/wp-json/"
        )
        assert status == 200
        assert body["config"]["site_url"] == SITE

    def test_sync_records_progress_on_agent(self, store, agent) -> None:
        service = WordPressSyncService(store)
        with patch.object(service, "_client", return_value=_client([COMMUNITY])):
            body, status = service.communities("sync", agent["id"], caller_id="owner-1")

        assert status == 200
        assert body["success"] is True
        assert body["created"] == 1
        config = store.get(AGENTS, agent["id"])["deployment_config"]["wordpress"]
        assert config["community_count"] == 1
        assert config["community_endpoint"] == "community"
        assert config["last_community_sync"]

    def test_home_sync_without_endpoint_probes(self, store, agent) -> None:
        client = _client()
        client.probe_endpoint.return_value = ConnectionTest(success=False, message="No homes/properties endpoint found.")
        service = WordPressSyncService(store)
        with patch.object(service, "_client", return_value=client):
            body, status = service.homes("sync", agent["id"], caller_id="owner-1")

        assert status == 400
        assert body == {"success": False, "error": "No homes/properties endpoint found."}

    def test_disconnect_removes_config_and_locations(self, store, agent) -> None:
        service = WordPressSyncService(store)
        with patch.object(service, "_client", return_value=_client([COMMUNITY])):
            service.communities("sync", agent["id"], caller_id="owner-1")

        body, _ = service.communities("disconnect", agent["id"], caller_id="owner-1", delete_locations=True)

        assert body["deletedLocations"] == 1
        assert "wordpress" not in store.get(AGENTS, agent["id"])["deployment_config"]

    def test_invalid_action(self, store, agent) -> None:
        with pytest.raises(InvalidRequestError, match="Invalid action"):
            WordPressSyncService(store).homes("explode", agent["id"], caller_id="owner-1")


# ──────────────────────────────────────────────────────────────────────
# scheduled sync
# ──────────────────────────────────────────────────────────────────────


class TestScheduledSync:
    NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_interval_minutes(self) -> None:
        assert interval_to_minutes("hourly_6") == 360
        assert interval_to_minutes("daily") == 1440
        assert interval_to_minutes("manual") is None
        assert interval_to_minutes(None) is None

    def test_intervals_match_knowledge_refresh(self) -> None:
        assert interval_to_minutes("hourly_3") == 180
        for interval, hours in REFRESH_HOURS.items():
            assert interval_to_minutes(interval) == hours * 60, interval

    def test_is_sync_due(self) -> None:
        assert is_sync_due(None, 60, self.NOW)
        assert is_sync_due((self.NOW - timedelta(minutes=61)).isoformat(), 60, self.NOW)
        assert not is_sync_due((self.NOW - timedelta(minutes=30)).isoformat(), 60, self.NOW)
        assert is_sync_due("2024-06-01T10:00:00Z", 60, self.NOW)

    def test_only_due_syncs_run(self, store) -> None:
        two_hours_ago = (self.NOW - timedelta(hours=2)).isoformat()
        store.insert(
            AGENTS,
            [
                {
                    "id": "due",
                    "deployment_config": {
                        "wordpress": {
                            "site_url": SITE,
                            "community_sync_interval": "hourly_1",
                            "last_community_sync": two_hours_ago,
                            "home_sync_interval": "daily",
                            "last_home_sync": two_hours_ago,
                        }
                    },
                },
                {"id": "manual", "deployment_config": {"wordpress": {"site_url": SITE, "community_sync_interval": "manual"}}},
                {"id": "no-site", "deployment_config": {"wordpress": {"community_sync_interval": "hourly_1"}}},
                {"id": "not-connected", "deployment_config": {}},
            ],
        )
        service = MagicMock(store=store)
        service.communities.return_value = ({"success": True}, 200)

        result = run_scheduled_sync(service, now=self.NOW)

        service.communities.assert_called_once_with("sync", "due", scheduled=True)
        service.homes.assert_not_called()
        assert result["communitySyncs"] == 1
        assert result["homeSyncs"] == 0
        assert result["errors"] == []

    def test_failed_home_sync_is_reported(self, store) -> None:
        store.insert(AGENTS, {"id": "a", "deployment_config": {"wordpress": {"site_url": SITE, "home_sync_interval": "hourly_2"}}})
        service = MagicMock(store=store)
        service.homes.return_value = ({"success": False, "error": "No homes/properties endpoint found."}, 400)

        result = run_scheduled_sync(service, now=self.NOW)

        assert result["homeSyncs"] == 0
        assert result["errors"] == ["Agent a home sync: No homes/properties endpoint found."]
