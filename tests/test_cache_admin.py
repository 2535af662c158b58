"""
Tests for the cache control routes (/cache/invalidate, /cache/stats).
"""
import pytest

from cache_admin import VALID_ACTIONS, AdminResult
from conftest import make_cached_offer
from db.models import CachedRating, TitleMetadata


@pytest.fixture
def seeded(client):
    """Seed every cache table through the running app's store."""
    store = client.app.state.manager.store
    store.set_cached_data("search:tt123:US", {"results": []}, 3600)
    store.set_cached_data("search:other:US", {"results": []}, 3600)
    store.set_cached_offers([make_cached_offer("tt123", "US")], 3600)
    store.set_cached_offers([make_cached_offer("tt123", "GB")], 3600)
    store.set_cached_offers([make_cached_offer("tt456", "US")], 3600)
    store.set_cached_metadata(TitleMetadata(id="tt123", title="Batman", media_type="movie"), 3600)
    store.set_cached_ratings(CachedRating(source="simkl", imdb_id="tt123", rating=8.0), 3600)
    return store


def invalidate(client, **body):
    return client.post("/cache/invalidate", json=body)


class TestInvalidate:
    def test_invalid_action_lists_valid_actions(self, client):
        resp = invalidate(client, action="bogus")

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error.startswith("Invalid action")
        for action in VALID_ACTIONS:
            assert action in error

    def test_missing_action(self, client):
        assert invalidate(client).status_code == 400

    def test_non_object_body(self, client):
        resp = client.post("/cache/invalidate", content=b"[1, 2]", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_clear_all_twice(self, client, seeded):
        first = invalidate(client, action="clear_all")
        second = invalidate(client, action="clear_all")

        assert first.status_code == second.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["message"] == "All cache entries cleared"
        assert sum(second.json()["deleted"].values()) == 0
        assert client.get("/cache/invalidate").json()["total"]["total"] == 0

    def test_clear_type_requires_cache_type(self, client):
        resp = invalidate(client, action="clear_type")
        assert resp.status_code == 400
        assert resp.json() == {"error": "Cache type is required for clear_type action"}

    def test_clear_type_rejects_unknown_type(self, client):
        assert invalidate(client, action="clear_type", cacheType="nope").status_code == 400

    def test_clear_type(self, client, seeded):
        resp = invalidate(client, action="clear_type", cacheType="offers")

        assert resp.status_code == 200
        assert resp.json()["message"] == "Cache type offers cleared"
        assert resp.json()["deleted"] == {"streaming_offers": 3}
        assert seeded.get_cached_data("search:tt123:US") is not None

    def test_clear_expired(self, client, seeded, clock):
        seeded.set_cached_data("short", 1, 10)
        clock.advance(11)

        resp = invalidate(client, action="clear_expired")
        assert resp.status_code == 200
        assert resp.json()["deleted"]["api_cache"] == 1

    def test_clear_title(self, client, seeded):
        resp = invalidate(client, action="clear_title", titleId="tt123")

        assert resp.status_code == 200
        assert resp.json()["message"] == "Cache for title tt123 cleared"
        assert seeded.get_cached_offers("tt123") is None
        assert seeded.get_cached_metadata("tt123") is None
        assert seeded.get_cached_data("search:tt123:US") is None
        assert seeded.get_cached_offers("tt456") is not None

    def test_clear_title_requires_title_id(self, client):
        resp = invalidate(client, action="clear_title")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Title ID is required for clear_title action"

    def test_clear_offers_with_both_filters(self, client, seeded):
        resp = invalidate(client, action="clear_offers", titleId="tt123", country="US")

        assert resp.status_code == 200
        assert resp.json()["deletedCount"] == 1
        assert resp.json()["message"] == "Cleared 1 offer entries"
        assert seeded.get_cached_offers("tt123", "GB") is not None

    def test_clear_offers_by_country(self, client, seeded):
        resp = invalidate(client, action="clear_offers", country="US")
        assert resp.json()["deletedCount"] == 2

    @pytest.mark.parametrize("title_ids", [None, "tm1", {"id": "tm1"}])
    def test_warm_cache_requires_a_list(self, client, title_ids):
        body = {"action": "warm_cache"}
        if title_ids is not None:
            body["titleIds"] = title_ids
        resp = client.post("/cache/invalidate", json=body)

        assert resp.status_code == 400
        assert resp.json()["error"] == "Title IDs array is required for warm_cache action"

    def test_warm_cache(self, client, seeded, fake_catalog):
        resp = invalidate(client, action="warm_cache", titleIds=["tt123", "tm1", "fail1"])
        body = resp.json()

        assert resp.status_code == 200
        assert body["message"] == "Cache warming initiated for 3 titles"
        assert body["country"] == "US"
        assert body["warm"]["already_cached"] == 1
        assert body["warm"]["fetched"] == 1
        assert body["warm"]["failed"] == ["fail1"]
        assert fake_catalog.warmed == [("tm1", "US")]

    def test_storage_failure_is_internal_error(self, client):
        client.app.state.db.close()

        resp = invalidate(client, action="clear_all")
        assert resp.status_code == 500
        assert resp.json()["error"] == "Internal server error"
        assert "closed" in resp.json()["message"]


class TestStatus:
    def test_global_counts(self, client, seeded, clock):
        seeded.set_cached_data("short", 1, 10)
        clock.advance(11)

        resp = client.get("/cache/invalidate")
        body = resp.json()

        assert resp.status_code == 200
        assert body["active"]["streaming_offers"] == 3
        assert body["expired"]["api_cache"] == 1
        for table in ("api_cache", "streaming_offers", "ratings", "metadata", "total"):
            assert body["active"][table] + body["expired"][table] == body["total"][table]

    def test_title_projection(self, client, seeded):
        body = client.get("/cache/invalidate", params={"titleId": "tt456", "country": "US"}).json()

        assert body["titleId"] == "tt456"
        assert body["cached"] == {"offers": True, "metadata": False, "api_responses": False}
        assert body["isCached"] is True

    def test_uncached_title(self, client):
        body = client.get("/cache/invalidate", params={"titleId": "nothing"}).json()
        assert body["isCached"] is False

    def test_never_cached_by_clients(self, client):
        assert client.get("/cache/invalidate").headers["Cache-Control"] == "no-store, max-age=0"


class TestStats:
    def test_full_stats(self, client, seeded, settings):
        client.app.state.db.log_search("batman", "US", 3)
        seeded.get_cached_data("search:tt123:US")

        resp = client.get("/cache/stats")
        body = resp.json()

        assert resp.status_code == 200
        assert body["summary"]["total_entries"] == 7
        assert body["summary"]["total_searches"] == 1
        assert body["cache_types"]["api_cache"]["hits"] == 1
        assert body["database_stats"]["streaming_offers"] == {"total": 3, "active": 3, "expired": 0}
        assert body["recent_searches"][0]["query"] == "batman"
        assert body["recent_searches"][0]["timestamp"].startswith("2023-11-14")
        assert body["cache_config"] == {
            "search_ttl": settings.cache_ttl_search,
            "details_ttl": settings.cache_ttl_details,
            "offers_ttl": settings.cache_ttl_offers,
            "ratings_ttl": settings.cache_ttl_ratings,
            "metadata_ttl": settings.cache_ttl_metadata,
        }

    def test_detailed_stats_requires_type(self, client):
        resp = client.post("/cache/stats", json={})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Cache type is required"}

    @pytest.mark.parametrize("cache_type", ["bogus", "api_cache"])
    def test_detailed_stats_rejects_invalid_type(self, client, cache_type):
        resp = client.post("/cache/stats", json={"cacheType": cache_type})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Invalid cache type")

    def test_detailed_offer_stats(self, client, seeded):
        body = client.post("/cache/stats", json={"cacheType": "offers"}).json()
        assert {row["country"] for row in body["by_country"]} == {"US", "GB"}
        assert body["providers"][0]["provider"] == "Netflix"


def test_admin_result_status_codes():
    assert AdminResult.success({}).status_code == 200
    assert AdminResult.invalid("x").status_code == 400
    assert AdminResult.failure(RuntimeError("x")).status_code == 500
