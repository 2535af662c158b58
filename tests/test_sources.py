"""
Tests for the upstream clients, with httpx.MockTransport standing in for the network.
"""
import json

import httpx
import pytest

from conftest import make_node, make_offer
from errors import SourceError, ValidationError
from sources.justwatch import JustWatchSource, normalize_country, title_offers_query
from sources.simkl import SimklSource
from sources.tmdb import TmdbSource


class Recorder:
    """Transport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses[min(len(self.requests), len(self.responses)) - 1]
        if callable(response):
            return response(request)
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    @property
    def transport(self):
        return httpx.MockTransport(self)


def search_response(*nodes):
    return httpx.Response(200, json={"data": {"popularTitles": {"edges": [{"node": n} for n in nodes]}}})


class TestJustWatch:
    def test_normalize_country(self):
        assert normalize_country(" us ") == "US"
        for bad in ("", "USA", "u1", 'US) { x }'):
            with pytest.raises(ValidationError):
                normalize_country(bad)

    def test_offers_query_aliases_each_country(self):
        query = title_offers_query(["US", "GB"])
        assert "us: offers(country: US" in query
        assert "gb: offers(country: GB" in query
        assert "fragment TitleOffer on Offer" in query

    @pytest.mark.asyncio
    async def test_search_is_cached(self, manager):
        recorder = Recorder(search_response(make_node("tm1")))
        source = JustWatchSource(manager, max_results=5, transport=recorder.transport)

        first = await source.search_titles("batman", "us")
        await source.flush()
        second = await source.search_titles("batman", "us")
        await source.close()

        assert [n["id"] for n in first] == ["tm1"]
        assert second == first
        assert len(recorder.requests) == 1
        body = json.loads(recorder.requests[0].content)
        assert body["operationName"] == "GetSearchTitles"
        assert body["variables"]["country"] == "US"
        assert body["variables"]["first"] == 5
        assert body["variables"]["searchTitlesFilter"]["searchQuery"] == "batman"

    @pytest.mark.asyncio
    async def test_offers_are_written_back_and_served_from_cache(self, manager):
        recorder = Recorder(httpx.Response(200, json={"data": {"node": {
            "us": [make_offer("Netflix"), make_offer("Netflix"), make_offer("Apple TV", "BUY", price=3.99)],
        }}}))
        source = JustWatchSource(manager, transport=recorder.transport)

        await source.warm_title("tm1", "us")
        cached = await manager.get_streaming_offers("tm1", "US")
        offers = await source.get_title_offers("tm1", ["US"])
        await source.close()

        assert sorted(o.provider for o in cached) == ["Apple TV", "Netflix"]
        assert [o["package"]["clearName"] for o in offers["us"]] == ["Netflix", "Apple TV"]
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_title_node(self, manager):
        recorder = Recorder(httpx.Response(200, json={"data": {"node": None}}))
        source = JustWatchSource(manager, transport=recorder.transport)

        assert await source.get_title_node("tm0") is None
        await source.close()

    @pytest.mark.asyncio
    async def test_graphql_errors_raise(self, manager):
        recorder = Recorder(httpx.Response(200, json={"errors": [{"message": "boom"}]}))
        source = JustWatchSource(manager, transport=recorder.transport)

        with pytest.raises(SourceError, match="GraphQL error: boom"):
            await source.search_titles("batman")
        await source.close()
        assert (await manager.table_counts())["api_cache"]["total"] == 0

    @pytest.mark.asyncio
    async def test_http_errors_raise(self, manager):
        recorder = Recorder(httpx.Response(500, text="oops"))
        source = JustWatchSource(manager, transport=recorder.transport)

        with pytest.raises(SourceError) as exc_info:
            await source.get_title_node("tm1")
        assert exc_info.value.status_code == 500
        assert exc_info.value.source == "JustWatch"
        await source.close()

    @pytest.mark.asyncio
    async def test_invalid_country_never_reaches_the_network(self, manager):
        recorder = Recorder(search_response())
        source = JustWatchSource(manager, transport=recorder.transport)

        with pytest.raises(ValidationError):
            await source.get_title_offers("tm1", ["U$"])
        assert recorder.requests == []


class TestSimkl:
    BUNDLE = {"simkl": {"rating": 8.1, "votes": 1500}, "external": {"imdb": {"rating": 7.8, "votes": 700000}}}

    @pytest.mark.asyncio
    async def test_unconfigured_returns_none(self, manager):
        recorder = Recorder(httpx.Response(200, json=self.BUNDLE))
        source = SimklSource(manager, api_key=None, transport=recorder.transport)

        assert await source.get_ratings_by_imdb_id("tt1877830") is None
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_ratings_are_cached(self, manager):
        recorder = Recorder(httpx.Response(200, json=self.BUNDLE))
        source = SimklSource(manager, api_key="key", transport=recorder.transport, min_delay=0)

        first = await source.get_ratings_by_imdb_id("tt1877830")
        await source.flush()
        second = await source.get_ratings_by_imdb_id("tt1877830")
        await source.close()

        assert first == second == self.BUNDLE
        assert len(recorder.requests) == 1
        request = recorder.requests[0]
        assert request.url.path == "/ratings/1877830"
        assert request.url.params["fields"] == "simkl,ext,rank"
        assert request.url.params["client_id"] == "key"
        cached = await manager.get_ratings("tt1877830")
        assert (cached[0].source, cached[0].rating, cached[0].vote_count) == ("simkl", 8.1, 1500)

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, manager):
        recorder = Recorder(httpx.Response(429), httpx.Response(200, json=self.BUNDLE))
        source = SimklSource(manager, api_key="key", transport=recorder.transport, min_delay=0)

        assert await source.get_ratings_by_imdb_id("tt1") == self.BUNDLE
        assert len(recorder.requests) == 2
        await source.close()

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_gives_up(self, manager):
        recorder = Recorder(httpx.Response(429))
        source = SimklSource(manager, api_key="key", transport=recorder.transport, min_delay=0)

        assert await source.get_ratings_by_imdb_id("tt1") is None
        assert len(recorder.requests) == 2
        with pytest.raises(SourceError, match="rate limit exceeded"):
            await source._rate_limited_get("/ratings/1", {})
        await source.close()

    def test_best_rating(self):
        source = SimklSource(cache=None, api_key="key")

        assert source.get_best_rating(self.BUNDLE) == {"source": "SIMKL", "rating": 8.1, "votes": 1500}
        imdb_only = {"simkl": {"rating": 9.0}, "external": {"imdb": {"rating": 7.8, "votes": 10}}}
        assert source.get_best_rating(imdb_only)["source"] == "IMDb"
        assert source.get_best_rating({"simkl": {}}) is None
        assert source.has_valid_ratings({"simkl": {}}) is False
        assert source.has_valid_ratings(imdb_only) is True


MOVIE = {
    "id": 42,
    "title": "The Batman",
    "release_date": "2022-03-01",
    "poster_path": "/poster.jpg",
    "runtime": 176,
    "genres": [{"id": 80, "name": "Crime"}],
    "external_ids": {"imdb_id": "tt1877830"},
    "credits": {
        "cast": [{"name": "Robert Pattinson"}, {"name": "Zoe Kravitz"}],
        "crew": [{"name": "Matt Reeves", "job": "Director"}, {"name": "Someone", "job": "Grip"}],
    },
}


class TestTmdb:
    @pytest.mark.asyncio
    async def test_movie_details_are_cached_as_metadata(self, manager):
        recorder = Recorder(httpx.Response(200, json=MOVIE))
        source = TmdbSource(manager, api_key="key", transport=recorder.transport)

        details = await source.get_movie_details(42)
        await source.flush()
        again = await source.get_movie_details(42)
        await source.close()

        assert details["posterUrl"] == "https://image.tmdb.org/t/p/w500/poster.jpg"
        assert again == details
        assert len(recorder.requests) == 1
        assert recorder.requests[0].url.path == "/3/movie/42"
        assert recorder.requests[0].url.params["api_key"] == "key"

        metadata = await manager.get_title_metadata("tmdb-movie-42")
        assert metadata.imdb_id == "tt1877830"
        assert metadata.release_year == 2022
        assert metadata.cast == ["Robert Pattinson", "Zoe Kravitz"]
        assert metadata.crew == [{"name": "Matt Reeves", "job": "Director"}]

    @pytest.mark.asyncio
    async def test_details_fall_back_to_tv(self, manager):
        def handler(request):
            if request.url.path == "/3/movie/1399":
                return httpx.Response(404, json={"status_message": "not found"})
            return httpx.Response(200, json={"id": 1399, "name": "Game of Thrones", "episode_run_time": [60]})

        recorder = Recorder(handler)
        source = TmdbSource(manager, api_key="key", transport=recorder.transport)

        details = await source.get_details(1399)
        await source.close()

        assert details["name"] == "Game of Thrones"
        assert [r.url.path for r in recorder.requests] == ["/3/movie/1399", "/3/tv/1399"]
        metadata = await manager.get_title_metadata("tmdb-tv-1399")
        assert (metadata.media_type, metadata.runtime) == ("tv", 60)

    @pytest.mark.asyncio
    async def test_unconfigured_returns_none(self, manager):
        recorder = Recorder(httpx.Response(200, json=MOVIE))
        source = TmdbSource(manager, api_key=None, transport=recorder.transport)

        assert await source.get_details(42) is None
        assert recorder.requests == []


class TestBackgroundWrites:
    @pytest.mark.asyncio
    async def test_failed_write_back_is_logged_and_dropped(self, manager, caplog):
        source = TmdbSource(manager, api_key=None)

        async def broken_write():
            raise RuntimeError("disk full")

        source._spawn(broken_write())
        await source.close()

        assert source._background_tasks == set()
        assert "Background caching error: disk full" in caplog.text
