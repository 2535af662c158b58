"""
Pytest fixtures for WatchHub tests
"""
import os
import sys

import pytest

# Add backend directory to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "back"))

from fastapi.testclient import TestClient  # noqa: E402

from cache import CacheManager  # noqa: E402
from config import Settings  # noqa: E402
from db.cache_store import CacheStore  # noqa: E402
from db.database import Database  # noqa: E402
from db.models import StreamingOffer  # noqa: E402
from errors import SourceError  # noqa: E402
from main import create_app  # noqa: E402
from sources.base import CatalogSource, MetadataSource  # noqa: E402
from sources.simkl import SimklSource  # noqa: E402

START = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCatalog(CatalogSource):
    """In-memory catalog. Values that are exceptions are raised on lookup."""

    name = "JustWatch"

    def __init__(self, nodes=None, offers=None, search_nodes=None, popular=None):
        super().__init__(cache=None)
        self.nodes = nodes or {}
        self.offers = offers or {}
        self.search_nodes = search_nodes or []
        self.popular = popular or []
        self.search_calls = []
        self.warmed = []

    async def search_titles(self, query, country="US"):
        self.search_calls.append((query, country))
        if isinstance(self.search_nodes, Exception):
            raise self.search_nodes
        return self.search_nodes

    async def get_popular_titles(self, country="US", limit=50):
        return self.popular

    async def get_title_node(self, title_id, country="US"):
        node = self.nodes.get(title_id)
        if isinstance(node, Exception):
            raise node
        return node

    async def get_title_offers(self, title_id, countries):
        offer_map = self.offers.get(title_id, {})
        if isinstance(offer_map, Exception):
            raise offer_map
        return offer_map

    async def warm_title(self, title_id, country):
        if title_id.startswith("fail"):
            raise SourceError(f"cannot warm {title_id}", self.name)
        self.warmed.append((title_id, country))


class FakeMetadata(MetadataSource):
    name = "Tmdb"

    def __init__(self, movies=None, shows=None, configured=True):
        super().__init__(cache=None)
        self.movies = movies or {}
        self.shows = shows or {}
        self.configured = configured

    def is_configured(self):
        return self.configured

    async def get_movie_details(self, movie_id):
        return self.movies.get(movie_id)

    async def get_tv_details(self, tv_id):
        return self.shows.get(tv_id)


class FakeRatings(SimklSource):
    """SIMKL rating helpers over a fixed table of bundles."""

    def __init__(self, bundles=None, configured=True):
        super().__init__(cache=None, api_key="simkl-key" if configured else None)
        self.bundles = bundles or {}

    async def get_ratings_by_imdb_id(self, imdb_id, sources="simkl,ext,rank"):
        if not self.is_configured():
            return None
        bundle = self.bundles.get(imdb_id)
        if isinstance(bundle, Exception):
            raise bundle
        return bundle


def make_node(node_id, title="Batman", year=2022, object_type="MOVIE", imdb_id=None, tmdb_id=None, **content):
    return {
        "id": node_id,
        "objectType": object_type,
        "content": {
            "title": title,
            "originalReleaseYear": year,
            "externalIds": {"imdbId": imdb_id, "tmdbId": tmdb_id},
            **content,
        },
    }


def make_offer(provider="Netflix", monetization="FLATRATE", presentation="HD", price=None, **extra):
    return {
        "package": {"clearName": provider, "technicalName": provider.lower()},
        "monetizationType": monetization,
        "presentationType": presentation,
        "retailPriceValue": price,
        "currency": "USD",
        "standardWebURL": f"https://example.com/{provider.lower()}",
        **extra,
    }


def make_cached_offer(title_id, country="US", provider="Netflix", monetization="FLATRATE",
                      presentation="HD", price=None):
    return StreamingOffer(
        title_id=title_id,
        country=country,
        provider=provider,
        monetization_type=monetization,
        presentation_type=presentation,
        price=price,
        data=make_offer(provider, monetization, presentation, price),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path, clock):
    database = Database(str(tmp_path / "cache.db"), clock=clock)
    database.initialize()
    return database


@pytest.fixture
def store(db):
    return CacheStore(db)


@pytest.fixture
def manager(store):
    return CacheManager(store)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "app.db"),
        tmdb_api_key="tmdb-key",
        simkl_api_key="simkl-key",
        default_country="US",
        log_level="WARNING",
    )


@pytest.fixture
def fake_catalog():
    return FakeCatalog()


@pytest.fixture
def fake_metadata():
    return FakeMetadata()


@pytest.fixture
def fake_ratings():
    return FakeRatings()


@pytest.fixture
def app(settings, clock, fake_catalog, fake_metadata, fake_ratings):
    return create_app(
        settings,
        clock=clock,
        catalog=fake_catalog,
        metadata=fake_metadata,
        ratings=fake_ratings,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
