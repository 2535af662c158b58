"""
Interfaces for the upstream services WatchHub talks to.

Three roles:
- CatalogSource: search, title records and per-country streaming offers
- MetadataSource: movie / TV details looked up by numeric id
- RatingsSource: ratings bundle looked up by IMDb id

Implementations read and write through the CacheManager. Write-backs that
the caller does not need to wait for run as background tasks; `flush()`
waits for the pending ones (used on shutdown and in tests).

Catalog title record format (what get_title_node returns):
{
    "id": "tm12345",
    "objectType": "MOVIE | SHOW",
    "content": {
        "title": "Title",
        "originalReleaseYear": 2024,
        "externalIds": {"imdbId": "tt0000001", "tmdbId": "42"},
        ...
    }
}

Offers format (what get_title_offers returns), keyed by lowercase country:
{
    "us": [{"package": {"clearName": "Netflix"}, "monetizationType": "FLATRATE",
            "presentationType": "HD", "retailPriceValue": null, ...}],
    "gb": [...]
}
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable

import httpx

from cache import CacheManager

logger = logging.getLogger(__name__)


class UpstreamSource:
    name: str = "base"
    base_url: str = ""

    def __init__(self, cache: CacheManager, transport: httpx.AsyncBaseTransport | None = None):
        self.cache = cache
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        # Keep references to background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

    def _spawn(self, write: Awaitable) -> None:
        task = asyncio.create_task(self._write_back(write))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _write_back(self, write: Awaitable) -> None:
        try:
            await write
        except Exception as e:
            # A failed write-back only costs a later cache miss
            logger.error("[%s] Background caching error: %s", self.name, e)

    async def flush(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks))

    async def close(self) -> None:
        await self.flush()
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class CatalogSource(UpstreamSource, ABC):
    @abstractmethod
    async def search_titles(self, query: str, country: str) -> list[dict]:
        """Title records matching a free-text query."""
        ...

    @abstractmethod
    async def get_title_node(self, title_id: str, country: str) -> dict | None:
        """One title record, or None when the catalog has nothing for the id."""
        ...

    @abstractmethod
    async def get_title_offers(self, title_id: str, countries: list[str]) -> dict[str, list[dict]]:
        """Raw offers per lowercase country code."""
        ...

    async def get_popular_titles(self, country: str, limit: int = 50) -> list[dict]:
        return []

    async def warm_title(self, title_id: str, country: str) -> None:
        """Fetch offers for one title and wait until they are cached."""
        await self.get_title_offers(title_id, [country])
        await self.flush()


class MetadataSource(UpstreamSource, ABC):
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def get_movie_details(self, movie_id: int) -> dict | None:
        ...

    @abstractmethod
    async def get_tv_details(self, tv_id: int) -> dict | None:
        ...

    async def get_details(self, tmdb_id: int) -> dict | None:
        """Try the id as a movie first, then as a TV show."""
        return await self.get_movie_details(tmdb_id) or await self.get_tv_details(tmdb_id)


class RatingsSource(UpstreamSource, ABC):
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def get_ratings_by_imdb_id(self, imdb_id: str, sources: str = "simkl,ext,rank") -> dict | None:
        ...

    @abstractmethod
    def has_valid_ratings(self, ratings: dict | None) -> bool:
        ...

    @abstractmethod
    def get_best_rating(self, ratings: dict | None) -> dict | None:
        ...
