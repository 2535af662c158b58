"""
SIMKL ratings client.

API: https://api.simkl.com (needs SIMKL_API_KEY)
Rate limit is not published; requests go out one at a time with a small
gap and 429 answers are retried with a growing back-off.

Ratings bundle format:
{
    "simkl": {"rating": 8.1, "votes": 1500},
    "external": {"imdb": {"rating": 8.3, "votes": 250000}}
}
"""

import asyncio
import logging
import time

import httpx

from db.models import CachedRating
from errors import SourceError
from sources.base import RatingsSource

logger = logging.getLogger(__name__)

SIMKL_BASE = "https://api.simkl.com"
TIMEOUT = 10

_MIN_DELAY = 0.5  # 500ms between requests
_MAX_RETRIES = 2


def _votes(entry: dict | None) -> int:
    return (entry or {}).get("votes") or 0


class SimklSource(RatingsSource):
    name = "Simkl"
    base_url = SIMKL_BASE

    def __init__(
        self,
        cache,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        min_delay: float = _MIN_DELAY,
    ):
        super().__init__(cache, transport)
        self.api_key = api_key
        self.min_delay = min_delay
        # Sequential processing, shared by every caller of this client
        self._lock = asyncio.Lock()
        self._last_request_time = 0.0

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=SIMKL_BASE,
                headers={
                    "Accept": "application/json",
                    "User-Agent": "WatchHub",
                    "simkl-api-key": self.api_key or "",
                },
                timeout=TIMEOUT,
                transport=self._transport,
            )
        return self._client

    async def _rate_limited_get(self, endpoint: str, params: dict) -> dict:
        """Single rate-limited SIMKL call, retried on 429."""
        if not self.api_key:
            raise SourceError("SIMKL API key is not configured", self.name)
        client = self._get_client()

        for attempt in range(_MAX_RETRIES):
            # Always go through rate limiter (including retries)
            async with self._lock:
                wait = self.min_delay - (time.monotonic() - self._last_request_time)
                if wait > 0:
                    await asyncio.sleep(wait)
                self._last_request_time = time.monotonic()

            try:
                resp = await client.get(endpoint, params={**params, "client_id": self.api_key})
            except httpx.HTTPError as e:
                raise SourceError(f"Failed to fetch from SIMKL: {e}", self.name) from e

            if resp.status_code == 429:
                logger.warning("[Simkl] 429 rate limited on %s, retry %d", endpoint, attempt + 1)
                await asyncio.sleep(self.min_delay * 4 * (attempt + 1))
                continue
            if resp.status_code != 200:
                raise SourceError(f"SIMKL API error: HTTP {resp.status_code}", self.name, resp.status_code)
            return resp.json()

        raise SourceError("SIMKL API rate limit exceeded", self.name, 429)

    async def get_ratings_by_imdb_id(self, imdb_id: str, sources: str = "simkl,ext,rank") -> dict | None:
        if not self.is_configured():
            logger.debug("SIMKL API key not configured, no ratings for %s", imdb_id)
            return None

        cached = await self.cache.get_ratings(imdb_id)
        for rating in cached or []:
            if rating.source == "simkl":
                return rating.data

        # SIMKL wants the bare number
        clean_id = imdb_id[2:] if imdb_id.startswith("tt") else imdb_id
        try:
            ratings = await self._rate_limited_get(f"/ratings/{clean_id}", {"fields": sources})
        except SourceError as e:
            logger.warning("[Simkl] ratings lookup failed for %s: %s", imdb_id, e)
            return None

        if ratings:
            simkl = ratings.get("simkl") or {}
            self._spawn(self.cache.set_rating(CachedRating(
                imdb_id=imdb_id,
                source="simkl",
                rating=simkl.get("rating"),
                vote_count=simkl.get("votes"),
                data=ratings,
            )))
        return ratings or None

    def has_valid_ratings(self, ratings: dict | None) -> bool:
        if not ratings:
            return False
        simkl = ratings.get("simkl") or {}
        imdb = (ratings.get("external") or {}).get("imdb") or {}
        return bool(simkl.get("rating") or imdb.get("rating"))

    def get_best_rating(self, ratings: dict | None) -> dict | None:
        """SIMKL's own score when it has votes, otherwise IMDb's."""
        if not ratings:
            return None
        simkl = ratings.get("simkl") or {}
        if simkl.get("rating") and _votes(simkl) > 0:
            return {"source": "SIMKL", "rating": simkl["rating"], "votes": simkl["votes"]}
        imdb = (ratings.get("external") or {}).get("imdb") or {}
        if imdb.get("rating") and _votes(imdb) > 0:
            return {"source": "IMDb", "rating": imdb["rating"], "votes": imdb["votes"]}
        return None
