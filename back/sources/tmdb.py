"""
TMDB metadata client.

API: https://api.themoviedb.org/3 (needs TMDB_API_KEY)
Details are cached in title_metadata under `tmdb-movie-<id>` / `tmdb-tv-<id>`
with the metadata TTL; the raw TMDB document is kept in `data`.
Unconfigured or failing lookups return None instead of raising.
"""

import logging

import httpx

from db.models import TitleMetadata
from errors import SourceError
from sources.base import MetadataSource

logger = logging.getLogger(__name__)

TMDB_BASE = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p/w500"
TIMEOUT = 10
CAST_LIMIT = 10


def _year(date: str | None) -> int | None:
    if date and len(date) >= 4 and date[:4].isdigit():
        return int(date[:4])
    return None


def _credits(details: dict) -> tuple[list[str], list[dict]]:
    credits = details.get("credits") or {}
    cast = [c["name"] for c in (credits.get("cast") or [])[:CAST_LIMIT] if c.get("name")]
    crew = [
        {"name": c.get("name"), "job": c.get("job")}
        for c in credits.get("crew") or []
        if c.get("job") in ("Director", "Writer", "Screenplay", "Creator")
    ]
    return cast, crew


def movie_metadata(movie_id: int, movie: dict) -> TitleMetadata:
    cast, crew = _credits(movie)
    return TitleMetadata(
        id=f"tmdb-movie-{movie_id}",
        tmdb_id=str(movie_id),
        imdb_id=movie.get("imdb_id") or (movie.get("external_ids") or {}).get("imdb_id"),
        title=movie.get("title") or "",
        original_title=movie.get("original_title"),
        media_type="movie",
        release_year=_year(movie.get("release_date")),
        runtime=movie.get("runtime"),
        genres=[g["name"] for g in movie.get("genres") or [] if g.get("name")],
        countries=[c["iso_3166_1"] for c in movie.get("production_countries") or [] if c.get("iso_3166_1")],
        cast=cast,
        crew=crew,
        data=movie,
    )


def tv_metadata(tv_id: int, tv: dict) -> TitleMetadata:
    cast, crew = _credits(tv)
    runtimes = tv.get("episode_run_time") or []
    return TitleMetadata(
        id=f"tmdb-tv-{tv_id}",
        tmdb_id=str(tv_id),
        imdb_id=(tv.get("external_ids") or {}).get("imdb_id"),
        title=tv.get("name") or "",
        original_title=tv.get("original_name"),
        media_type="tv",
        release_year=_year(tv.get("first_air_date")),
        runtime=runtimes[0] if runtimes else None,
        genres=[g["name"] for g in tv.get("genres") or [] if g.get("name")],
        countries=[c["iso_3166_1"] for c in tv.get("production_countries") or [] if c.get("iso_3166_1")],
        cast=cast,
        crew=crew,
        data=tv,
    )


class TmdbSource(MetadataSource):
    name = "Tmdb"
    base_url = TMDB_BASE

    def __init__(self, cache, api_key: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(cache, transport)
        self.api_key = api_key

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=TMDB_BASE,
                headers={"Accept": "application/json"},
                timeout=TIMEOUT,
                transport=self._transport,
            )
        return self._client

    async def _request(self, endpoint: str, params: dict | None = None) -> dict:
        if not self.api_key:
            raise SourceError("TMDB API key is not configured", self.name)
        client = self._get_client()
        try:
            resp = await client.get(endpoint, params={"api_key": self.api_key, **(params or {})})
        except httpx.HTTPError as e:
            raise SourceError(f"Failed to fetch from TMDB: {e}", self.name) from e
        if resp.status_code != 200:
            raise SourceError(f"TMDB API error: HTTP {resp.status_code}", self.name, resp.status_code)
        return resp.json()

    async def _details(self, kind: str, tmdb_id: int) -> dict | None:
        if not self.is_configured():
            logger.debug("TMDB API key not configured, skipping %s %s", kind, tmdb_id)
            return None

        cached = await self.cache.get_title_metadata(f"tmdb-{kind}-{tmdb_id}")
        if cached and cached.data:
            return cached.data

        try:
            details = await self._request(f"/{kind}/{tmdb_id}", {"append_to_response": "external_ids,credits"})
        except SourceError as e:
            if e.status_code != 404:
                logger.warning("[Tmdb] %s %s lookup failed: %s", kind, tmdb_id, e)
            return None

        if details.get("poster_path"):
            details["posterUrl"] = f"{TMDB_IMAGE_BASE}{details['poster_path']}"

        metadata = movie_metadata(tmdb_id, details) if kind == "movie" else tv_metadata(tmdb_id, details)
        self._spawn(self.cache.set_title_metadata(metadata))
        return details

    async def get_movie_details(self, movie_id: int) -> dict | None:
        return await self._details("movie", movie_id)

    async def get_tv_details(self, tv_id: int) -> dict | None:
        return await self._details("tv", tv_id)
