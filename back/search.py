"""
Unified search over the catalog.

Catalog nodes are mapped to a flat result shape, filtered by media type,
and entries that share (normalized title, year, media type) are merged into
one result that lists every catalog id under `duplicateIds`. The detail
route takes those ids back to merge offers across them.

Whole responses are cached in api_cache with the search TTL, and every
search is appended to the search history.
"""

import asyncio
import functools
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ConfigError

from cache import CacheManager
from db.database import Database
from errors import SourceError, ValidationError
from sources.base import CatalogSource

logger = logging.getLogger(__name__)

JUSTWATCH_SITE = "https://justwatch.com"
JUSTWATCH_IMAGES = "https://images.justwatch.com"
RATING_THRESHOLD = 0.5


class SearchConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    country: str = "US"
    max_results_per_source: int = Field(default=20, gt=0, alias="maxResultsPerSource")
    deduplicate_results: bool = Field(default=True, alias="deduplicateResults")
    media_type_filter: Optional[str] = Field(default=None, alias="mediaTypeFilter")


def build_search_config(data: dict) -> SearchConfig:
    """Validate a search configuration, dropping unset values so defaults apply."""
    try:
        return SearchConfig.model_validate({k: v for k, v in data.items() if v is not None})
    except ConfigError as e:
        fields = ", ".join(sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")}))
        raise ValidationError(f"Invalid search configuration: {fields}") from e


def poster_url(path: str | None) -> str | None:
    if path and path.startswith("/"):
        return f"{JUSTWATCH_IMAGES}{path}"
    return path


def map_node(node: dict) -> dict:
    """Catalog node -> flat search result."""
    content = node.get("content") or {}
    external = content.get("externalIds") or {}
    scoring = content.get("scoring") or {}
    full_path = content.get("fullPath")
    return {
        "id": node.get("id"),
        "source": "JustWatch",
        "title": content.get("title") or "",
        "overview": content.get("shortDescription"),
        "releaseYear": content.get("originalReleaseYear"),
        "releaseDate": content.get("originalReleaseDate"),
        "mediaType": "tv" if (node.get("objectType") or "").lower() == "show" else "movie",
        "posterUrl": poster_url(content.get("posterUrl")),
        "genres": [g["shortName"] for g in content.get("genres") or [] if g.get("shortName")],
        "imdbId": external.get("imdbId"),
        "tmdbId": external.get("tmdbId"),
        "rating": scoring.get("imdbScore"),
        "voteCount": scoring.get("imdbVotes"),
        "runtime": content.get("runtime"),
        "justWatchUrl": f"{JUSTWATCH_SITE}{full_path}" if full_path else None,
        "countries": content.get("productionCountries") or [],
    }


def matches_media_type(result: dict, media_type: str | None) -> bool:
    if not media_type or media_type.lower() == "all":
        return True
    wanted = media_type.lower()
    actual = (result.get("mediaType") or "").lower()
    return actual == wanted or {actual, wanted} == {"tv", "show"}


def _dedupe_key(result: dict) -> str:
    return f"{result['title'].lower().strip()}:{result.get('releaseYear') or 0}:{result['mediaType']}"


def _longer(current: str | None, candidate: str | None) -> str | None:
    if candidate and len(candidate) > len(current or ""):
        return candidate
    return current


def _union(first: list, second: list) -> list:
    return list(dict.fromkeys([*first, *second]))


def merge_results(group: list[dict]) -> dict:
    """First entry is the base; the others fill gaps and add genres / countries."""
    merged = dict(group[0])
    if len(group) == 1:
        return merged
    merged["duplicateIds"] = [r["id"] for r in group]
    for result in group[1:]:
        merged["posterUrl"] = _longer(merged.get("posterUrl"), result.get("posterUrl"))
        merged["overview"] = _longer(merged.get("overview"), result.get("overview"))
        merged["genres"] = _union(merged.get("genres") or [], result.get("genres") or [])
        merged["countries"] = _union(merged.get("countries") or [], result.get("countries") or [])
        for field in ("imdbId", "tmdbId", "justWatchUrl", "runtime", "releaseDate", "rating", "voteCount"):
            if not merged.get(field) and result.get(field):
                merged[field] = result[field]
    merged["mergedFrom"] = f"{len(group)} JustWatch entries"
    return merged


def deduplicate_results(results: list[dict]) -> list[dict]:
    groups: dict[str, list[dict]] = {}
    for result in results:
        groups.setdefault(_dedupe_key(result), []).append(result)
    duplicates = sum(1 for g in groups.values() if len(g) > 1)
    if duplicates:
        logger.debug("Merging %d duplicate groups in search results", duplicates)
    return [merge_results(group) for group in groups.values()]


def _compare(a: dict, b: dict) -> int:
    a_rating, b_rating = a.get("rating") or 0, b.get("rating") or 0
    if abs(a_rating - b_rating) > RATING_THRESHOLD:
        return -1 if a_rating > b_rating else 1
    a_votes, b_votes = a.get("voteCount") or 0, b.get("voteCount") or 0
    if a_votes != b_votes:
        return b_votes - a_votes
    return (b.get("releaseYear") or 0) - (a.get("releaseYear") or 0)


def sort_results(results: list[dict]) -> list[dict]:
    """Higher rating first (only past a half-point gap), then votes, then newer."""
    return sorted(results, key=functools.cmp_to_key(_compare))


class SearchService:
    def __init__(self, catalog: CatalogSource, cache: CacheManager, db: Database):
        self.catalog = catalog
        self.cache = cache
        self.db = db

    @staticmethod
    def cache_key(query: str, config: SearchConfig) -> str:
        return (
            f"search:{query.strip().lower()}:{config.country}:{config.media_type_filter or 'all'}"
            f":{config.max_results_per_source}:{int(config.deduplicate_results)}"
        )

    async def search(self, query: str, config: SearchConfig) -> dict:
        if not query or not query.strip():
            raise ValidationError('Query parameter "q" is required')

        key = self.cache_key(query, config)
        response = await self.cache.get_api_response(key)
        if response is None:
            response = await self._search(query.strip(), config)
            if not response["errors"]["JustWatch"]:
                await self.cache.set_api_response(key, response, cache_type="search")
        else:
            logger.debug("Search cache hit for %s", key)

        await asyncio.to_thread(self.db.log_search, query.strip(), config.country, response["totalResults"])
        return response

    async def _search(self, query: str, config: SearchConfig) -> dict:
        response = {
            "results": [],
            "totalResults": 0,
            "resultsBySource": {"JustWatch": 0},
            "errors": {"JustWatch": ""},
        }
        try:
            nodes = await self.catalog.search_titles(query, config.country)
        except SourceError as e:
            logger.warning("JustWatch search error for %r: %s", query, e)
            response["errors"]["JustWatch"] = e.message
            return response

        results = [map_node(n) for n in nodes[: config.max_results_per_source]]
        results = [r for r in results if matches_media_type(r, config.media_type_filter)]
        response["resultsBySource"]["JustWatch"] = len(results)

        if config.deduplicate_results and len(results) > 1:
            results = deduplicate_results(results)

        response["results"] = sort_results(results)
        response["totalResults"] = len(response["results"])
        logger.info("Search %r (%s): %d results", query, config.country, response["totalResults"])
        return response
