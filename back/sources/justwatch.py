"""
JustWatch catalog client.

API: POST https://apis.justwatch.com/graphql (no key needed)
Search and popular lists both go through `popularTitles` with a filter.
Offers for several countries are fetched in one query, one aliased
`offers(country: XX)` field per country, keyed by the lowercase code.

Whole responses are cached in api_cache under
`justwatch:<operation>:<variables>`. Per-country offers are also written
to streaming_offers so later lookups can skip the API entirely.
"""

import json
import logging
import re

import httpx

from errors import SourceError, ValidationError
from sources.base import CatalogSource

logger = logging.getLogger(__name__)

JUSTWATCH_GRAPHQL_URL = "https://apis.justwatch.com/graphql"
TIMEOUT = 15

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json",
    "Content-Type": "application/json",
}

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")

TITLE_CONTENT_FIELDS = """
    title
    fullPath
    originalReleaseYear
    originalReleaseDate
    productionCountries
    runtime
    shortDescription
    genres { shortName }
    externalIds { imdbId tmdbId }
    posterUrl(profile: $profile, format: $formatPoster)
    backdrops(profile: $backdropProfile, format: $formatPoster) { backdropUrl }
    scoring { imdbScore imdbVotes tmdbScore tmdbPopularity }
"""

POPULAR_TITLES_QUERY = """
query %(operation)s(
    $searchTitlesFilter: TitleFilter!,
    $country: Country!,
    $language: Language!,
    $first: Int!,
    $formatPoster: ImageFormat,
    $profile: PosterProfile,
    $backdropProfile: BackdropProfile,
) {
    popularTitles(
        country: $country
        filter: $searchTitlesFilter
        first: $first
        sortBy: POPULAR
        sortRandomSeed: 0
    ) {
        edges {
            node {
                id
                objectId
                objectType
                content(country: $country, language: $language) {
                    %(fields)s
                }
            }
        }
    }
}
"""

TITLE_NODE_QUERY = """
query GetTitleNode(
    $nodeId: ID!,
    $language: Language!,
    $country: Country!,
    $formatPoster: ImageFormat,
    $profile: PosterProfile,
    $backdropProfile: BackdropProfile
) {
    node(id: $nodeId) {
        ... on MovieOrShow {
            id
            objectId
            objectType
            content(country: $country, language: $language) {
                %(fields)s
            }
        }
    }
}
""" % {"fields": TITLE_CONTENT_FIELDS}

OFFER_FRAGMENT = """
fragment TitleOffer on Offer {
    id
    presentationType
    monetizationType
    retailPrice(language: $language)
    retailPriceValue
    currency
    type
    package { id packageId clearName technicalName icon(profile: S100) }
    standardWebURL
    elementCount
    availableTo
    subtitleLanguages
    videoTechnology
    audioTechnology
    audioLanguages
}
"""

IMAGE_VARIABLES = {
    "formatPoster": "JPG",
    "formatOfferIcon": "PNG",
    "profile": "S718",
    "backdropProfile": "S1920",
}


def normalize_country(country: str) -> str:
    code = (country or "").strip().upper()
    if not _COUNTRY_RE.match(code):
        raise ValidationError(f"Invalid country code: {country!r}")
    return code


def title_offers_query(countries: list[str]) -> str:
    """One aliased offers field per country. Codes must already be normalized."""
    fields = "\n".join(
        f"{c.lower()}: offers(country: {c}, platform: $platform) {{ ...TitleOffer }}"
        for c in countries
    )
    return (
        "query GetTitleOffers($nodeId: ID!, $language: Language!, $platform: Platform! = WEB) {\n"
        "    node(id: $nodeId) {\n"
        "        ... on MovieOrShowOrSeasonOrEpisode {\n"
        f"{fields}\n"
        "        }\n"
        "    }\n"
        "}\n" + OFFER_FRAGMENT
    )


class JustWatchSource(CatalogSource):
    name = "JustWatch"
    base_url = JUSTWATCH_GRAPHQL_URL

    def __init__(self, cache, max_results: int = 20, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(cache, transport)
        self.max_results = max_results

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=HEADERS,
                timeout=TIMEOUT,
                transport=self._transport,
            )
        return self._client

    async def _graphql(
        self,
        operation_name: str,
        query: str,
        variables: dict,
        cache_type: str = "search",
        cache_key: str | None = None,
    ) -> dict:
        cache_key = cache_key or f"justwatch:{operation_name}:{json.dumps(variables, sort_keys=True)}"
        cached = await self.cache.get_api_response(cache_key)
        if cached is not None:
            logger.debug("[JustWatch] cache hit %s", cache_key)
            return cached

        client = self._get_client()
        try:
            resp = await client.post(
                JUSTWATCH_GRAPHQL_URL,
                json={"operationName": operation_name, "query": query, "variables": variables},
            )
        except httpx.HTTPError as e:
            raise SourceError(f"Failed to execute JustWatch query: {e}", self.name) from e

        if resp.status_code != 200:
            raise SourceError(
                f"JustWatch API error: HTTP {resp.status_code}", self.name, resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise SourceError("JustWatch returned invalid JSON", self.name) from e
        if data.get("errors"):
            raise SourceError(f"GraphQL error: {data['errors'][0].get('message')}", self.name)

        self._spawn(self.cache.set_api_response(cache_key, data, cache_type=cache_type))
        return data

    async def _popular(self, operation_name: str, query: str, country: str, first: int, cache_type: str) -> list[dict]:
        country = normalize_country(country)
        variables = {
            "searchTitlesFilter": {"searchQuery": query, "includeTitlesWithoutUrl": True},
            "country": country,
            "language": "en",
            "first": first,
            "filter": {},
            **IMAGE_VARIABLES,
        }
        gql = POPULAR_TITLES_QUERY % {"operation": operation_name, "fields": TITLE_CONTENT_FIELDS}
        data = await self._graphql(operation_name, gql, variables, cache_type=cache_type)
        edges = ((data.get("data") or {}).get("popularTitles") or {}).get("edges") or []
        return [e["node"] for e in edges if e.get("node")]

    # ── Search ────────────────────────────────────────────────

    async def search_titles(self, query: str, country: str = "US") -> list[dict]:
        return await self._popular("GetSearchTitles", query, country, self.max_results, "search")

    async def get_popular_titles(self, country: str = "US", limit: int = 50) -> list[dict]:
        # Popular lists move slowly, keep them as long as offers
        return await self._popular("GetPopularTitles", "", country, limit, "offers")

    # ── Title ─────────────────────────────────────────────────

    async def get_title_node(self, title_id: str, country: str = "US") -> dict | None:
        variables = {
            "nodeId": title_id,
            "country": normalize_country(country),
            "language": "en",
            **IMAGE_VARIABLES,
        }
        data = await self._graphql("GetTitleNode", TITLE_NODE_QUERY, variables, cache_type="details")
        node = (data.get("data") or {}).get("node")
        return node or None

    async def get_title_offers(
        self, title_id: str, countries: list[str], background: bool = True
    ) -> dict[str, list[dict]]:
        """
        Serve each country from streaming_offers when live, fetch the rest
        in one query. Fresh offers are written back through the manager,
        in the background unless `background` is False.
        """
        countries = [normalize_country(c) for c in countries]
        offers_by_country: dict[str, list[dict]] = {}
        missing = []
        for country in countries:
            cached = await self.cache.get_streaming_offers(title_id, country)
            if cached:
                offers_by_country[country.lower()] = [o.data for o in cached]
            else:
                missing.append(country)

        if not missing:
            return offers_by_country

        data = await self._graphql(
            "GetTitleOffers",
            title_offers_query(missing),
            {"nodeId": title_id, "language": "en", "platform": "WEB"},
            cache_type="offers",
            cache_key=f"justwatch:offers:{title_id}:{','.join(missing)}",
        )
        node = (data.get("data") or {}).get("node") or {}

        fresh = []
        for country in missing:
            country_offers = node.get(country.lower()) or []
            offers_by_country[country.lower()] = country_offers
            fresh.extend(
                self.cache.transform_offer_for_cache(offer, title_id, country)
                for offer in country_offers
            )

        if fresh:
            if background:
                self._spawn(self.cache.set_streaming_offers(fresh))
            else:
                await self.cache.set_streaming_offers(fresh)
            logger.debug("[JustWatch] %d fresh offers for %s", len(fresh), title_id)
        return offers_by_country

    async def warm_title(self, title_id: str, country: str) -> None:
        await self.get_title_offers(title_id, [country], background=False)
