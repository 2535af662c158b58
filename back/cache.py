"""
Cache policy layer on top of the SQLite cache tables.

Each semantic cache type has its own default TTL (overridable through the
CACHE_TTL_* settings). The manager deduplicates offers before they are
written, batches multi-title reads, warms the offer cache and produces the
HTTP cache headers that match the backing TTL.

Store calls are blocking sqlite work, so every one of them runs on a worker
thread to keep the event loop free.
"""

import asyncio
import hashlib
import json
import logging
from email.utils import formatdate
from typing import Any, Awaitable, Callable, Iterable

from db.cache_store import CacheStore
from db.models import CachedRating, StreamingOffer, TitleMetadata

logger = logging.getLogger(__name__)

# Default TTLs per cache type (in seconds), longest-lived last
TTLS = {
    "search": 3600,      # 1 hour
    "details": 7200,     # 2 hours
    "offers": 21600,     # 6 hours, prices move
    "ratings": 86400,    # 1 day
    "metadata": 604800,  # 1 week, titles barely change
}

OfferFetcher = Callable[[str, str], Awaitable[Any]]


class CacheManager:
    def __init__(self, store: CacheStore, ttls: dict[str, int] | None = None, clock=None):
        self.store = store
        self.ttls = {**TTLS, **(ttls or {})}
        self.clock = clock or store.db.now

    def ttl(self, cache_type: str) -> int:
        return self.ttls.get(cache_type, self.ttls["search"])

    # --- API responses ---

    async def get_api_response(self, key: str) -> Any | None:
        return await asyncio.to_thread(self.store.get_cached_data, key)

    async def set_api_response(self, key: str, data: Any, ttl: int | None = None, cache_type: str = "search") -> None:
        await asyncio.to_thread(
            self.store.set_cached_data, key, data, self.ttl(cache_type) if ttl is None else ttl
        )

    # --- Streaming offers ---

    async def get_streaming_offers(self, title_id: str, country: str | None = None) -> list[StreamingOffer] | None:
        return await asyncio.to_thread(self.store.get_cached_offers, title_id, country)

    async def set_streaming_offers(self, offers: Iterable[StreamingOffer]) -> int:
        """Group offers by (title, country), dedupe each group, write each group."""
        groups: dict[tuple[str, str], list[StreamingOffer]] = {}
        for offer in offers:
            groups.setdefault((offer.title_id, offer.country), []).append(offer)

        written = 0
        for group in groups.values():
            written += await asyncio.to_thread(
                self.store.set_cached_offers, self.deduplicate_offers(group), self.ttl("offers")
            )
        return written

    @staticmethod
    def deduplicate_offers(offers: Iterable[StreamingOffer]) -> list[StreamingOffer]:
        """Keep the first offer seen per (provider, monetization, presentation).

        Order-stable on purpose: the write path never compares prices. The
        detail merge (title_merge.merge_offers) is the one that keeps the
        cheapest duplicate.
        """
        seen = set()
        unique = []
        for offer in offers:
            key = offer.dedup_key()
            if key in seen:
                continue
            seen.add(key)
            unique.append(offer)
        return unique

    @staticmethod
    def transform_offer_for_cache(offer: dict, title_id: str, country: str) -> StreamingOffer:
        """Turn a raw catalog offer into a cache row."""
        quality = offer.get("videoTechnology")
        if isinstance(quality, list):
            quality = ",".join(v for v in quality if v) or None

        package = offer.get("package") or {}
        return StreamingOffer(
            title_id=title_id,
            country=country,
            provider=package.get("clearName") or package.get("technicalName") or "Unknown",
            monetization_type=offer.get("monetizationType") or "Unknown",
            presentation_type=offer.get("presentationType") or "Unknown",
            price=offer.get("retailPriceValue"),
            currency=offer.get("currency"),
            url=offer.get("standardWebURL"),
            quality=quality or None,
            data=offer,
        )

    # --- Ratings ---

    async def get_ratings(self, imdb_id: str | None = None, tmdb_id: str | None = None) -> list[CachedRating] | None:
        return await asyncio.to_thread(self.store.get_cached_ratings, imdb_id, tmdb_id)

    async def set_rating(self, rating: CachedRating) -> None:
        await asyncio.to_thread(self.store.set_cached_ratings, rating, self.ttl("ratings"))

    # --- Title metadata ---

    async def get_title_metadata(self, id: str) -> TitleMetadata | None:
        return await asyncio.to_thread(self.store.get_cached_metadata, id)

    async def set_title_metadata(self, metadata: TitleMetadata) -> None:
        await asyncio.to_thread(self.store.set_cached_metadata, metadata, self.ttl("metadata"))

    # --- Management ---

    async def get_stats(self) -> dict:
        return await asyncio.to_thread(self.store.get_cache_stats)

    async def invalidate(self, cache_type: str | None = None) -> dict[str, int]:
        return await asyncio.to_thread(self.store.clear_cache, cache_type)

    async def cleanup(self) -> dict[str, int]:
        return await asyncio.to_thread(self.store.clear_expired_cache)

    async def clear_title(self, title_id: str) -> dict[str, int]:
        return await asyncio.to_thread(self.store.clear_title, title_id)

    async def clear_offers(self, title_id: str | None = None, country: str | None = None) -> int:
        return await asyncio.to_thread(self.store.clear_offers, title_id, country)

    async def table_counts(self) -> dict[str, dict[str, int]]:
        return await asyncio.to_thread(self.store.table_counts)

    async def title_status(self, title_id: str, country: str | None = None) -> dict[str, int]:
        return await asyncio.to_thread(self.store.title_status, title_id, country)

    async def detailed_stats(self, cache_type: str) -> dict:
        return await asyncio.to_thread(self.store.detailed_stats, cache_type)

    async def warm_cache(
        self,
        title_ids: list[str],
        country: str = "US",
        fetch: OfferFetcher | None = None,
        limit: int | None = None,
    ) -> dict:
        """Fetch offers for every title that has none cached yet.

        Each title is its own task, so one slow or failing fetch never holds
        up or aborts the others.
        """
        if limit is not None:
            title_ids = title_ids[:limit]
        logger.info("Warming cache for %d titles in %s", len(title_ids), country)

        cold = []
        for title_id in title_ids:
            if await self.get_streaming_offers(title_id, country) is None:
                cold.append(title_id)

        summary = {
            "requested": len(title_ids),
            "already_cached": len(title_ids) - len(cold),
            "fetched": 0,
            "failed": [],
        }
        if fetch is None:
            summary["pending"] = cold
            return summary

        results = await asyncio.gather(
            *(fetch(title_id, country) for title_id in cold), return_exceptions=True
        )
        for title_id, result in zip(cold, results):
            if isinstance(result, BaseException):
                logger.warning("Cache warm failed for %s (%s): %s", title_id, country, result)
                summary["failed"].append(title_id)
            else:
                summary["fetched"] += 1
        return summary

    # --- Batch reads ---

    async def batch_get_offers(self, title_ids: list[str], country: str) -> dict[str, list[StreamingOffer]]:
        """Only titles with live offers appear in the result."""
        found = await asyncio.gather(*(self.get_streaming_offers(t, country) for t in title_ids))
        return {t: offers for t, offers in zip(title_ids, found) if offers}

    async def batch_get_ratings(self, imdb_ids: list[str]) -> dict[str, list[CachedRating]]:
        found = await asyncio.gather(*(self.get_ratings(imdb_id) for imdb_id in imdb_ids))
        return {i: ratings for i, ratings in zip(imdb_ids, found) if ratings}

    # --- HTTP helpers ---

    def generate_cache_headers(self, ttl: int, etag: str | None = None) -> dict[str, str]:
        ttl = max(ttl, 0)
        headers = {
            "Cache-Control": f"public, max-age={ttl}" if ttl else "no-store, max-age=0",
            "X-Cache-TTL": str(ttl),
            "Expires": formatdate(self.clock() + ttl, usegmt=True),
        }
        if etag:
            headers["ETag"] = etag if etag.startswith('"') else f'"{etag}"'
        return headers

    @staticmethod
    def generate_etag(data: Any) -> str:
        """Deterministic, key-order-sensitive hash of the JSON form of `data`."""
        raw = json.dumps(data, separators=(",", ":"), default=str)
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]

    def is_cache_stale(self, timestamp: float, ttl: float) -> bool:
        return timestamp + ttl < self.clock()
