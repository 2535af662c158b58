"""
Title-detail lookup across duplicate catalog ids.

The catalog sometimes lists one title under several ids. A detail lookup
fetches every id in parallel, keeps the first usable record as the base,
backfills its external ids from the others, and merges the offers of all
ids per country, keeping the cheapest offer per (provider, monetization).

The merged result is returned as-is and never written to a cache table;
only the per-id fetches go through the cache.
"""

import asyncio
import copy
import logging
import math
from typing import Any, Iterable

from pydantic import BaseModel, Field

from errors import NotFoundError, ValidationError
from sources.base import CatalogSource

logger = logging.getLogger(__name__)

MAJOR_COUNTRIES = ("US", "GB", "CA", "AU", "DE", "FR", "ES", "IT")


class MergedTitle(BaseModel):
    title: dict[str, Any]
    offers: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)


def lookup_ids(title_id: str, duplicate_ids: Iterable[str] | None = None) -> list[str]:
    """Primary id first, then the duplicates, without repeats or blanks."""
    ids = []
    for candidate in [title_id, *(duplicate_ids or [])]:
        candidate = (candidate or "").strip()
        if candidate and candidate not in ids:
            ids.append(candidate)
    return ids


def merge_external_ids(base: dict, others: Iterable[dict]) -> dict:
    """Fill external ids missing on `base` from the first other record that has them."""
    content = base.get("content")
    if content is None:
        content = base["content"] = {}
    if not isinstance(content, dict):
        return base
    merged = dict(content.get("externalIds") or {})
    for record in others:
        ext = ((record.get("content") or {}).get("externalIds")) or {}
        for key, value in ext.items():
            if value and not merged.get(key):
                merged[key] = value
    content["externalIds"] = merged
    return base


def _price(offer: dict) -> float:
    price = offer.get("retailPriceValue")
    return price if isinstance(price, (int, float)) else math.inf


def merge_offers(offer_maps: Iterable[dict[str, list[dict]]], countries: Iterable[str] = MAJOR_COUNTRIES) -> dict[str, list[dict]]:
    """
    Union offers per country across ids, then keep the lowest-priced offer
    per (provider, monetization). Offers without a price lose to any priced
    one; on equal prices the first one seen stays.
    """
    pooled: dict[str, list[dict]] = {}
    for offer_map in offer_maps:
        for country in countries:
            country_offers = offer_map.get(country.lower()) or []
            if country_offers:
                pooled.setdefault(country, []).extend(country_offers)

    merged = {}
    for country, country_offers in pooled.items():
        best: dict[tuple, dict] = {}
        for offer in country_offers:
            key = ((offer.get("package") or {}).get("clearName"), offer.get("monetizationType"))
            if key not in best or _price(offer) < _price(best[key]):
                best[key] = offer
        merged[country] = list(best.values())
    return merged


async def merge_title_details(
    catalog: CatalogSource,
    title_id: str,
    duplicate_ids: Iterable[str] | None = None,
    country: str = "US",
    countries: Iterable[str] = MAJOR_COUNTRIES,
) -> MergedTitle:
    ids = lookup_ids(title_id, duplicate_ids)
    if not ids:
        raise NotFoundError("Title not found")
    countries = list(countries)

    # Records and offers are independent fan-outs; neither waits on the other
    node_results, offer_results = await asyncio.gather(
        asyncio.gather(*(catalog.get_title_node(i, country) for i in ids), return_exceptions=True),
        asyncio.gather(*(catalog.get_title_offers(i, countries) for i in ids), return_exceptions=True),
    )
    # A rejected request is the caller's mistake, not a failed branch
    for result in (*node_results, *offer_results):
        if isinstance(result, ValidationError):
            raise result

    records = []
    for i, result in zip(ids, node_results):
        if isinstance(result, BaseException):
            logger.warning("Title fetch failed for %s: %s", i, result)
        elif result:
            records.append(result)
    if not records:
        raise NotFoundError("Title not found")

    base = copy.deepcopy(records[0])
    if len(records) > 1:
        merge_external_ids(base, records[1:])

    offer_maps, failed = [], []
    for i, result in zip(ids, offer_results):
        if isinstance(result, BaseException):
            logger.warning("Offer fetch failed for %s: %s", i, result)
            failed.append(i)
        else:
            offer_maps.append(result or {})

    offers = merge_offers(offer_maps, countries)
    logger.debug(
        "Merged %d offers from %d ids across %d countries",
        sum(len(v) for v in offers.values()), len(ids), len(offers),
    )
    return MergedTitle(title=base, offers=offers, ids=ids, failed_ids=failed)
