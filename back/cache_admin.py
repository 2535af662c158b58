"""
Cache control and observability, independent of the HTTP layer.

Every public coroutine returns an AdminResult and never raises: caller
mistakes come back as kind="validation" (400), anything else as
kind="internal" (500). The routes in main.py only translate the result.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as RequestBodyError

from cache import CacheManager, OfferFetcher
from config import Settings
from db.cache_store import DETAILED_STATS_TABLES, TABLE_ALIASES
from db.database import Database
from errors import ValidationError

logger = logging.getLogger(__name__)

VALID_ACTIONS = ("clear_all", "clear_type", "clear_expired", "clear_title", "clear_offers", "warm_cache")

# Table name -> key used in status / stats payloads
STATUS_KEYS = {
    "api_cache": "api_cache",
    "streaming_offers": "streaming_offers",
    "ratings_cache": "ratings",
    "title_metadata": "metadata",
}

STATUS_CODES = {"ok": 200, "validation": 400, "internal": 500}


@dataclass
class AdminResult:
    ok: bool
    body: dict = field(default_factory=dict)
    kind: str = "ok"

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    @classmethod
    def success(cls, body: dict) -> "AdminResult":
        return cls(ok=True, body=body, kind="ok")

    @classmethod
    def invalid(cls, message: str) -> "AdminResult":
        return cls(ok=False, body={"error": message}, kind="validation")

    @classmethod
    def failure(cls, error: Exception) -> "AdminResult":
        return cls(
            ok=False,
            body={"error": "Internal server error", "message": str(error) or type(error).__name__},
            kind="internal",
        )


class InvalidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: Optional[str] = None
    cache_type: Optional[str] = Field(default=None, alias="cacheType")
    title_id: Optional[str] = Field(default=None, alias="titleId")
    country: Optional[str] = None
    title_ids: Optional[list[str]] = Field(default=None, alias="titleIds")


def _parse_invalidate(payload: Any) -> InvalidateRequest:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return InvalidateRequest.model_validate(payload)
    except RequestBodyError as e:
        fields = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
        if "titleIds" in fields:
            raise ValidationError("Title IDs array is required for warm_cache action") from e
        raise ValidationError(f"Invalid request body: {', '.join(sorted(fields))}") from e


def _iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class CacheAdmin:
    def __init__(
        self,
        manager: CacheManager,
        db: Database,
        settings: Settings,
        fetch_offers: OfferFetcher | None = None,
    ):
        self.manager = manager
        self.db = db
        self.settings = settings
        self.fetch_offers = fetch_offers
        self._actions = {
            "clear_all": self._clear_all,
            "clear_type": self._clear_type,
            "clear_expired": self._clear_expired,
            "clear_title": self._clear_title,
            "clear_offers": self._clear_offers,
            "warm_cache": self._warm_cache,
        }

    # --- Invalidation ---

    async def invalidate(self, payload: Any) -> AdminResult:
        try:
            request = _parse_invalidate(payload)
            handler = self._actions.get(request.action or "")
            if handler is None:
                raise ValidationError(f"Invalid action. Valid actions: {', '.join(VALID_ACTIONS)}")
            body = await handler(request)
            logger.info("Cache action %s: %s", request.action, body["message"])
            return AdminResult.success({"success": True, "action": request.action, **body})
        except ValidationError as e:
            return AdminResult.invalid(e.message)
        except Exception as e:
            logger.exception("Cache invalidation failed")
            return AdminResult.failure(e)

    async def _clear_all(self, request: InvalidateRequest) -> dict:
        deleted = await self.manager.invalidate()
        return {"message": "All cache entries cleared", "deleted": deleted}

    async def _clear_type(self, request: InvalidateRequest) -> dict:
        if not request.cache_type:
            raise ValidationError("Cache type is required for clear_type action")
        deleted = await self.manager.invalidate(request.cache_type)
        return {
            "message": f"Cache type {request.cache_type} cleared",
            "cacheType": request.cache_type,
            "deleted": deleted,
        }

    async def _clear_expired(self, request: InvalidateRequest) -> dict:
        deleted = await self.manager.cleanup()
        return {"message": "Expired cache entries cleared", "deleted": deleted}

    async def _clear_title(self, request: InvalidateRequest) -> dict:
        if not request.title_id:
            raise ValidationError("Title ID is required for clear_title action")
        deleted = await self.manager.clear_title(request.title_id)
        return {
            "message": f"Cache for title {request.title_id} cleared",
            "titleId": request.title_id,
            "deleted": deleted,
        }

    async def _clear_offers(self, request: InvalidateRequest) -> dict:
        count = await self.manager.clear_offers(request.title_id, request.country)
        return {
            "message": f"Cleared {count} offer entries",
            "deletedCount": count,
            "titleId": request.title_id,
            "country": request.country,
        }

    async def _warm_cache(self, request: InvalidateRequest) -> dict:
        if request.title_ids is None:
            raise ValidationError("Title IDs array is required for warm_cache action")
        country = request.country or self.settings.default_country
        summary = await self.manager.warm_cache(
            request.title_ids,
            country,
            fetch=self.fetch_offers,
            limit=self.settings.warm_cache_limit,
        )
        return {
            "message": f"Cache warming initiated for {len(request.title_ids)} titles",
            "titleCount": len(request.title_ids),
            "country": country,
            "warm": summary,
        }

    # --- Status ---

    async def status(self, title_id: str | None = None, country: str | None = None) -> AdminResult:
        try:
            if title_id:
                counts = await self.manager.title_status(title_id, country)
                cached = {name: count > 0 for name, count in counts.items()}
                return AdminResult.success({
                    "titleId": title_id,
                    "country": country,
                    "cached": cached,
                    "isCached": any(cached.values()),
                })

            counts = await self.manager.table_counts()
            body = {}
            for bucket in ("active", "expired", "total"):
                per_table = {STATUS_KEYS[t]: c[bucket] for t, c in counts.items()}
                per_table["total"] = sum(per_table.values())
                body[bucket] = per_table
            return AdminResult.success(body)
        except ValidationError as e:
            return AdminResult.invalid(e.message)
        except Exception as e:
            logger.exception("Cache status query failed")
            return AdminResult.failure(e)

    # --- Statistics ---

    async def stats(self) -> AdminResult:
        try:
            cache_types = await self.manager.get_stats()
            recent = await asyncio.to_thread(self.db.get_recent_searches, 10)
            total_searches = await asyncio.to_thread(self.db.count_searches)
        except Exception as e:
            logger.exception("Cache stats query failed")
            return AdminResult.failure(e)

        database_stats = {
            STATUS_KEYS[table]: {
                "total": s["total_entries"],
                "active": s["active_entries"],
                "expired": s["expired_entries"],
            }
            for table, s in cache_types.items()
        }
        return AdminResult.success({
            "summary": {
                "total_entries": sum(s["active"] for s in database_stats.values()),
                "total_all_time": sum(s["total"] for s in database_stats.values()),
                "total_searches": total_searches,
            },
            "cache_types": cache_types,
            "database_stats": database_stats,
            "recent_searches": [
                {
                    "query": s["query"],
                    "country": s["country"],
                    "results_count": s["results_count"],
                    "timestamp": _iso(s["created_at"]),
                }
                for s in recent
            ],
            "cache_config": {f"{name}_ttl": ttl for name, ttl in self.manager.ttls.items()},
        })

    async def detailed_stats(self, payload: Any) -> AdminResult:
        cache_type = payload.get("cacheType") if isinstance(payload, dict) else None
        if not cache_type or not isinstance(cache_type, str):
            return AdminResult.invalid("Cache type is required")
        if TABLE_ALIASES.get(cache_type.strip().lower()) not in DETAILED_STATS_TABLES:
            return AdminResult.invalid("Invalid cache type. Valid cache types: offers, ratings, metadata")
        try:
            return AdminResult.success(await self.manager.detailed_stats(cache_type))
        except ValidationError as e:
            return AdminResult.invalid(e.message)
        except Exception as e:
            logger.exception("Detailed cache stats failed for %s", cache_type)
            return AdminResult.failure(e)
