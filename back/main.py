"""
WatchHub - Streaming Availability Finder
FastAPI Backend
"""

import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from cache import CacheManager
from cache_admin import CacheAdmin
from config import Settings, configure_logging
from db.cache_store import CacheStore
from db.database import Database
from errors import NotFoundError, SourceError, ValidationError, WatchHubError
from search import SearchService, build_search_config, map_node
from sources.justwatch import JustWatchSource, normalize_country
from sources.simkl import SimklSource
from sources.tmdb import TmdbSource
from title_merge import merge_title_details

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
IMDB_ID_RE = re.compile(r"^(tt)?\d+$")
MAX_BATCH_RATINGS = 50
POPULAR_PER_TYPE = 5


class CacheControlMiddleware(BaseHTTPMiddleware):
    """Add cache headers for stable GET endpoints, matching the backing TTL."""

    CACHE_RULES = {
        "/search": "search",
        "/title/": "details",
        "/ratings/": "ratings",
        "/popular": "offers",
        "/cache": None,    # never cache cache control
        "/health": None,   # never cache health
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if request.method == "GET" and response.status_code == 200:
            path = request.url.path
            for prefix, cache_type in self.CACHE_RULES.items():
                if path.startswith(prefix):
                    manager: CacheManager = request.app.state.manager
                    ttl = manager.ttl(cache_type) if cache_type else 0
                    for name, value in manager.generate_cache_headers(ttl).items():
                        response.headers.setdefault(name, value)
                    break
        return response


# --- Lifecycle ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    settings: Settings = state.settings

    db = Database(settings.resolve_database_path(), clock=state.clock or time.time)
    await asyncio.to_thread(db.initialize)
    manager = CacheManager(CacheStore(db), settings.cache_ttls())

    catalog = state.catalog or JustWatchSource(
        manager, max_results=settings.max_results_per_source, transport=state.transport
    )
    metadata = state.metadata or TmdbSource(manager, settings.tmdb_api_key, transport=state.transport)
    ratings = state.ratings or SimklSource(manager, settings.simkl_api_key, transport=state.transport)

    state.db = db
    state.manager = manager
    state.catalog, state.metadata, state.ratings = catalog, metadata, ratings
    state.search = SearchService(catalog, manager, db)
    state.admin = CacheAdmin(manager, db, settings, fetch_offers=catalog.warm_title)
    logger.info("WatchHub API ready (db=%s)", db.db_path)
    try:
        yield
    finally:
        for source in (catalog, metadata, ratings):
            try:
                await source.close()
            except Exception:
                logger.exception("Failed to close source %s", source.name)
        db.close()
        logger.info("WatchHub API stopped")


# --- Error handling ---

def _error_response(status_code: int, error: str, message: Optional[str] = None, **extra) -> JSONResponse:
    body = {"error": error}
    if message:
        body["message"] = message
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


async def watchhub_error_handler(request: Request, exc: WatchHubError):
    if isinstance(exc, ValidationError):
        return JSONResponse(exc.to_dict(), status_code=400)
    if isinstance(exc, NotFoundError):
        return JSONResponse(exc.to_dict(), status_code=404)
    if isinstance(exc, SourceError):
        logger.warning("Upstream failure on %s: %s", request.url.path, exc)
        return JSONResponse({**exc.to_dict(), "error": "Upstream error", "message": exc.message}, status_code=502)
    logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse({**exc.to_dict(), "error": "Internal server error", "message": exc.message}, status_code=500)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return _error_response(400, "Invalid request", f"Invalid parameters: {fields}")


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return _error_response(500, "Internal server error", str(exc) or type(exc).__name__)


# --- Helpers ---

async def _json_body(request: Request):
    """Parsed JSON body, or None when the body is empty or not JSON."""
    try:
        return await request.json()
    except ValueError:
        return None


def _etag_response(request: Request, body: dict) -> Response:
    manager: CacheManager = request.app.state.manager
    etag = f'"{manager.generate_etag(body)}"'
    candidates = {
        tag.strip().removeprefix("W/")
        for tag in request.headers.get("if-none-match", "").split(",")
        if tag.strip()
    }
    if etag in candidates or "*" in candidates:
        return Response(status_code=304, headers={"ETag": etag})
    return JSONResponse(body, headers={"ETag": etag})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


router = APIRouter()


# --- API Routes ---

@router.get("/")
def root(request: Request):
    state = request.app.state
    return {
        "status": "ok",
        "service": "WatchHub API",
        "version": VERSION,
        "sources": [state.catalog.name, state.metadata.name, state.ratings.name],
    }


@router.get("/health")
async def health(request: Request):
    """Store ping plus upstream credentials. 503 when anything is missing."""
    state = request.app.state
    try:
        db_ok = await asyncio.to_thread(state.db.ping)
    except WatchHubError as e:
        logger.error("Health check: cache database unavailable: %s", e)
        db_ok = False

    services = {
        "justwatch": "available",
        "tmdb": "configured" if state.metadata.is_configured() else "missing_key",
        "simkl": "configured" if state.ratings.is_configured() else "missing_key",
    }
    missing = [
        env for env, service in (("TMDB_API_KEY", "tmdb"), ("SIMKL_API_KEY", "simkl"))
        if services[service] == "missing_key"
    ]
    healthy = db_ok and not missing
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": _now_iso(),
        "version": VERSION,
        "database": "connected" if db_ok else "unavailable",
        "missingEnvVars": missing or None,
        "services": services,
    }
    return JSONResponse(body, status_code=200 if healthy else 503)


# --- Search ---

@router.get("/search")
async def search(
    request: Request,
    q: Optional[str] = Query(None),
    country: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    max_results: Optional[int] = Query(None, alias="maxResults"),
    dedupe: Optional[str] = Query(None),
):
    """Search the catalog. Duplicate entries come back merged with `duplicateIds`."""
    if not q:
        raise ValidationError('Query parameter "q" is required')
    settings: Settings = request.app.state.settings
    config = build_search_config({
        "country": (country or settings.default_country).upper(),
        "maxResultsPerSource": max_results or settings.max_results_per_source,
        "deduplicateResults": settings.enable_deduplication if dedupe is None else dedupe != "false",
        "mediaTypeFilter": type,
    })
    body = await request.app.state.search.search(q, config)
    return _etag_response(request, body)


@router.post("/search")
async def advanced_search(request: Request):
    payload = await _json_body(request)
    if not isinstance(payload, dict) or not payload.get("query"):
        raise ValidationError("Query is required")
    configuration = payload.get("configuration") or {}
    if not isinstance(configuration, dict):
        raise ValidationError("configuration must be an object")

    settings: Settings = request.app.state.settings
    config = build_search_config({
        "country": settings.default_country,
        "maxResultsPerSource": settings.max_results_per_source,
        "deduplicateResults": settings.enable_deduplication,
        **configuration,
    })
    return await request.app.state.search.search(str(payload["query"]), config)


# --- Titles ---

async def _fetch_ratings(request: Request, imdb_id: Optional[str]) -> tuple[Optional[dict], Optional[dict]]:
    ratings_source = request.app.state.ratings
    if not imdb_id or not ratings_source.is_configured():
        return None, None
    ratings = await ratings_source.get_ratings_by_imdb_id(imdb_id)
    return ratings, ratings_source.get_best_rating(ratings)


async def _tmdb_details(request: Request, title_id: str) -> dict:
    try:
        tmdb_id = int(title_id)
    except ValueError:
        raise ValidationError("Invalid TMDB ID")
    metadata = request.app.state.metadata
    if not metadata.is_configured():
        raise HTTPException(503, "TMDB API key is not configured")
    details = await metadata.get_details(tmdb_id)
    if not details:
        raise NotFoundError("Title not found on TMDB")
    return details


@router.get("/title/{title_id}")
async def get_title(
    request: Request,
    title_id: str,
    source: str = Query("JustWatch"),
    country: Optional[str] = Query(None),
    duplicate_ids: Optional[str] = Query(None, alias="duplicateIds"),
):
    """Title details. For the catalog, offers are merged across `duplicateIds`."""
    country = normalize_country(country or request.app.state.settings.default_country)

    if source == "JustWatch":
        dup_ids = [i for i in (duplicate_ids or "").split(",") if i.strip()]
        merged = await merge_title_details(request.app.state.catalog, title_id, dup_ids, country)
        title, offers, ids = merged.title, merged.offers, merged.ids
        imdb_id = ((title.get("content") or {}).get("externalIds") or {}).get("imdbId")
    elif source == "Tmdb":
        title = await _tmdb_details(request, title_id)
        offers, ids = {}, [title_id]
        imdb_id = title.get("imdb_id") or (title.get("external_ids") or {}).get("imdb_id")
    elif source == "Simkl":
        raise ValidationError("Direct SIMKL details not supported")
    else:
        raise ValidationError("Unsupported source")

    ratings, best_rating = await _fetch_ratings(request, imdb_id)
    body = {
        "title": title,
        "offers": offers,
        "ratings": ratings,
        "bestRating": best_rating,
        "source": source,
        "duplicateIds": ids,
    }
    return _etag_response(request, body)


@router.post("/title/batch")
async def batch_titles(request: Request):
    payload = await _json_body(request)
    ids = payload.get("ids") if isinstance(payload, dict) else None
    if not isinstance(ids, list) or not ids:
        raise ValidationError("Array of IDs is required")
    source = payload.get("source") or "JustWatch"
    country = normalize_country(str(payload.get("country") or request.app.state.settings.default_country))
    if source not in ("JustWatch", "Tmdb"):
        raise ValidationError("Unsupported source")

    async def fetch(title_id) -> dict:
        title_id = str(title_id)
        if source == "Tmdb":
            return {"id": title_id, "data": await _tmdb_details(request, title_id)}
        node = await request.app.state.catalog.get_title_node(title_id, country)
        if not node:
            raise NotFoundError(f"Title {title_id} not found")
        return {"id": title_id, "data": node}

    outcomes = await asyncio.gather(*(fetch(i) for i in ids), return_exceptions=True)
    results, errors = [], []
    for title_id, outcome in zip(ids, outcomes):
        if isinstance(outcome, BaseException):
            message = getattr(outcome, "message", None) or getattr(outcome, "detail", None) or str(outcome)
            errors.append({"id": str(title_id), "error": message})
        else:
            results.append(outcome)
    return {
        "results": results,
        "errors": errors,
        "total": len(ids),
        "successful": len(results),
        "failed": len(errors),
    }


# --- Ratings ---

@router.get("/ratings/{imdb_id}")
async def get_ratings(request: Request, imdb_id: str, sources: str = Query("simkl,ext,rank")):
    if not IMDB_ID_RE.match(imdb_id):
        raise ValidationError("Invalid IMDb ID format")
    ratings_source = request.app.state.ratings
    ratings = await ratings_source.get_ratings_by_imdb_id(imdb_id, sources)
    if not ratings_source.has_valid_ratings(ratings):
        raise NotFoundError("No ratings found for this title")
    return {
        "imdbId": imdb_id,
        "ratings": ratings,
        "bestRating": ratings_source.get_best_rating(ratings),
        "sources": sources.split(","),
        "timestamp": _now_iso(),
    }


@router.post("/ratings")
async def batch_ratings(request: Request):
    payload = await _json_body(request)
    imdb_ids = payload.get("imdbIds") if isinstance(payload, dict) else None
    if not isinstance(imdb_ids, list) or not imdb_ids:
        raise ValidationError("Array of IMDb IDs is required")
    if len(imdb_ids) > MAX_BATCH_RATINGS:
        raise ValidationError(f"Maximum {MAX_BATCH_RATINGS} IMDb IDs allowed per request")
    sources = payload.get("sources") or "simkl,ext,rank"
    ratings_source = request.app.state.ratings

    async def fetch(imdb_id: str) -> dict:
        ratings = await ratings_source.get_ratings_by_imdb_id(imdb_id, sources)
        return {
            "imdbId": imdb_id,
            "ratings": ratings,
            "bestRating": ratings_source.get_best_rating(ratings),
            "hasRatings": ratings_source.has_valid_ratings(ratings),
        }

    outcomes = await asyncio.gather(*(fetch(str(i)) for i in imdb_ids), return_exceptions=True)
    results, errors = [], []
    for imdb_id, outcome in zip(imdb_ids, outcomes):
        if isinstance(outcome, BaseException):
            errors.append({"imdbId": imdb_id, "error": str(outcome)})
        else:
            results.append(outcome)
    return {
        "results": results,
        "errors": errors,
        "total": len(imdb_ids),
        "successful": len(results),
        "failed": len(errors),
        "sources": sources.split(","),
        "timestamp": _now_iso(),
    }


# --- Popular ---

@router.get("/popular")
async def popular(request: Request, country: Optional[str] = Query(None)):
    """A few popular movies and shows for the landing page."""
    country = normalize_country(country or request.app.state.settings.default_country)
    catalog = request.app.state.catalog
    body = {"movies": [], "tvShows": [], "totalMovies": 0, "totalTvShows": 0, "sources": [catalog.name], "errors": {}}
    try:
        nodes = await catalog.get_popular_titles(country, 50)
    except SourceError as e:
        logger.warning("Popular titles unavailable: %s", e)
        body["errors"][catalog.name] = e.message
        return body

    body["movies"] = [map_node(n) for n in nodes if n.get("objectType") == "MOVIE"][:POPULAR_PER_TYPE]
    body["tvShows"] = [map_node(n) for n in nodes if n.get("objectType") == "SHOW"][:POPULAR_PER_TYPE]
    body["totalMovies"] = len(body["movies"])
    body["totalTvShows"] = len(body["tvShows"])
    return body


# --- Cache control ---

@router.post("/cache/invalidate")
async def cache_invalidate(request: Request):
    result = await request.app.state.admin.invalidate(await _json_body(request))
    return JSONResponse(result.body, status_code=result.status_code)


@router.get("/cache/invalidate")
async def cache_status(
    request: Request,
    title_id: Optional[str] = Query(None, alias="titleId"),
    country: Optional[str] = Query(None),
):
    result = await request.app.state.admin.status(title_id, country)
    return JSONResponse(result.body, status_code=result.status_code)


@router.get("/cache/stats")
async def cache_stats(request: Request):
    result = await request.app.state.admin.stats()
    return JSONResponse(result.body, status_code=result.status_code)


@router.post("/cache/stats")
async def cache_detailed_stats(request: Request):
    result = await request.app.state.admin.detailed_stats(await _json_body(request))
    return JSONResponse(result.body, status_code=result.status_code)


# --- App factory ---

def create_app(
    settings: Optional[Settings] = None,
    *,
    clock=None,
    catalog=None,
    metadata=None,
    ratings=None,
    transport=None,
) -> FastAPI:
    """Build the app. Collaborators and the HTTP transport can be injected for tests."""
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="WatchHub API", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.clock = clock
    app.state.catalog = catalog
    app.state.metadata = metadata
    app.state.ratings = ratings
    app.state.transport = transport

    app.add_middleware(CacheControlMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(WatchHubError, watchhub_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
