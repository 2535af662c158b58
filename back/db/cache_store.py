"""
Typed get / set / expire operations over the cache tables.

A row is live while `expires_at > now`. Expired rows stay on disk until
`clear_expired_cache()` sweeps them, but every read here already treats them
as absent. `now` is read once per operation so a single query never mixes
two notions of the current time.
"""

import json
import logging
from typing import Any

from db.database import Database
from db.models import CachedRating, StreamingOffer, TitleMetadata
from errors import SerializationError, StorageError, ValidationError

logger = logging.getLogger(__name__)

CACHE_TABLES = ("api_cache", "streaming_offers", "ratings_cache", "title_metadata")

# Column holding the serialized payload, used for size accounting.
PAYLOAD_COLUMNS = {
    "api_cache": "value",
    "streaming_offers": "data",
    "ratings_cache": "data",
    "title_metadata": "data",
}

TABLE_ALIASES = {
    "api_cache": "api_cache",
    "api": "api_cache",
    "streaming_offers": "streaming_offers",
    "offers": "streaming_offers",
    "ratings_cache": "ratings_cache",
    "ratings": "ratings_cache",
    "title_metadata": "title_metadata",
    "metadata": "title_metadata",
}

DETAILED_STATS_TABLES = ("streaming_offers", "ratings_cache", "title_metadata")


def resolve_cache_table(cache_type: str | None) -> str:
    """Map a cache type name or alias to its table. Raises ValidationError."""
    table = TABLE_ALIASES.get((cache_type or "").strip().lower())
    if table is None:
        valid = ", ".join(sorted(TABLE_ALIASES))
        raise ValidationError(f"Unknown cache type: {cache_type!r}. Valid cache types: {valid}")
    return table


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Value is not JSON-serializable: {e}") from e


def _loads(raw: str | None, table: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise StorageError(f"Corrupt JSON payload in {table}: {e}") from e


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CacheStore:
    def __init__(self, db: Database):
        self.db = db

    # --- Generic API responses ---

    def get_cached_data(self, key: str) -> Any | None:
        now = self.db.now()
        row = self.db.query_one(
            "SELECT value FROM api_cache WHERE key = ? AND expires_at > ?", (key, now)
        )
        self._record_access("api_cache", row is not None, now)
        if row is None:
            return None
        return _loads(row["value"], "api_cache")

    def set_cached_data(self, key: str, value: Any, ttl_seconds: float) -> None:
        payload = _dumps(value)
        now = self.db.now()
        self.db.execute(
            "INSERT OR REPLACE INTO api_cache (key, value, expires_at, created_at) VALUES (?, ?, ?, ?)",
            (key, payload, now + ttl_seconds, now),
        )

    # --- Streaming offers ---

    def get_cached_offers(self, title_id: str, country: str | None = None) -> list[StreamingOffer] | None:
        """Live offers for a title (and country). None when nothing live is cached."""
        now = self.db.now()
        statement = "SELECT * FROM streaming_offers WHERE title_id = ? AND expires_at > ?"
        params: list[Any] = [title_id, now]
        if country:
            statement += " AND country = ?"
            params.append(country)
        statement += " ORDER BY id"

        rows = self.db.query(statement, params)
        self._record_access("streaming_offers", bool(rows), now)
        if not rows:
            return None
        return [
            StreamingOffer(
                title_id=r["title_id"],
                country=r["country"],
                provider=r["provider"],
                monetization_type=r["monetization_type"],
                presentation_type=r["presentation_type"],
                price=r["price"],
                currency=r["currency"],
                url=r["url"],
                quality=r["quality"],
                data=_loads(r["data"], "streaming_offers"),
            )
            for r in rows
        ]

    def set_cached_offers(self, offers: list[StreamingOffer], ttl_seconds: float) -> int:
        """Replace each offer by its natural key. The caller deduplicates first."""
        if not offers:
            return 0
        now = self.db.now()
        expires_at = now + ttl_seconds
        # Serialize everything up front so a bad payload writes nothing.
        rows = [(offer, _dumps(offer.data)) for offer in offers]

        with self.db.transaction() as conn:
            for offer, payload in rows:
                conn.execute(
                    """
                    DELETE FROM streaming_offers
                    WHERE title_id = ? AND country = ? AND provider = ?
                      AND monetization_type = ? AND presentation_type IS ?
                    """,
                    (offer.title_id, offer.country, offer.provider,
                     offer.monetization_type, offer.presentation_type),
                )
                conn.execute(
                    """
                    INSERT INTO streaming_offers
                        (title_id, country, provider, monetization_type, presentation_type,
                         price, currency, url, quality, data, expires_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (offer.title_id, offer.country, offer.provider, offer.monetization_type,
                     offer.presentation_type, offer.price, offer.currency, offer.url,
                     offer.quality, payload, expires_at, now),
                )
        logger.debug("Cached %d offers (ttl=%ss)", len(rows), ttl_seconds)
        return len(rows)

    # --- Ratings ---

    def get_cached_ratings(self, imdb_id: str | None = None, tmdb_id: str | None = None) -> list[CachedRating] | None:
        if imdb_id:
            column, value = "imdb_id", imdb_id
        elif tmdb_id:
            column, value = "tmdb_id", tmdb_id
        else:
            return None

        now = self.db.now()
        rows = self.db.query(
            f"SELECT * FROM ratings_cache WHERE {column} = ? AND expires_at > ? ORDER BY id",
            (value, now),
        )
        self._record_access("ratings_cache", bool(rows), now)
        if not rows:
            return None
        return [
            CachedRating(
                source=r["source"],
                imdb_id=r["imdb_id"],
                tmdb_id=r["tmdb_id"],
                simkl_id=r["simkl_id"],
                rating=r["rating"],
                vote_count=r["vote_count"],
                data=_loads(r["data"], "ratings_cache"),
            )
            for r in rows
        ]

    def set_cached_ratings(self, rating: CachedRating, ttl_seconds: float) -> None:
        """Replace every row of the same source that shares any of the rating's ids."""
        ids = [(column, value) for column, value in
               (("imdb_id", rating.imdb_id), ("tmdb_id", rating.tmdb_id)) if value]
        if not ids:
            raise ValidationError("A cached rating needs an imdb_id or a tmdb_id")

        payload = _dumps(rating.data)
        now = self.db.now()
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM ratings_cache WHERE source = ? AND ("
                + " OR ".join(f"{column} = ?" for column, _ in ids) + ")",
                (rating.source, *(value for _, value in ids)),
            )
            conn.execute(
                """
                INSERT INTO ratings_cache
                    (imdb_id, tmdb_id, simkl_id, source, rating, vote_count, data, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (rating.imdb_id, rating.tmdb_id, rating.simkl_id, rating.source, rating.rating,
                 rating.vote_count, payload, now + ttl_seconds, now),
            )

    # --- Title metadata ---

    def get_cached_metadata(self, id: str) -> TitleMetadata | None:
        now = self.db.now()
        row = self.db.query_one(
            "SELECT * FROM title_metadata WHERE id = ? AND expires_at > ?", (id, now)
        )
        self._record_access("title_metadata", row is not None, now)
        if row is None:
            return None
        return TitleMetadata(
            id=row["id"],
            title=row["title"],
            imdb_id=row["imdb_id"],
            tmdb_id=row["tmdb_id"],
            simkl_id=row["simkl_id"],
            original_title=row["original_title"],
            media_type=row["media_type"],
            release_year=row["release_year"],
            runtime=row["runtime"],
            genres=_loads(row["genres"], "title_metadata"),
            countries=_loads(row["countries"], "title_metadata"),
            cast=_loads(row["cast_members"], "title_metadata"),
            crew=_loads(row["crew"], "title_metadata"),
            keywords=_loads(row["keywords"], "title_metadata"),
            data=_loads(row["data"], "title_metadata"),
        )

    def set_cached_metadata(self, metadata: TitleMetadata, ttl_seconds: float) -> None:
        def optional_json(value):
            return _dumps(value) if value is not None else None

        params_tail = (
            optional_json(metadata.genres),
            optional_json(metadata.countries),
            optional_json(metadata.cast),
            optional_json(metadata.crew),
            optional_json(metadata.keywords),
            _dumps(metadata.data),
        )
        now = self.db.now()
        self.db.execute(
            """
            INSERT OR REPLACE INTO title_metadata
                (id, imdb_id, tmdb_id, simkl_id, title, original_title, media_type, release_year,
                 runtime, genres, countries, cast_members, crew, keywords, data, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (metadata.id, metadata.imdb_id, metadata.tmdb_id, metadata.simkl_id, metadata.title,
             metadata.original_title, metadata.media_type, metadata.release_year, metadata.runtime,
             *params_tail, now + ttl_seconds, now),
        )

    # --- Accounting ---

    def _record_access(self, cache_type: str, hit: bool, now: float) -> None:
        self.db.execute(
            """
            INSERT INTO cache_stats (cache_type, hits, misses, last_accessed, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(cache_type) DO UPDATE SET
                hits = hits + excluded.hits,
                misses = misses + excluded.misses,
                last_accessed = excluded.last_accessed
            """,
            (cache_type, 1 if hit else 0, 0 if hit else 1, now, now),
        )

    def table_counts(self) -> dict[str, dict[str, int]]:
        """Live / expired / total row counts per cache table against one `now`."""
        now = self.db.now()
        counts = {}
        for table in CACHE_TABLES:
            column = PAYLOAD_COLUMNS[table]
            row = self.db.query_one(
                f"""
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN expires_at > ? THEN 1 ELSE 0 END), 0) AS active,
                    COALESCE(SUM(CASE WHEN expires_at > ? THEN LENGTH({column}) ELSE 0 END), 0) AS size_bytes
                FROM {table}
                """,
                (now, now),
            )
            counts[table] = {
                "total": row["total"],
                "active": row["active"],
                "expired": row["total"] - row["active"],
                "size_bytes": row["size_bytes"],
            }
        return counts

    def get_cache_stats(self) -> dict[str, dict]:
        counts = self.table_counts()
        accesses = {
            r["cache_type"]: r
            for r in self.db.query("SELECT cache_type, hits, misses, last_accessed FROM cache_stats")
        }
        stats = {}
        for table in CACHE_TABLES:
            access = accesses.get(table, {})
            hits = access.get("hits") or 0
            misses = access.get("misses") or 0
            lookups = hits + misses
            stats[table] = {
                "total_entries": counts[table]["total"],
                "active_entries": counts[table]["active"],
                "expired_entries": counts[table]["expired"],
                "size_bytes": counts[table]["size_bytes"],
                "hits": hits,
                "misses": misses,
                "hit_rate": round(hits / lookups * 100, 2) if lookups else 0.0,
                "last_accessed": access.get("last_accessed"),
            }
        return stats

    # --- Invalidation ---

    def clear_cache(self, cache_type: str | None = None) -> dict[str, int]:
        """Delete every row of one cache table, or of all of them. No undo."""
        tables = (resolve_cache_table(cache_type),) if cache_type is not None else CACHE_TABLES
        deleted = {}
        with self.db.transaction() as conn:
            for table in tables:
                deleted[table] = conn.execute(f"DELETE FROM {table}").rowcount
        logger.info("Cleared cache tables %s", deleted)
        return deleted

    def clear_expired_cache(self) -> dict[str, int]:
        now = self.db.now()
        deleted = {}
        with self.db.transaction() as conn:
            for table in CACHE_TABLES:
                deleted[table] = conn.execute(
                    f"DELETE FROM {table} WHERE expires_at <= ?", (now,)
                ).rowcount
        logger.info("Swept expired cache rows %s", deleted)
        return deleted

    def clear_title(self, title_id: str) -> dict[str, int]:
        """Drop responses whose key contains the id, plus its offers and metadata."""
        if not title_id:
            raise ValidationError("Title ID is required")
        with self.db.transaction() as conn:
            deleted = {
                "api_cache": conn.execute(
                    "DELETE FROM api_cache WHERE key LIKE ? ESCAPE '\\'",
                    (f"%{_escape_like(title_id)}%",),
                ).rowcount,
                "streaming_offers": conn.execute(
                    "DELETE FROM streaming_offers WHERE title_id = ?", (title_id,)
                ).rowcount,
                "title_metadata": conn.execute(
                    "DELETE FROM title_metadata WHERE id = ?", (title_id,)
                ).rowcount,
            }
        logger.info("Cleared cache for title %s: %s", title_id, deleted)
        return deleted

    def clear_offers(self, title_id: str | None = None, country: str | None = None) -> int:
        statement = "DELETE FROM streaming_offers"
        clauses, params = [], []
        if title_id:
            clauses.append("title_id = ?")
            params.append(title_id)
        if country:
            clauses.append("country = ?")
            params.append(country)
        if clauses:
            statement += " WHERE " + " AND ".join(clauses)
        return self.db.execute(statement, params)

    # --- Status / detailed stats ---

    def title_status(self, title_id: str, country: str | None = None) -> dict[str, int]:
        """Live row counts referencing one title."""
        now = self.db.now()
        offer_sql = "SELECT COUNT(*) AS n FROM streaming_offers WHERE title_id = ? AND expires_at > ?"
        offer_params: list[Any] = [title_id, now]
        if country:
            offer_sql += " AND country = ?"
            offer_params.append(country)

        offers = self.db.query_one(offer_sql, offer_params)["n"]
        metadata = self.db.query_one(
            "SELECT COUNT(*) AS n FROM title_metadata WHERE id = ? AND expires_at > ?",
            (title_id, now),
        )["n"]
        api_responses = self.db.query_one(
            "SELECT COUNT(*) AS n FROM api_cache WHERE key LIKE ? ESCAPE '\\' AND expires_at > ?",
            (f"%{_escape_like(title_id)}%", now),
        )["n"]
        return {"offers": offers, "metadata": metadata, "api_responses": api_responses}

    def detailed_stats(self, cache_type: str) -> dict:
        table = resolve_cache_table(cache_type)
        if table not in DETAILED_STATS_TABLES:
            raise ValidationError(
                f"No detailed stats for {cache_type!r}. Valid cache types: offers, ratings, metadata"
            )
        now = self.db.now()

        if table == "streaming_offers":
            return {
                "type": "streaming_offers",
                "by_country": self.db.query(
                    """
                    SELECT
                        country,
                        COUNT(DISTINCT title_id) AS unique_titles,
                        COUNT(*) AS total_offers,
                        COUNT(DISTINCT provider) AS unique_providers,
                        AVG(price) AS avg_price,
                        MIN(created_at) AS oldest_entry,
                        MAX(created_at) AS newest_entry
                    FROM streaming_offers
                    WHERE expires_at > ?
                    GROUP BY country
                    ORDER BY total_offers DESC
                    """,
                    (now,),
                ),
                "providers": self.db.query(
                    """
                    SELECT provider, COUNT(*) AS offer_count
                    FROM streaming_offers
                    WHERE expires_at > ?
                    GROUP BY provider
                    ORDER BY offer_count DESC, provider
                    LIMIT 20
                    """,
                    (now,),
                ),
            }

        if table == "ratings_cache":
            return {
                "type": "ratings",
                "by_source": self.db.query(
                    """
                    SELECT
                        source,
                        COUNT(*) AS total_ratings,
                        AVG(rating) AS avg_rating,
                        MIN(rating) AS min_rating,
                        MAX(rating) AS max_rating
                    FROM ratings_cache
                    WHERE expires_at > ?
                    GROUP BY source
                    ORDER BY source
                    """,
                    (now,),
                ),
            }

        return {
            "type": "metadata",
            "by_media_type": self.db.query(
                """
                SELECT
                    media_type,
                    COUNT(*) AS total_titles,
                    AVG(runtime) AS avg_runtime,
                    MIN(release_year) AS oldest_year,
                    MAX(release_year) AS newest_year
                FROM title_metadata
                WHERE expires_at > ?
                GROUP BY media_type
                ORDER BY media_type
                """,
                (now,),
            ),
        }
