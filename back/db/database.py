"""
SQLite store for the response cache and the search history.

The schema is declared as data so that startup can both create missing
tables and add columns that older database files do not have yet.
Nothing here ever drops a table or deletes rows as part of a migration.
"""

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

from errors import StorageError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# table -> ordered (column, declaration). NOT NULL columns always carry a
# default so they can be added to an existing table with ALTER TABLE.
SCHEMA: dict[str, tuple[tuple[str, str], ...]] = {
    "api_cache": (
        ("key", "TEXT PRIMARY KEY"),
        ("value", "TEXT NOT NULL DEFAULT 'null'"),
        ("expires_at", "REAL NOT NULL DEFAULT 0"),
        ("created_at", "REAL NOT NULL DEFAULT 0"),
    ),
    "streaming_offers": (
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("title_id", "TEXT NOT NULL DEFAULT ''"),
        ("country", "TEXT NOT NULL DEFAULT ''"),
        ("provider", "TEXT NOT NULL DEFAULT 'Unknown'"),
        ("monetization_type", "TEXT NOT NULL DEFAULT 'Unknown'"),
        ("presentation_type", "TEXT"),
        ("price", "REAL"),
        ("currency", "TEXT"),
        ("url", "TEXT"),
        ("quality", "TEXT"),
        ("data", "TEXT NOT NULL DEFAULT 'null'"),
        ("expires_at", "REAL NOT NULL DEFAULT 0"),
        ("created_at", "REAL NOT NULL DEFAULT 0"),
    ),
    "ratings_cache": (
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("imdb_id", "TEXT"),
        ("tmdb_id", "TEXT"),
        ("simkl_id", "TEXT"),
        ("source", "TEXT NOT NULL DEFAULT ''"),
        ("rating", "REAL"),
        ("vote_count", "INTEGER"),
        ("data", "TEXT NOT NULL DEFAULT 'null'"),
        ("expires_at", "REAL NOT NULL DEFAULT 0"),
        ("created_at", "REAL NOT NULL DEFAULT 0"),
    ),
    "title_metadata": (
        ("id", "TEXT PRIMARY KEY"),
        ("imdb_id", "TEXT"),
        ("tmdb_id", "TEXT"),
        ("simkl_id", "TEXT"),
        ("title", "TEXT NOT NULL DEFAULT ''"),
        ("original_title", "TEXT"),
        ("media_type", "TEXT"),
        ("release_year", "INTEGER"),
        ("runtime", "INTEGER"),
        ("genres", "TEXT"),
        ("countries", "TEXT"),
        ("cast_members", "TEXT"),
        ("crew", "TEXT"),
        ("keywords", "TEXT"),
        ("data", "TEXT NOT NULL DEFAULT 'null'"),
        ("expires_at", "REAL NOT NULL DEFAULT 0"),
        ("created_at", "REAL NOT NULL DEFAULT 0"),
    ),
    "search_history": (
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("query", "TEXT NOT NULL DEFAULT ''"),
        ("country", "TEXT DEFAULT 'US'"),
        ("results_count", "INTEGER DEFAULT 0"),
        ("created_at", "REAL NOT NULL DEFAULT 0"),
    ),
    "cache_stats": (
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("cache_type", "TEXT NOT NULL DEFAULT ''"),
        ("hits", "INTEGER DEFAULT 0"),
        ("misses", "INTEGER DEFAULT 0"),
        ("last_accessed", "REAL DEFAULT 0"),
        ("created_at", "REAL NOT NULL DEFAULT 0"),
    ),
}

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_api_cache_expires ON api_cache(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_streaming_offers_title ON streaming_offers(title_id)",
    "CREATE INDEX IF NOT EXISTS idx_streaming_offers_country ON streaming_offers(country)",
    "CREATE INDEX IF NOT EXISTS idx_streaming_offers_expires ON streaming_offers(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_ratings_imdb ON ratings_cache(imdb_id)",
    "CREATE INDEX IF NOT EXISTS idx_ratings_tmdb ON ratings_cache(tmdb_id)",
    "CREATE INDEX IF NOT EXISTS idx_ratings_expires ON ratings_cache(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_metadata_imdb ON title_metadata(imdb_id)",
    "CREATE INDEX IF NOT EXISTS idx_metadata_tmdb ON title_metadata(tmdb_id)",
    "CREATE INDEX IF NOT EXISTS idx_metadata_type ON title_metadata(media_type)",
    "CREATE INDEX IF NOT EXISTS idx_metadata_expires ON title_metadata(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_search_history_query ON search_history(query)",
    "CREATE INDEX IF NOT EXISTS idx_search_history_created ON search_history(created_at)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_cache_stats_type ON cache_stats(cache_type)",
)


class Database:
    """Process-wide handle on the SQLite file.

    Opened once at startup and shared by reference. Each call runs on its own
    short-lived connection, so the handle can be used from worker threads.
    """

    def __init__(self, db_path: str, clock: Clock = time.time):
        self.db_path = db_path
        self.clock = clock
        self._closed = False
        self._init_lock = threading.Lock()

    def now(self) -> float:
        return float(self.clock())

    # --- Lifecycle ---

    def initialize(self) -> None:
        """Create missing tables, add missing columns, create indexes.

        Raises StorageError if the file cannot be opened or written; the
        service cannot serve any cached route without it.
        """
        with self._init_lock:
            directory = os.path.dirname(os.path.abspath(self.db_path))
            try:
                os.makedirs(directory, exist_ok=True)
                with self._conn() as conn:
                    conn.execute("PRAGMA journal_mode=WAL")
                    for table, columns in SCHEMA.items():
                        conn.execute(_create_table_sql(table, columns))
                        added = self._add_missing_columns(conn, table, columns)
                        if added:
                            logger.info("Migrated %s: added columns %s", table, ", ".join(added))
                    for statement in INDEXES:
                        conn.execute(statement)
            except (OSError, sqlite3.Error) as e:
                raise StorageError(f"Cannot open cache database at {self.db_path}: {e}") from e
            self._closed = False
        logger.info("Cache database ready at %s", self.db_path)

    def close(self) -> None:
        self._closed = True

    @staticmethod
    def _add_missing_columns(
        conn: sqlite3.Connection, table: str, columns: Sequence[tuple[str, str]]
    ) -> list[str]:
        existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
        added = []
        for name, declaration in columns:
            if name in existing or "PRIMARY KEY" in declaration:
                continue
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {declaration}")
            added.append(name)
        return added

    def table_columns(self, table: str) -> list[str]:
        return [row["name"] for row in self.query(f"PRAGMA table_info({table})")]

    # --- Statement access ---

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several statements; commits on success, rolls back on error."""
        self._check_open()
        try:
            with self._conn() as conn:
                yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Cache database write failed: {e}") from e

    def execute(self, statement: str, params: Sequence[Any] = ()) -> int:
        """Run one parameterized statement and return the affected row count."""
        self._check_open()
        try:
            with self._conn() as conn:
                return conn.execute(statement, tuple(params)).rowcount
        except sqlite3.Error as e:
            raise StorageError(f"Cache database write failed: {e}") from e

    def query(self, statement: str, params: Sequence[Any] = ()) -> list[dict]:
        self._check_open()
        try:
            with self._conn() as conn:
                rows = conn.execute(statement, tuple(params)).fetchall()
                return [dict(r) for r in rows]
        except sqlite3.Error as e:
            raise StorageError(f"Cache database read failed: {e}") from e

    def query_one(self, statement: str, params: Sequence[Any] = ()) -> dict | None:
        rows = self.query(statement, params)
        return rows[0] if rows else None

    def ping(self) -> bool:
        return self.query_one("SELECT 1 AS ok") == {"ok": 1}

    def _check_open(self):
        if self._closed:
            raise StorageError("Cache database is closed")

    # --- Search history ---

    def log_search(self, query: str, country: str, results_count: int) -> None:
        self.execute(
            "INSERT INTO search_history (query, country, results_count, created_at) VALUES (?, ?, ?, ?)",
            (query, country, results_count, self.now()),
        )

    def get_recent_searches(self, limit: int = 10) -> list[dict]:
        return self.query(
            """
            SELECT query, country, results_count, created_at
            FROM search_history
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )

    def count_searches(self) -> int:
        row = self.query_one("SELECT COUNT(*) AS n FROM search_history")
        return row["n"] if row else 0


def _create_table_sql(table: str, columns: Sequence[tuple[str, str]]) -> str:
    body = ",\n    ".join(f"{name} {declaration}" for name, declaration in columns)
    return f"CREATE TABLE IF NOT EXISTS {table} (\n    {body}\n)"
