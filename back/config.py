"""
Environment-driven settings for WatchHub.

Variable names match the ones the deployment already uses (DATABASE_PATH,
CACHE_TTL_SEARCH, TMDB_API_KEY, ...). Empty values fall back to defaults.
"""

import logging
import os
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_ignore_empty=True,
        extra="ignore",
        case_sensitive=False,
    )

    database_path: Optional[str] = None

    cache_ttl_search: int = 3600
    cache_ttl_details: int = 7200
    cache_ttl_offers: int = 21600
    cache_ttl_ratings: int = 86400
    cache_ttl_metadata: int = 604800

    default_country: str = "US"
    max_results_per_source: int = Field(default=20, gt=0)
    enable_deduplication: bool = True
    warm_cache_limit: Optional[int] = Field(default=None, gt=0)

    tmdb_api_key: Optional[str] = None
    simkl_api_key: Optional[str] = None

    log_level: str = "INFO"

    def cache_ttls(self) -> dict[str, int]:
        """TTL per semantic cache type, longest-lived last."""
        return {
            "search": self.cache_ttl_search,
            "details": self.cache_ttl_details,
            "offers": self.cache_ttl_offers,
            "ratings": self.cache_ttl_ratings,
            "metadata": self.cache_ttl_metadata,
        }

    def resolve_database_path(self) -> str:
        if self.database_path:
            return self.database_path
        # In Docker, use the /app/data volume. Locally, keep it next to the db package.
        docker_path = "/app/data/watchhub.db"
        local_path = os.path.join(os.path.dirname(__file__), "db", "watchhub.db")
        return docker_path if os.path.isdir("/app/data") else local_path


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
