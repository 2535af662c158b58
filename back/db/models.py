"""
Typed rows for the cache tables.

Only the fields the cache layer reads are typed. Whatever the upstream API
returned is kept untouched in `data` and stored as a JSON document.
"""

from typing import Any, Optional

from pydantic import BaseModel


class StreamingOffer(BaseModel):
    title_id: str
    country: str
    provider: str
    monetization_type: str
    presentation_type: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    url: Optional[str] = None
    quality: Optional[str] = None  # comma-joined when the source lists several
    data: Any = None

    def dedup_key(self) -> tuple[str, str, Optional[str]]:
        return (self.provider, self.monetization_type, self.presentation_type)


class CachedRating(BaseModel):
    source: str
    imdb_id: Optional[str] = None
    tmdb_id: Optional[str] = None
    simkl_id: Optional[str] = None
    rating: Optional[float] = None
    vote_count: Optional[int] = None
    data: Any = None


class TitleMetadata(BaseModel):
    id: str
    title: str
    imdb_id: Optional[str] = None
    tmdb_id: Optional[str] = None
    simkl_id: Optional[str] = None
    original_title: Optional[str] = None
    media_type: Optional[str] = None
    release_year: Optional[int] = None
    runtime: Optional[int] = None
    genres: Optional[list[str]] = None
    countries: Optional[list[str]] = None
    cast: Optional[list[Any]] = None
    crew: Optional[list[Any]] = None
    keywords: Optional[list[str]] = None
    data: Any = None
