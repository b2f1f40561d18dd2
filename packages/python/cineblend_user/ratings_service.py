from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from cineblend_cache.cache_layer import CacheLayer
from cineblend_core.errors import InvalidRatingError
from cineblend_core.types import MovieId, UserId
from cineblend_retrieval.movie_store import MovieStore

log = logging.getLogger(__name__)


class RatingCreate(BaseModel):
    movie_id: MovieId = Field(gt=0)
    rating: float = Field(ge=1, le=10)  # 1-10 stars


class RatingsService:
    """
    Write path for a user's ratings / collections. Every mutation invalidates the
    user's derived cache entries (profile, rated ids, recommendations) before
    returning, so the next recommendation is rebuilt from fresh data.
    """

    def __init__(self, store: MovieStore, cache: CacheLayer):
        self.store = store
        self.cache = cache

    async def rate(self, user_id: UserId, movie_id: MovieId, rating: float) -> RatingCreate:
        try:
            dto = RatingCreate(movie_id=movie_id, rating=rating)
        except ValueError as e:
            raise InvalidRatingError(str(e)) from e
        await self.store.upsert_rating(user_id, dto.movie_id, dto.rating)
        await self.cache.invalidate_user(user_id)
        log.info("user %s rated movie %s: %s", user_id, dto.movie_id, dto.rating)
        return dto

    async def remove(self, user_id: UserId, movie_id: MovieId) -> bool:
        removed = await self.store.delete_rating(user_id, movie_id)
        await self.cache.invalidate_user(user_id)
        return removed

    async def collection_changed(self, user_id: UserId) -> None:
        """Hook for collection writers (watchlist, favorites) living outside this package."""
        await self.cache.invalidate_user(user_id)
