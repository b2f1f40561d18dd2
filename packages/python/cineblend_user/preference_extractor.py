from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List

import anyio

from cineblend_cache.cache_layer import CacheLayer
from cineblend_cache.regions import CacheRegion
from cineblend_core.config import COLD_START_MIN_RATINGS, MAX_FAVORITE_GENRES, MAX_SEED_MOVIES
from cineblend_core.errors import ExtractionError
from cineblend_core.types import GenreAffinity, PreferenceProfile, UserId, UserRating
from cineblend_retrieval.movie_store import MovieStore

log = logging.getLogger(__name__)


def build_profile(
    user_id: UserId,
    ratings: List[UserRating],
    *,
    min_rating: float = 3,
    max_scale: float = 10.0,
) -> PreferenceProfile:
    """
    Pure profile builder.

    - average_rating: mean of all ratings, 2 decimals
    - top_rated_movie_ids: ratings >= min_rating, best first, at most 5
    - favorite_genres: per genre, (count / total) * (genre mean / max_scale),
      best first, at most 10
    """
    if not ratings:
        return PreferenceProfile.empty(user_id)

    total = len(ratings)
    average = sum(r.rating for r in ratings) / total

    # sorted() is stable: equal ratings keep store order
    top_rated = [
        r.movie_id
        for r in sorted(
            (r for r in ratings if r.rating >= min_rating),
            key=lambda r: r.rating,
            reverse=True,
        )
    ][:MAX_SEED_MOVIES]

    per_genre: Dict[str, List[float]] = defaultdict(list)
    for r in ratings:
        for genre in r.movie.genres:
            per_genre[genre].append(r.rating)

    affinities = []
    for genre, values in per_genre.items():
        genre_mean = sum(values) / len(values)
        weight = (len(values) / total) * (genre_mean / max_scale)
        affinities.append(
            GenreAffinity(genre=genre, weight=max(0.0, weight), occurrence_count=len(values))
        )
    affinities.sort(key=lambda g: (-g.weight, -g.occurrence_count, g.genre))

    return PreferenceProfile(
        user_id=user_id,
        favorite_genres=affinities[:MAX_FAVORITE_GENRES],
        average_rating=round(average, 2),
        total_ratings=total,
        top_rated_movie_ids=top_rated,
    )


class PreferenceExtractor:
    """Cache-aware (userMetadata region) preference profile extraction."""

    def __init__(
        self,
        store: MovieStore,
        cache: CacheLayer,
        *,
        max_rating_scale: float = 10.0,
        timeout_s: float | None = None,
    ):
        self.store = store
        self.cache = cache
        self.max_rating_scale = max_rating_scale
        self.timeout_s = timeout_s

    async def extract(
        self, user_id: UserId, min_rating: float = 3, *, timeout_s: float | None = None
    ) -> PreferenceProfile:
        cached, hit = await self.cache.get(CacheRegion.USER_METADATA, user_id)
        # Entry is tagged with the threshold it was built for.
        if hit and cached.get("min_rating") == min_rating:
            return PreferenceProfile.model_validate(cached["profile"])

        try:
            with anyio.fail_after(timeout_s or self.timeout_s):
                ratings = await self.store.find_ratings_by_user(user_id)
        except Exception as e:
            log.error("preference extraction failed for user %s: %s", user_id, e)
            raise ExtractionError(f"could not load ratings for user {user_id}: {e}") from e

        profile = build_profile(
            user_id, ratings, min_rating=min_rating, max_scale=self.max_rating_scale
        )
        if profile.total_ratings == 0:
            log.info("user %s has no ratings (cold start)", user_id)

        await self.cache.set(
            CacheRegion.USER_METADATA,
            user_id,
            {"min_rating": min_rating, "profile": profile.model_dump(mode="json")},
        )
        log.info(
            "profile for user %s: %d ratings, avg %.2f, top genres [%s], seeds %s",
            user_id,
            profile.total_ratings,
            profile.average_rating,
            ", ".join(self.top_genres(profile)),
            profile.top_rated_movie_ids,
        )
        return profile

    @staticmethod
    def is_cold_start(profile: PreferenceProfile) -> bool:
        return profile.total_ratings < COLD_START_MIN_RATINGS

    @staticmethod
    def top_genres(profile: PreferenceProfile, limit: int = 3) -> List[str]:
        return [g.genre for g in profile.favorite_genres[:limit]]
