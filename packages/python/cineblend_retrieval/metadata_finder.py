from __future__ import annotations

import logging
from typing import Dict, List, Sequence

import anyio
import numpy as np

from cineblend_cache.cache_layer import CacheLayer
from cineblend_cache.regions import CacheRegion
from cineblend_core.config import EMBEDDING_DIM
from cineblend_core.errors import DimensionMismatchError, EmptyInputError
from cineblend_core.types import CandidateMovie, MovieId, PreferenceProfile, UserId, Vector, jsonable
from cineblend_ranking import metadata

from .movie_store import MovieStore

log = logging.getLogger(__name__)


class MetadataCandidateFinder:
    """
    Genre / metadata side of the hybrid engine. Every store read goes through a
    cache region first:
      - embeddings: per movie id (immutable once computed)
      - userRatedIds: per user id (exclusion set)
      - popularMovies: per limit (cold-start fallback)
    """

    genre_score = staticmethod(metadata.genre_score)
    popularity_score = staticmethod(metadata.popularity_score)

    def __init__(
        self,
        store: MovieStore,
        cache: CacheLayer,
        *,
        embedding_dim: int = EMBEDDING_DIM,
        timeout_s: float | None = None,
    ):
        self.store = store
        self.cache = cache
        self.embedding_dim = embedding_dim
        self.timeout_s = timeout_s

    async def find_by_genres(
        self,
        profile: PreferenceProfile,
        exclude_ids: Sequence[MovieId],
        limit: int,
    ) -> List[CandidateMovie]:
        if not profile.favorite_genres:
            log.info("user %s has no favorite genres, skipping genre search", profile.user_id)
            return []
        names = [g.genre for g in profile.favorite_genres]
        with anyio.fail_after(self.timeout_s):
            movies = await self.store.find_movies_by_genres(names, list(exclude_ids), limit)
        log.info("genre search (%s) returned %d candidates", ", ".join(names[:3]), len(movies))
        return movies

    async def get_embeddings(
        self, movie_ids: Sequence[MovieId], *, timeout_s: float | None = None
    ) -> List[Vector]:
        """
        Vectors for `movie_ids` in argument order. Ids without a stored embedding
        are skipped; partial results are normal.
        """
        if not movie_ids:
            return []

        found: Dict[MovieId, Vector] = {}
        missing: List[MovieId] = []
        for mid in dict.fromkeys(movie_ids):
            vec, hit = await self.cache.get(CacheRegion.EMBEDDINGS, mid)
            if hit:
                found[mid] = vec
            else:
                missing.append(mid)

        if missing:
            log.info(
                "fetching %d embeddings from store (cache hit %d/%d)",
                len(missing), len(found), len(found) + len(missing),
            )
            with anyio.fail_after(timeout_s or self.timeout_s):
                fetched = await self.store.find_embeddings_by_ids(missing)
            for mid, vec in fetched.items():
                if len(vec) != self.embedding_dim:
                    raise DimensionMismatchError(
                        self.embedding_dim, len(vec), where=f"stored embedding for movie {mid}"
                    )
                await self.cache.set(CacheRegion.EMBEDDINGS, mid, vec)
                found[mid] = vec

        return [found[mid] for mid in movie_ids if mid in found]

    @staticmethod
    def average_embedding(vectors: Sequence[Sequence[float]]) -> Vector:
        """Element-wise mean of equal-length vectors."""
        if len(vectors) == 0:
            raise EmptyInputError("no embeddings to average")
        dim = len(vectors[0])
        for v in vectors[1:]:
            if len(v) != dim:
                raise DimensionMismatchError(dim, len(v), where="averaged embedding")
        arr = np.asarray(vectors, dtype=np.float64)
        return arr.mean(axis=0).tolist()

    async def get_rated_movie_ids(
        self, user_id: UserId, *, timeout_s: float | None = None
    ) -> List[MovieId]:
        cached, hit = await self.cache.get(CacheRegion.USER_RATED_IDS, user_id)
        if hit:
            return [int(i) for i in cached]
        with anyio.fail_after(timeout_s or self.timeout_s):
            ids = await self.store.find_rated_movie_ids(user_id)
        await self.cache.set(CacheRegion.USER_RATED_IDS, user_id, list(ids))
        log.info("user %s has rated %d movies (excluded from recommendations)", user_id, len(ids))
        return list(ids)

    async def find_popular(
        self, limit: int, *, timeout_s: float | None = None
    ) -> List[CandidateMovie]:
        cached, hit = await self.cache.get(CacheRegion.POPULAR_MOVIES, limit)
        if hit:
            return [CandidateMovie.model_validate(m) for m in cached]
        with anyio.fail_after(timeout_s or self.timeout_s):
            movies = await self.store.find_top_popular(limit)
        await self.cache.set(CacheRegion.POPULAR_MOVIES, limit, jsonable(movies))
        return movies
