from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Sequence

import anyio

from cineblend_cache.cache_layer import CacheLayer
from cineblend_cache.regions import CacheRegion
from cineblend_core.config import CANDIDATE_MULTIPLIER, CO_OCCURRENCE_BOOST
from cineblend_core.errors import (
    DimensionMismatchError,
    DomainError,
    ExtractionError,
    NoSeedEmbeddingsError,
    RecommendationUnavailableError,
)
from cineblend_core.types import (
    DEFAULT_WEIGHTS,
    CandidateMovie,
    MovieId,
    PreferenceProfile,
    RecommendOptions,
    ScoredRecommendation,
    ScoreWeights,
    UserId,
    Vector,
    jsonable,
)
from cineblend_logging.rec_logger import NoopTelemetry, Telemetry
from cineblend_ranking.merge import merge_candidates, rank
from cineblend_retrieval.metadata_finder import MetadataCandidateFinder
from cineblend_retrieval.vector_index import VectorCandidateFinder, check_dimension
from cineblend_user.preference_extractor import PreferenceExtractor

log = logging.getLogger(__name__)

MODE_PERSONALIZED = "hybrid"
MODE_POPULAR = "popular_fallback"


@dataclass
class BranchOutcome:
    name: str
    candidates: List[CandidateMovie] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class HybridRecommendationEngine:
    """
    Hybrid recommendations = vector similarity to the user's seed movies
    + genre affinity + popularity.

      1) Extract the preference profile; < 3 ratings -> popular fallback
      2) Load rated ids to exclude
      3) Average the seed movie embeddings into a user vector
      4) Vector search and genre search run concurrently, each under a deadline;
         one failing branch degrades the result, both failing is an error
      5) Merge / dedupe / score, rank deterministically, keep top_k
    """

    def __init__(
        self,
        *,
        extractor: PreferenceExtractor,
        metadata_finder: MetadataCandidateFinder,
        vector_finder: VectorCandidateFinder,
        cache: CacheLayer,
        telemetry: Telemetry | None = None,
        default_weights: ScoreWeights = DEFAULT_WEIGHTS,
        default_timeout_s: float = 5.0,
        co_occurrence_boost: float = CO_OCCURRENCE_BOOST,
    ):
        self.extractor = extractor
        self.metadata = metadata_finder
        self.vector = vector_finder
        self.cache = cache
        self.telemetry = telemetry or NoopTelemetry()
        self.default_weights = default_weights
        self.default_timeout_s = default_timeout_s
        self.co_occurrence_boost = co_occurrence_boost
        self._bg_tasks: set[asyncio.Task] = set()

    async def recommend(
        self, user_id: UserId, options: RecommendOptions | None = None
    ) -> List[ScoredRecommendation]:
        opts = options or RecommendOptions()
        weights = self.default_weights.merged(opts.weights)
        t0 = time.perf_counter()

        # caller deadline applies to every store call; None keeps the configured defaults
        deadline = opts.timeout_s
        profile = await self.extractor.extract(user_id, opts.min_user_rating, timeout_s=deadline)

        if self.extractor.is_cold_start(profile):
            log.info("cold start for user %s (%d ratings): popular fallback", user_id, profile.total_ratings)
            results = await self._popular_fallback(opts.top_k, timeout_s=deadline)
            self._emit(user_id, MODE_POPULAR, opts, results)
            return results

        cached = await self._cached(user_id, opts)
        if cached is not None:
            return cached

        exclude_ids: List[MovieId] = []
        if opts.exclude_rated:
            try:
                exclude_ids = await self.metadata.get_rated_movie_ids(user_id, timeout_s=deadline)
            except Exception as e:
                raise ExtractionError(f"could not load rated movies for user {user_id}: {e}") from e

        degraded: List[str] = []
        user_vector: Vector | None = None
        vector_out = BranchOutcome("vector")
        try:
            user_vector = await self.build_user_vector(profile, timeout_s=deadline)
        except NoSeedEmbeddingsError as e:
            log.warning("user %s: %s; scoring genre-only", user_id, e)
            degraded.append("no_seed_embeddings")
            vector_out.error = e

        limit = opts.top_k * CANDIDATE_MULTIPLIER
        timeout = deadline or self.default_timeout_s

        if user_vector is not None:
            check_dimension(user_vector, self.vector.index.dim, where="user vector")
            vector_out, genre_out = await self._run_all(
                [
                    ("vector", lambda: self.vector.find(user_vector, limit)),
                    ("genre", lambda: self.metadata.find_by_genres(profile, exclude_ids, limit)),
                ],
                timeout_s=timeout,
            )
        else:
            (genre_out,) = await self._run_all(
                [("genre", lambda: self.metadata.find_by_genres(profile, exclude_ids, limit))],
                timeout_s=timeout,
            )

        for out in (vector_out, genre_out):
            if isinstance(out.error, DimensionMismatchError):
                raise out.error
        if not vector_out.ok and not genre_out.ok:
            raise RecommendationUnavailableError(
                {"vector": vector_out.error, "genre": genre_out.error}
            )
        for out in (vector_out, genre_out):
            if not out.ok and not isinstance(out.error, NoSeedEmbeddingsError):
                log.warning("%s candidates unavailable, continuing without them: %r", out.name, out.error)
                degraded.append(f"{out.name}_failed")

        merged = merge_candidates(
            vector_out.candidates,
            genre_out.candidates,
            profile=profile,
            weights=weights,
            exclude_ids=exclude_ids,
            co_occurrence_boost=self.co_occurrence_boost,
        )
        results = rank(merged, opts.top_k)

        if not degraded:
            await self.cache.set(
                CacheRegion.RECOMMENDATIONS,
                user_id,
                {"signature": opts.signature(), "items": jsonable(results)},
            )

        log.info(
            "recommendations for user %s: %d results in %.0fms (vector=%d, genre=%d%s)",
            user_id,
            len(results),
            (time.perf_counter() - t0) * 1000,
            len(vector_out.candidates),
            len(genre_out.candidates),
            f", degraded={degraded}" if degraded else "",
        )
        self._emit(user_id, MODE_PERSONALIZED, opts, results, degraded)
        return results

    async def build_user_vector(
        self, profile: PreferenceProfile, *, timeout_s: float | None = None
    ) -> Vector:
        """Mean embedding of the user's seed (top-rated) movies."""
        if not profile.top_rated_movie_ids:
            raise NoSeedEmbeddingsError("no top-rated movies to seed the user vector")
        try:
            vectors = await self.metadata.get_embeddings(
                profile.top_rated_movie_ids, timeout_s=timeout_s
            )
        except DomainError:
            raise
        except Exception as e:
            raise NoSeedEmbeddingsError(f"seed embedding lookup failed: {e}") from e
        if not vectors:
            raise NoSeedEmbeddingsError(
                f"no stored embeddings for seed movies {profile.top_rated_movie_ids}"
            )
        return self.metadata.average_embedding(vectors)

    # ---------- helpers ----------
    async def _run_all(
        self,
        branches: Sequence[tuple[str, Callable[[], Awaitable[List[CandidateMovie]]]]],
        *,
        timeout_s: float,
    ) -> List[BranchOutcome]:
        """
        Run every branch concurrently and join on all of them. A branch failure
        (including its deadline) is recorded on its outcome instead of cancelling
        the siblings; cancelling the caller cancels every branch.
        """
        outcomes = [BranchOutcome(name) for name, _ in branches]

        async def _run(out: BranchOutcome, fn) -> None:
            try:
                with anyio.fail_after(timeout_s):
                    out.candidates = list(await fn())
            except Exception as e:
                out.error = e

        async with anyio.create_task_group() as tg:
            for out, (_, fn) in zip(outcomes, branches):
                tg.start_soon(_run, out, fn)
        return outcomes

    async def _popular_fallback(
        self, top_k: int, *, timeout_s: float | None = None
    ) -> List[ScoredRecommendation]:
        try:
            movies = await self.metadata.find_popular(top_k, timeout_s=timeout_s)
        except Exception as e:
            log.warning("popular fallback unavailable: %s", e)
            return []
        return [ScoredRecommendation(**m.model_dump()) for m in movies[:top_k]]

    async def _cached(
        self, user_id: UserId, opts: RecommendOptions
    ) -> List[ScoredRecommendation] | None:
        cached, hit = await self.cache.get(CacheRegion.RECOMMENDATIONS, user_id)
        if not hit or cached.get("signature") != opts.signature():
            return None
        log.info("serving cached recommendations for user %s", user_id)
        return [ScoredRecommendation.model_validate(r) for r in cached["items"]]

    def _emit(
        self,
        user_id: UserId,
        mode: str,
        opts: RecommendOptions,
        results: List[ScoredRecommendation],
        degraded: Sequence[str] = (),
    ) -> None:
        if isinstance(self.telemetry, NoopTelemetry):
            return
        task = asyncio.create_task(
            self.telemetry.log_recommendations(
                query_id=uuid.uuid4().hex,
                user_id=user_id,
                mode=mode,
                options=opts,
                results=results,
                degraded=list(degraded),
            )
        )
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)
