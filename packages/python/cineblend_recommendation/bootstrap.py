from __future__ import annotations

import logging
from dataclasses import dataclass

from qdrant_client import QdrantClient

from cineblend_cache.backends import MemoryBackend, RedisBackend
from cineblend_cache.cache_layer import CacheLayer
from cineblend_cache.redis_infra import make_cache_client
from cineblend_core.config import Settings
from cineblend_logging.rec_logger import NoopTelemetry, RecTelemetry, Telemetry
from cineblend_retrieval.metadata_finder import MetadataCandidateFinder
from cineblend_retrieval.movie_store import MovieStore, SupabaseMovieStore
from cineblend_retrieval.vector_index import QdrantVectorIndex, VectorCandidateFinder, VectorIndex
from cineblend_user.preference_extractor import PreferenceExtractor
from cineblend_user.ratings_service import RatingsService

from .engine import HybridRecommendationEngine

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecommendationStack:
    cache: CacheLayer
    extractor: PreferenceExtractor
    metadata_finder: MetadataCandidateFinder
    vector_finder: VectorCandidateFinder
    engine: HybridRecommendationEngine
    ratings: RatingsService


def build_cache(settings: Settings) -> CacheLayer:
    if settings.use_redis_cache:
        if not settings.redis_url:
            raise RuntimeError("USE_REDIS_CACHE is set but REDIS_URL is missing")
        backend = RedisBackend(
            client=make_cache_client(settings.redis_url), namespace=settings.cache_namespace
        )
        log.info("cache layer: redis (%s)", settings.cache_namespace)
    else:
        backend = MemoryBackend()
        log.info("cache layer: in-process memory")
    return CacheLayer(backend, ttls=settings.region_ttls())


def build_telemetry(settings: Settings) -> Telemetry:
    if settings.rec_telemetry_sample > 0 and settings.supabase_url and settings.supabase_api_key:
        return RecTelemetry(
            settings.supabase_url,
            settings.supabase_api_key,
            sample=settings.rec_telemetry_sample,
            hash_secret=settings.rec_hash_secret,
        )
    return NoopTelemetry()


def assemble(
    settings: Settings,
    *,
    store: MovieStore,
    index: VectorIndex,
    cache: CacheLayer | None = None,
    telemetry: Telemetry | None = None,
) -> RecommendationStack:
    """Wire the recommender from already-built ports (tests pass fakes here)."""
    cache = cache or build_cache(settings)
    extractor = PreferenceExtractor(
        store,
        cache,
        max_rating_scale=settings.max_rating_scale,
        timeout_s=settings.store_timeout_s,
    )
    metadata_finder = MetadataCandidateFinder(
        store,
        cache,
        embedding_dim=settings.embedding_dim,
        timeout_s=settings.store_timeout_s,
    )
    vector_finder = VectorCandidateFinder(index)
    engine = HybridRecommendationEngine(
        extractor=extractor,
        metadata_finder=metadata_finder,
        vector_finder=vector_finder,
        cache=cache,
        telemetry=telemetry or build_telemetry(settings),
        default_timeout_s=max(settings.vector_timeout_s, settings.store_timeout_s),
    )
    return RecommendationStack(
        cache=cache,
        extractor=extractor,
        metadata_finder=metadata_finder,
        vector_finder=vector_finder,
        engine=engine,
        ratings=RatingsService(store, cache),
    )


def build_stack(settings: Settings | None = None) -> RecommendationStack:
    settings = settings or Settings()
    required = {
        "QDRANT_ENDPOINT": settings.qdrant_endpoint,
        "SUPABASE_URL": settings.supabase_url,
        "SUPABASE_API_KEY": settings.supabase_api_key,
    }
    missing = [name for name, value in required.items() if not (value and value.strip())]
    if missing:
        raise RuntimeError("Missing settings in environment: " + ", ".join(sorted(missing)))

    from supabase import create_client

    supabase = create_client(settings.supabase_url, settings.supabase_api_key)
    qdrant = QdrantClient(url=settings.qdrant_endpoint, api_key=settings.qdrant_api_key)
    index = QdrantVectorIndex(
        qdrant,
        collection=settings.qdrant_collection,
        vector_name=settings.qdrant_vector_name,
        dim=settings.embedding_dim,
    )
    return assemble(settings, store=SupabaseMovieStore(supabase), index=index)
