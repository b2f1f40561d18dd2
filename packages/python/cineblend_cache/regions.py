from __future__ import annotations

from enum import Enum
from typing import Dict


class CacheRegion(str, Enum):
    USER_METADATA = "userMetadata"
    EMBEDDINGS = "embeddings"
    RECOMMENDATIONS = "recommendations"
    POPULAR_MOVIES = "popularMovies"
    USER_RATED_IDS = "userRatedIds"


# Default TTLs (seconds)
DEFAULT_TTLS: Dict[CacheRegion, int] = {
    CacheRegion.USER_METADATA: 5 * 60,  # rebuilt on every recommendation
    CacheRegion.EMBEDDINGS: 10 * 60,  # immutable once computed
    CacheRegion.RECOMMENDATIONS: 3 * 60,
    CacheRegion.POPULAR_MOVIES: 30 * 60,  # popularity drifts slowly
    CacheRegion.USER_RATED_IDS: 3 * 60,
}

# How often a memory region reclaims expired entries (seconds)
SWEEP_PERIODS: Dict[CacheRegion, int] = {
    CacheRegion.USER_METADATA: 60,
    CacheRegion.EMBEDDINGS: 120,
    CacheRegion.RECOMMENDATIONS: 60,
    CacheRegion.POPULAR_MOVIES: 180,
    CacheRegion.USER_RATED_IDS: 60,
}

# Regions derived from a user's ratings / collections
USER_SCOPED_REGIONS = (
    CacheRegion.USER_METADATA,
    CacheRegion.RECOMMENDATIONS,
    CacheRegion.USER_RATED_IDS,
)


def as_region(region: CacheRegion | str) -> CacheRegion:
    return region if isinstance(region, CacheRegion) else CacheRegion(region)
