from pydantic_settings import BaseSettings, SettingsConfigDict


QDRANT_MOVIE_COLLECTION_NAME = "Movies_MiniLM_L6"
EMBEDDING_DIM = 384  # all-MiniLM-L6-v2 sentence embeddings

COLD_START_MIN_RATINGS = 3  # fewer ratings than this = popular fallback
CO_OCCURRENCE_BOOST = 1.15  # applied once when both finders surface a movie
MAX_FAVORITE_GENRES = 10
MAX_SEED_MOVIES = 5
CANDIDATE_MULTIPLIER = 2  # each finder fetches top_k * this


class Settings(BaseSettings):
    app_name: str = "CineBlend Hybrid Recommender"
    # credentials
    qdrant_endpoint: str | None = None
    qdrant_api_key: str | None = None
    supabase_url: str | None = None
    supabase_api_key: str | None = None
    # vector index
    qdrant_collection: str = QDRANT_MOVIE_COLLECTION_NAME
    qdrant_vector_name: str | None = None
    embedding_dim: int = EMBEDDING_DIM
    # ratings are 1-10 stars
    max_rating_scale: float = 10.0
    # per-branch deadlines (seconds)
    vector_timeout_s: float = 5.0
    store_timeout_s: float = 5.0
    # cache config
    use_redis_cache: bool = False
    redis_url: str | None = None
    cache_namespace: str = "cineblend:cache:"
    ttl_user_metadata: int = 300
    ttl_embeddings: int = 600
    ttl_recommendations: int = 180
    ttl_popular_movies: int = 1800
    ttl_user_rated_ids: int = 180
    # telemetry
    rec_telemetry_sample: float = 0.0
    rec_hash_secret: str | None = None
    # env config
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def region_ttls(self) -> dict[str, int]:
        return {
            "userMetadata": self.ttl_user_metadata,
            "embeddings": self.ttl_embeddings,
            "recommendations": self.ttl_recommendations,
            "popularMovies": self.ttl_popular_movies,
            "userRatedIds": self.ttl_user_rated_ids,
        }
