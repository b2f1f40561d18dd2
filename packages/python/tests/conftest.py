from __future__ import annotations

import fnmatch
from typing import Any, Dict, List, Sequence

import anyio
import pytest

from cineblend_cache.backends import MemoryBackend
from cineblend_cache.cache_layer import CacheLayer
from cineblend_core.config import Settings
from cineblend_core.types import CandidateMovie, RatedMovie, UserRating
from cineblend_retrieval.vector_index import VectorHit

DIM = 4


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StoreDown(Exception):
    pass


class FakeMovieStore:
    """In-memory relational store. `fail` / `delay` are keyed by method name."""

    def __init__(self):
        self.movies: Dict[int, CandidateMovie] = {}
        self.popularity: Dict[int, float] = {}
        self.ratings: Dict[str, Dict[int, float]] = {}
        self.embeddings: Dict[int, List[float]] = {}
        self.calls: Dict[str, int] = {}
        self.fail: set[str] = set()
        self.delay: Dict[str, float] = {}

    # ---- seeding ----
    def add_movie(self, id, title=None, genres=(), vote=None, popularity=None, embedding=None):
        self.movies[id] = CandidateMovie(
            id=id, title=title or f"Movie {id}", genres=list(genres), vote_average=vote
        )
        self.popularity[id] = popularity if popularity is not None else (vote or 0.0)
        if embedding is not None:
            self.embeddings[id] = list(embedding)

    def add_rating(self, user_id, movie_id, rating):
        self.ratings.setdefault(str(user_id), {})[movie_id] = rating

    async def _enter(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.delay:
            await anyio.sleep(self.delay[name])
        if name in self.fail:
            raise StoreDown(f"{name} unavailable")

    # ---- port ----
    async def find_ratings_by_user(self, user_id) -> List[UserRating]:
        await self._enter("find_ratings_by_user")
        out = []
        for mid, rating in self.ratings.get(str(user_id), {}).items():
            m = self.movies.get(mid)
            out.append(
                UserRating(
                    movie_id=mid,
                    rating=rating,
                    movie=RatedMovie(
                        genres=list(m.genres) if m else [],
                        vote_average=m.vote_average if m else None,
                    ),
                )
            )
        return out

    async def find_movies_by_genres(self, genre_names: Sequence[str], exclude_ids, limit):
        await self._enter("find_movies_by_genres")
        wanted, excluded = set(genre_names), set(exclude_ids)
        hits = [
            m for m in self.movies.values()
            if m.id not in excluded and wanted & set(m.genres)
        ]
        hits.sort(key=lambda m: (-self.popularity[m.id], m.id))
        return [m.model_copy(deep=True) for m in hits[:limit]]

    async def find_top_popular(self, limit):
        await self._enter("find_top_popular")
        ordered = sorted(self.movies.values(), key=lambda m: (-self.popularity[m.id], m.id))
        return [m.model_copy(deep=True) for m in ordered[:limit]]

    async def find_embeddings_by_ids(self, ids):
        await self._enter("find_embeddings_by_ids")
        return {i: list(self.embeddings[i]) for i in ids if i in self.embeddings}

    async def find_rated_movie_ids(self, user_id):
        await self._enter("find_rated_movie_ids")
        return list(self.ratings.get(str(user_id), {}))

    async def upsert_rating(self, user_id, movie_id, rating):
        await self._enter("upsert_rating")
        self.add_rating(user_id, movie_id, rating)

    async def delete_rating(self, user_id, movie_id):
        await self._enter("delete_rating")
        return self.ratings.get(str(user_id), {}).pop(movie_id, None) is not None


class FakeVectorIndex:
    def __init__(self, dim: int = DIM):
        self.dim = dim
        self.hits: List[VectorHit] = []
        self.calls: List[tuple[list, int]] = []
        self.delay: float = 0.0
        self.error: Exception | None = None

    def add_hit(self, movie: CandidateMovie, score: float) -> None:
        payload = {
            "movie_id": movie.id,
            "title": movie.title,
            "genres": list(movie.genres),
            "vote_average": movie.vote_average,
        }
        self.hits.append(VectorHit(movie_id=movie.id, score=score, payload=payload))

    async def query(self, vector, top_k):
        self.calls.append((list(vector), top_k))
        if self.delay:
            await anyio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.hits[:top_k])


class FakeRedis:
    """Subset of redis.asyncio.Redis used by RedisBackend."""

    def __init__(self):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.error: Exception | None = None

    def _check(self):
        if self.error is not None:
            raise self.error

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        n = 0
        for k in keys:
            if self.data.pop(k, None) is not None:
                n += 1
            self.ttls.pop(k, None)
        return n

    async def scan_iter(self, match: str = "*"):
        self._check()
        for k in list(self.data):
            if fnmatch.fnmatchcase(k, match):
                yield k


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> CacheLayer:
    return CacheLayer(MemoryBackend(clock=clock))


@pytest.fixture
def store() -> FakeMovieStore:
    return FakeMovieStore()


@pytest.fixture
def index() -> FakeVectorIndex:
    return FakeVectorIndex()


@pytest.fixture
def make_index():
    return FakeVectorIndex


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def embedding_dim() -> int:
    return DIM


@pytest.fixture
def store_down():
    """Exception type raised by FakeMovieStore methods listed in `fail`."""
    return StoreDown


@pytest.fixture
def catalog():
    return seed_catalog


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        embedding_dim=DIM,
        vector_timeout_s=0.5,
        store_timeout_s=0.5,
    )


def emb(*values: float) -> List[float]:
    return list(values)


def seed_catalog(store: FakeMovieStore, index: FakeVectorIndex, user_id: Any = "u1") -> None:
    """
    Three rated Drama/Crime movies (1-3) with embeddings, and a catalog of
    unrated candidates (10-15). Vector index returns 10, 11, 12 and one rated movie.
    """
    store.add_movie(1, genres=["Drama"], vote=8.0, embedding=emb(1, 0, 0, 0))
    store.add_movie(2, genres=["Drama", "Crime"], vote=7.5, embedding=emb(0, 1, 0, 0))
    store.add_movie(3, genres=["Crime"], vote=7.0, embedding=emb(0, 0, 1, 0))
    store.add_rating(user_id, 1, 9)
    store.add_rating(user_id, 2, 8)
    store.add_rating(user_id, 3, 6)

    store.add_movie(10, genres=["Drama"], vote=8.5, popularity=90)
    store.add_movie(11, genres=["Comedy"], vote=6.0, popularity=40)
    store.add_movie(12, genres=["Crime", "Drama"], vote=7.8, popularity=70)
    store.add_movie(13, genres=["Drama"], vote=6.5, popularity=60)
    store.add_movie(14, genres=["Horror"], vote=5.0, popularity=95)
    store.add_movie(15, genres=["Crime"], vote=None, popularity=10)

    index.add_hit(store.movies[10], 0.82)
    index.add_hit(store.movies[11], 0.55)
    index.add_hit(store.movies[1], 0.99)  # already rated
    index.add_hit(store.movies[12], 0.40)
