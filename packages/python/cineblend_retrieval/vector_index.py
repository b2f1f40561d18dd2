from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Sequence

from anyio import to_thread
from qdrant_client import QdrantClient

from cineblend_core.config import EMBEDDING_DIM, QDRANT_MOVIE_COLLECTION_NAME
from cineblend_core.errors import DimensionMismatchError
from cineblend_core.types import CandidateMovie, MovieId

log = logging.getLogger(__name__)

PAYLOAD_FIELDS = [
    "movie_id",
    "title",
    "release_year",
    "overview",
    "genres",
    "poster_path",
    "vote_average",
]


@dataclass
class VectorHit:
    movie_id: MovieId
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    dim: int

    async def query(self, vector: Sequence[float], top_k: int) -> List[VectorHit]: ...


def check_dimension(vector: Sequence[float], dim: int, *, where: str = "query vector") -> None:
    if len(vector) != dim:
        raise DimensionMismatchError(dim, len(vector), where=where)


class QdrantVectorIndex:
    def __init__(
        self,
        client: QdrantClient,
        *,
        collection: str = QDRANT_MOVIE_COLLECTION_NAME,
        vector_name: str | None = None,
        dim: int = EMBEDDING_DIM,
    ):
        self.client = client
        self.collection = collection
        self.vector_name = vector_name
        self.dim = dim

    async def query(self, vector: Sequence[float], top_k: int) -> List[VectorHit]:
        check_dimension(vector, self.dim)
        return await to_thread.run_sync(
            self._query_sync, [float(v) for v in vector], int(top_k), abandon_on_cancel=True
        )

    def _query_sync(self, vector: List[float], top_k: int) -> List[VectorHit]:
        res = self.client.query_points(
            collection_name=self.collection,
            query=vector,
            using=self.vector_name,
            limit=top_k,
            with_payload=PAYLOAD_FIELDS,
            with_vectors=False,
        )
        hits: List[VectorHit] = []
        for p in res.points:
            payload = p.payload or {}
            movie_id = payload.get("movie_id", p.id)
            hits.append(VectorHit(movie_id=int(movie_id), score=float(p.score), payload=payload))
        return hits


def hit_to_candidate(hit: VectorHit) -> CandidateMovie:
    pl = hit.payload or {}
    vote = pl.get("vote_average")
    return CandidateMovie(
        id=hit.movie_id,
        title=str(pl.get("title") or ""),
        year=pl.get("release_year"),
        overview=pl.get("overview"),
        genres=list(pl.get("genres") or []),
        poster_path=pl.get("poster_path"),
        vote_average=float(vote) if vote is not None else None,
        similarity_score=hit.score,
    )


class VectorCandidateFinder:
    """Pass-through to the vector index. No caching: query vectors rarely repeat."""

    def __init__(self, index: VectorIndex):
        self.index = index

    async def find(self, vector: Sequence[float], limit: int) -> List[CandidateMovie]:
        hits = await self.index.query(vector, limit)
        log.info("vector index returned %d candidates", len(hits))
        return [hit_to_candidate(h) for h in hits]
