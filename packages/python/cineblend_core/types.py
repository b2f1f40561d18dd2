from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, Field

MovieId = int
UserId = str | int
Vector = List[float]


class CandidateMovie(BaseModel):
    id: MovieId
    title: str = ""
    year: int | None = None
    overview: str | None = None
    genres: list[str] = Field(default_factory=list)
    poster_path: str | None = None
    vote_average: float | None = None
    # Only set by the vector finder (native similarity of the index).
    similarity_score: float | None = None


class GenreAffinity(BaseModel):
    genre: str
    weight: float = Field(ge=0.0)
    occurrence_count: int = Field(ge=0)


class PreferenceProfile(BaseModel):
    user_id: UserId
    favorite_genres: list[GenreAffinity] = Field(default_factory=list)
    average_rating: float = 0.0
    total_ratings: int = 0
    top_rated_movie_ids: list[MovieId] = Field(default_factory=list)

    @classmethod
    def empty(cls, user_id: UserId) -> "PreferenceProfile":
        """Cold-start profile for a user with no ratings."""
        return cls(user_id=user_id)


class RatedMovie(BaseModel):
    genres: list[str] = Field(default_factory=list)
    vote_average: float | None = None
    embedding: Vector | None = None


class UserRating(BaseModel):
    movie_id: MovieId
    rating: float
    movie: RatedMovie = Field(default_factory=RatedMovie)


class ScoreBreakdown(BaseModel):
    vector: float = 0.0
    genre: float = 0.0
    popularity: float = 0.0


class ScoredRecommendation(CandidateMovie):
    # None for both fields = non-personalized (cold start) result.
    recommendation_score: float | None = None
    score_breakdown: ScoreBreakdown | None = None
    matched_genres: list[str] = Field(default_factory=list)
    match_reason: str | None = None

    @property
    def personalized(self) -> bool:
        return self.score_breakdown is not None


@dataclass(frozen=True)
class ScoreWeights:
    vector: float = 0.30
    genre: float = 0.20  # declared, not used by the hybrid formula
    popularity: float = 0.15
    genre_boost: float = 0.25
    recency_boost: float = 0.10  # reserved, not used by the hybrid formula

    def merged(self, overrides: Mapping[str, float] | None) -> "ScoreWeights":
        if not overrides:
            return self
        unknown = set(overrides) - set(asdict(self))
        if unknown:
            raise ValueError(f"unknown weight(s): {', '.join(sorted(unknown))}")
        return replace(self, **{k: float(v) for k, v in overrides.items()})


DEFAULT_WEIGHTS = ScoreWeights()


class RecommendOptions(BaseModel):
    top_k: int = Field(default=10, ge=1)
    exclude_rated: bool = True
    min_user_rating: float = 3
    weights: Dict[str, float] | None = None
    # Per-branch deadline for store / vector index calls; None = settings default.
    timeout_s: float | None = Field(default=None, gt=0)

    def signature(self) -> str:
        """Stable key for the options that shape a ranked list (timeout excluded)."""
        w = ",".join(f"{k}={v}" for k, v in sorted((self.weights or {}).items()))
        return f"k={self.top_k}|ex={int(self.exclude_rated)}|min={self.min_user_rating}|w={w}"


def jsonable(items: List[BaseModel]) -> List[Dict[str, Any]]:
    return [i.model_dump(mode="json") for i in items]
