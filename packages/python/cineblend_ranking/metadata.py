from __future__ import annotations

from typing import Iterable, List, Mapping, Sequence

from cineblend_core.types import GenreAffinity, ScoreWeights

# match reason thresholds
STRONG_VECTOR_MATCH = 0.7
VECTOR_MATCH = 0.5
STRONG_GENRE_MATCH = 0.7

REASON_SIMILAR = "similar to your favorite movies"
REASON_RELATED = "related to your taste"
REASON_GENRES = "matches your favorite genres"
REASON_DEFAULT = "recommended based on your profile"


def _clamp01(x: float) -> float:
    return 0.0 if x <= 0.0 else 1.0 if x >= 1.0 else x


def genre_score(
    movie_genres: Sequence[str], user_genres: Sequence[GenreAffinity] | Mapping[str, float]
) -> float:
    """
    Share of the user's total genre weight carried by the movie's genres, in [0, 1].
    A genre listed twice on the movie still counts once.
    """
    weights = (
        dict(user_genres)
        if isinstance(user_genres, Mapping)
        else {g.genre: g.weight for g in user_genres}
    )
    if not movie_genres or not weights:
        return 0.0
    max_weight = sum(weights.values())
    if max_weight <= 0:
        return 0.0
    matched = sum(weights.get(g, 0.0) for g in set(movie_genres))
    return _clamp01(matched / max_weight)


def popularity_score(vote_average: float | None) -> float:
    """TMDB-style 0-10 vote average normalized to [0, 1]."""
    if vote_average is None or vote_average < 0:
        return 0.0
    return _clamp01(float(vote_average) / 10.0)


def hybrid_score(
    vector: float, genre: float, popularity: float, weights: ScoreWeights
) -> float:
    return (
        vector * weights.vector
        + genre * weights.genre_boost
        + popularity * weights.popularity
    )


def matched_genres(movie_genres: Iterable[str], user_genres: Sequence[GenreAffinity]) -> List[str]:
    favorites = {g.genre for g in user_genres}
    return [g for g in movie_genres if g in favorites]


def match_reason(vector: float, genre: float) -> str:
    reasons: List[str] = []
    if vector >= STRONG_VECTOR_MATCH:
        reasons.append(REASON_SIMILAR)
    elif vector >= VECTOR_MATCH:
        reasons.append(REASON_RELATED)
    if genre >= STRONG_GENRE_MATCH:
        reasons.append(REASON_GENRES)
    return ", ".join(reasons) if reasons else REASON_DEFAULT
