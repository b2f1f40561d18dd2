from __future__ import annotations

from typing import Collection, Dict, List, Sequence

from cineblend_core.config import CO_OCCURRENCE_BOOST
from cineblend_core.types import (
    CandidateMovie,
    PreferenceProfile,
    ScoreBreakdown,
    ScoredRecommendation,
    ScoreWeights,
)

from .metadata import genre_score, hybrid_score, match_reason, matched_genres, popularity_score


def score_candidate(
    movie: CandidateMovie,
    profile: PreferenceProfile,
    weights: ScoreWeights,
    *,
    vector_score: float,
) -> ScoredRecommendation:
    g = genre_score(movie.genres, profile.favorite_genres)
    p = popularity_score(movie.vote_average)
    return ScoredRecommendation(
        **movie.model_dump(),
        recommendation_score=hybrid_score(vector_score, g, p, weights),
        score_breakdown=ScoreBreakdown(vector=vector_score, genre=g, popularity=p),
        matched_genres=matched_genres(movie.genres, profile.favorite_genres),
        match_reason=match_reason(vector_score, g),
    )


def merge_candidates(
    vector_candidates: Sequence[CandidateMovie],
    genre_candidates: Sequence[CandidateMovie],
    *,
    profile: PreferenceProfile,
    weights: ScoreWeights,
    exclude_ids: Collection[int] = (),
    co_occurrence_boost: float = CO_OCCURRENCE_BOOST,
) -> List[ScoredRecommendation]:
    """
    Dedupe both candidate sets by movie id and score them.

    Vector hits are scored first. A genre hit that the vector search also found
    gets its score multiplied by `co_occurrence_boost` once; its breakdown is kept
    as-is. Genre-only hits are scored with a vector score of 0.
    """
    excluded = set(exclude_ids)
    by_id: Dict[int, ScoredRecommendation] = {}
    from_vector: set[int] = set()

    for c in vector_candidates:
        if c.id in excluded or c.id in by_id:
            continue
        by_id[c.id] = score_candidate(
            c, profile, weights, vector_score=float(c.similarity_score or 0.0)
        )
        from_vector.add(c.id)

    boosted: set[int] = set()
    for c in genre_candidates:
        if c.id in excluded:
            continue
        existing = by_id.get(c.id)
        if existing is None:
            by_id[c.id] = score_candidate(c, profile, weights, vector_score=0.0)
        elif c.id in from_vector and c.id not in boosted:
            existing.recommendation_score = (existing.recommendation_score or 0.0) * co_occurrence_boost
            boosted.add(c.id)

    return list(by_id.values())


def _rank_key(r: ScoredRecommendation):
    vote = r.vote_average if r.vote_average is not None else float("-inf")
    return (-(r.recommendation_score or 0.0), -vote, r.id)


def rank(recs: Sequence[ScoredRecommendation], top_k: int) -> List[ScoredRecommendation]:
    """Score desc, then vote average desc, then id asc; truncated to top_k."""
    return sorted(recs, key=_rank_key)[:top_k]
