from __future__ import annotations

import json
from typing import Dict, List, Protocol, Sequence

from anyio import to_thread
from postgrest.exceptions import APIError as PostgrestAPIError

from cineblend_core.errors import DomainError, InvalidRatingError
from cineblend_core.types import CandidateMovie, MovieId, RatedMovie, UserId, UserRating, Vector

TABLE_RATINGS = "user_ratings"
TABLE_MOVIES = "movies"
TABLE_EMBEDDINGS = "movie_embeddings"
MOVIE_COLUMNS = "id, title, release_year, overview, genres, poster_path, vote_average"
MAX_IN = 200  # keep PostgREST URL/param size safe


class MovieStore(Protocol):
    """Relational movie / rating store. Never mutated by the recommender itself."""

    async def find_ratings_by_user(self, user_id: UserId) -> List[UserRating]: ...

    async def find_movies_by_genres(
        self, genre_names: Sequence[str], exclude_ids: Sequence[MovieId], limit: int
    ) -> List[CandidateMovie]: ...

    async def find_top_popular(self, limit: int) -> List[CandidateMovie]: ...

    async def find_embeddings_by_ids(self, ids: Sequence[MovieId]) -> Dict[MovieId, Vector]: ...

    async def find_rated_movie_ids(self, user_id: UserId) -> List[MovieId]: ...

    async def upsert_rating(self, user_id: UserId, movie_id: MovieId, rating: float) -> None: ...

    async def delete_rating(self, user_id: UserId, movie_id: MovieId) -> bool: ...


def parse_vector(value) -> Vector | None:
    """pgvector / json columns come back either as lists or as '[..]' / '{..}' strings."""
    if value is None:
        return None
    if isinstance(value, list):
        return [float(v) for v in value]
    if isinstance(value, str):
        raw = value.strip()
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            items = [i for i in raw.strip("{}[]").split(",") if i.strip()]
            try:
                parsed = [float(i) for i in items]
            except ValueError:
                return None
        if isinstance(parsed, list):
            return [float(v) for v in parsed]
    return None


def _to_float(x) -> float | None:
    return float(x) if x is not None else None


def _row_to_movie(row: dict) -> CandidateMovie:
    return CandidateMovie(
        id=int(row["id"]),
        title=str(row.get("title") or ""),
        year=row.get("release_year"),
        overview=row.get("overview"),
        genres=list(row.get("genres") or []),
        poster_path=row.get("poster_path"),
        vote_average=_to_float(row.get("vote_average")),
    )


def _map_pgrest(e: PostgrestAPIError) -> Exception:
    code = getattr(e, "code", None) or ""
    # 23503 foreign_key_violation (unknown movie), 23514 check_violation (rating range)
    if code in ("23503", "23514"):
        return InvalidRatingError(getattr(e, "message", None) or str(e))
    if code == "42501":
        return DomainError("permission denied", code="forbidden", status=403)
    return e  # let unexpected ones bubble up


class SupabaseMovieStore:
    def __init__(self, client):
        self.client = client

    # ---------- Async facade (runs sync work in threadpool) ----------
    # abandon_on_cancel lets a caller deadline return without waiting on the thread.
    async def find_ratings_by_user(self, user_id: UserId) -> List[UserRating]:
        return await to_thread.run_sync(
            self._find_ratings_by_user_sync, user_id, abandon_on_cancel=True
        )

    async def find_movies_by_genres(
        self, genre_names: Sequence[str], exclude_ids: Sequence[MovieId], limit: int
    ) -> List[CandidateMovie]:
        return await to_thread.run_sync(
            self._find_movies_by_genres_sync,
            list(genre_names),
            list(exclude_ids),
            int(limit),
            abandon_on_cancel=True,
        )

    async def find_top_popular(self, limit: int) -> List[CandidateMovie]:
        return await to_thread.run_sync(
            self._find_top_popular_sync, int(limit), abandon_on_cancel=True
        )

    async def find_embeddings_by_ids(self, ids: Sequence[MovieId]) -> Dict[MovieId, Vector]:
        return await to_thread.run_sync(
            self._find_embeddings_by_ids_sync, list(ids), abandon_on_cancel=True
        )

    async def find_rated_movie_ids(self, user_id: UserId) -> List[MovieId]:
        return await to_thread.run_sync(
            self._find_rated_movie_ids_sync, user_id, abandon_on_cancel=True
        )

    async def upsert_rating(self, user_id: UserId, movie_id: MovieId, rating: float) -> None:
        await to_thread.run_sync(self._upsert_rating_sync, user_id, movie_id, rating)

    async def delete_rating(self, user_id: UserId, movie_id: MovieId) -> bool:
        return await to_thread.run_sync(self._delete_rating_sync, user_id, movie_id)

    # ---------- Private sync impls ----------
    def _find_ratings_by_user_sync(self, user_id: UserId) -> List[UserRating]:
        res = (
            self.client.table(TABLE_RATINGS)
            .select("movie_id, rating, movies(genres, vote_average)")
            .eq("user_id", user_id)
            .execute()
        )
        out: List[UserRating] = []
        for row in getattr(res, "data", None) or []:
            movie = row.get("movies") or {}
            out.append(
                UserRating(
                    movie_id=int(row["movie_id"]),
                    rating=float(row["rating"]),
                    movie=RatedMovie(
                        genres=list(movie.get("genres") or []),
                        vote_average=_to_float(movie.get("vote_average")),
                    ),
                )
            )
        return out

    def _find_movies_by_genres_sync(
        self, genre_names: List[str], exclude_ids: List[MovieId], limit: int
    ) -> List[CandidateMovie]:
        excluded = set(exclude_ids)
        q = (
            self.client.table(TABLE_MOVIES)
            .select(MOVIE_COLUMNS)
            .overlaps("genres", genre_names)
        )
        fetch = limit
        if excluded and len(excluded) <= MAX_IN:
            q = q.not_.in_("id", sorted(excluded))
        elif excluded:
            # too many ids for the URL: over-fetch and filter here
            fetch = limit + len(excluded)
        res = q.order("popularity", desc=True).limit(fetch).execute()
        movies = [_row_to_movie(r) for r in getattr(res, "data", None) or []]
        return [m for m in movies if m.id not in excluded][:limit]

    def _find_top_popular_sync(self, limit: int) -> List[CandidateMovie]:
        res = (
            self.client.table(TABLE_MOVIES)
            .select(MOVIE_COLUMNS)
            .order("popularity", desc=True)
            .limit(limit)
            .execute()
        )
        return [_row_to_movie(r) for r in getattr(res, "data", None) or []]

    def _find_embeddings_by_ids_sync(self, ids: List[MovieId]) -> Dict[MovieId, Vector]:
        out: Dict[MovieId, Vector] = {}
        for start in range(0, len(ids), MAX_IN):
            chunk = ids[start : start + MAX_IN]
            res = (
                self.client.table(TABLE_EMBEDDINGS)
                .select("movie_id, embedding")
                .in_("movie_id", chunk)
                .execute()
            )
            for row in getattr(res, "data", None) or []:
                vec = parse_vector(row.get("embedding"))
                if vec is not None:
                    out[int(row["movie_id"])] = vec
        return out

    def _find_rated_movie_ids_sync(self, user_id: UserId) -> List[MovieId]:
        res = (
            self.client.table(TABLE_RATINGS)
            .select("movie_id")
            .eq("user_id", user_id)
            .execute()
        )
        return [int(r["movie_id"]) for r in getattr(res, "data", None) or []]

    def _upsert_rating_sync(self, user_id: UserId, movie_id: MovieId, rating: float) -> None:
        try:
            (
                self.client.table(TABLE_RATINGS)
                .upsert(
                    {"user_id": user_id, "movie_id": movie_id, "rating": rating},
                    on_conflict="user_id,movie_id",
                )
                .execute()
            )
        except PostgrestAPIError as e:
            raise _map_pgrest(e)

    def _delete_rating_sync(self, user_id: UserId, movie_id: MovieId) -> bool:
        try:
            res = (
                self.client.table(TABLE_RATINGS)
                .delete()
                .eq("user_id", user_id)
                .eq("movie_id", movie_id)
                .execute()
            )
        except PostgrestAPIError as e:
            raise _map_pgrest(e)
        return bool(getattr(res, "data", None))
