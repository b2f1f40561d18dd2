import pytest

from cineblend_cache.regions import CacheRegion
from cineblend_core.errors import ExtractionError, InvalidRatingError
from cineblend_core.types import RatedMovie, UserRating
from cineblend_user.preference_extractor import PreferenceExtractor, build_profile
from cineblend_user.ratings_service import RatingsService


def _rating(movie_id, rating, *genres):
    return UserRating(movie_id=movie_id, rating=rating, movie=RatedMovie(genres=list(genres)))


def test_build_profile_drama_fan():
    profile = build_profile("u1", [_rating(1, 9, "Drama"), _rating(2, 8, "Drama")])

    assert profile.total_ratings == 2
    assert profile.average_rating == 8.5
    assert profile.top_rated_movie_ids == [1, 2]
    assert len(profile.favorite_genres) == 1
    drama = profile.favorite_genres[0]
    assert drama.genre == "Drama"
    assert drama.occurrence_count == 2
    assert drama.weight == pytest.approx(0.85)


def test_build_profile_empty_ratings():
    profile = build_profile("u1", [])
    assert profile.total_ratings == 0
    assert profile.average_rating == 0.0
    assert profile.favorite_genres == []
    assert profile.top_rated_movie_ids == []


def test_top_rated_respects_threshold_cap_and_store_order():
    ratings = [
        _rating(1, 2),
        _rating(2, 7),
        _rating(3, 9),
        _rating(4, 7),
        _rating(5, 8),
        _rating(6, 3),
        _rating(7, 10),
    ]
    profile = build_profile("u1", ratings, min_rating=3)
    # equal ratings (2 and 4) keep their store order; 1 is below threshold
    assert profile.top_rated_movie_ids == [7, 3, 5, 2, 4]

    strict = build_profile("u1", ratings, min_rating=9)
    assert strict.top_rated_movie_ids == [7, 3]


def test_favorite_genres_sorted_and_capped():
    genres = [f"G{i:02d}" for i in range(12)]
    ratings = [_rating(i, 5 + (i % 5), g) for i, g in enumerate(genres)]
    ratings.append(_rating(100, 10, "G00"))
    profile = build_profile("u1", ratings)

    assert len(profile.favorite_genres) == 10
    weights = [g.weight for g in profile.favorite_genres]
    assert weights == sorted(weights, reverse=True)
    assert profile.favorite_genres[0].genre == "G00"
    for g in profile.favorite_genres:
        assert 0.0 <= g.weight <= 1.0


@pytest.mark.anyio
async def test_extract_is_cached_and_idempotent(store, cache):
    store.add_movie(1, genres=["Drama"])
    store.add_movie(2, genres=["Drama"])
    store.add_rating("u1", 1, 9)
    store.add_rating("u1", 2, 8)
    extractor = PreferenceExtractor(store, cache)

    first = await extractor.extract("u1")
    second = await extractor.extract("u1")

    assert first == second
    assert store.calls["find_ratings_by_user"] == 1
    cached, hit = await cache.get(CacheRegion.USER_METADATA, "u1")
    assert hit and cached["min_rating"] == 3


@pytest.mark.anyio
async def test_extract_rebuilds_for_a_different_threshold(store, cache):
    store.add_movie(1, genres=["Drama"])
    store.add_movie(2, genres=["Drama"])
    store.add_rating("u1", 1, 9)
    store.add_rating("u1", 2, 4)
    extractor = PreferenceExtractor(store, cache)

    assert (await extractor.extract("u1", min_rating=3)).top_rated_movie_ids == [1, 2]
    assert (await extractor.extract("u1", min_rating=8)).top_rated_movie_ids == [1]
    assert store.calls["find_ratings_by_user"] == 2


@pytest.mark.anyio
async def test_rating_invalidates_profile(store, cache):
    store.add_movie(1, genres=["Drama"])
    store.add_movie(2, genres=["Comedy"])
    store.add_rating("u1", 1, 9)
    extractor = PreferenceExtractor(store, cache)
    ratings = RatingsService(store, cache)

    before = await extractor.extract("u1")
    assert before.total_ratings == 1

    await ratings.rate("u1", 2, 7)
    after = await extractor.extract("u1")

    assert after.total_ratings == 2
    assert {g.genre for g in after.favorite_genres} == {"Drama", "Comedy"}
    assert store.calls["find_ratings_by_user"] == 2


@pytest.mark.anyio
async def test_store_fault_raises_extraction_error(store, cache):
    store.fail.add("find_ratings_by_user")
    extractor = PreferenceExtractor(store, cache)

    with pytest.raises(ExtractionError) as exc:
        await extractor.extract("u1")
    assert exc.value.status == 502
    assert (await cache.get(CacheRegion.USER_METADATA, "u1"))[1] is False


@pytest.mark.anyio
async def test_store_timeout_raises_extraction_error(store, cache):
    store.delay["find_ratings_by_user"] = 1.0
    extractor = PreferenceExtractor(store, cache, timeout_s=0.05)

    with pytest.raises(ExtractionError):
        await extractor.extract("u1")


def test_cold_start_and_top_genres():
    profile = build_profile(
        "u1",
        [_rating(1, 9, "Drama", "Crime"), _rating(2, 8, "Drama"), _rating(3, 4, "Comedy")],
    )
    assert PreferenceExtractor.is_cold_start(profile) is False
    assert PreferenceExtractor.top_genres(profile, limit=2) == ["Drama", "Crime"]

    assert PreferenceExtractor.is_cold_start(build_profile("u2", [_rating(1, 9)])) is True


# ---------- ratings service ----------
@pytest.mark.anyio
async def test_rate_rejects_out_of_range(store, cache):
    service = RatingsService(store, cache)
    with pytest.raises(InvalidRatingError):
        await service.rate("u1", 1, 11)
    assert "upsert_rating" not in store.calls


@pytest.mark.anyio
async def test_remove_and_collection_changed_invalidate(store, cache):
    store.add_rating("u1", 1, 8)
    service = RatingsService(store, cache)

    await cache.set(CacheRegion.USER_RATED_IDS, "u1", [1])
    assert await service.remove("u1", 1) is True
    assert (await cache.get(CacheRegion.USER_RATED_IDS, "u1"))[1] is False

    await cache.set(CacheRegion.RECOMMENDATIONS, "u1", {"signature": "x", "items": []})
    await service.collection_changed("u1")
    assert (await cache.get(CacheRegion.RECOMMENDATIONS, "u1"))[1] is False
