import math
import threading
from datetime import date

import pytest

from conftest import GENRES, AsyncFakeCatalog, FakeCatalog, movie
from flickpix_rec import recommender as rec
from flickpix_rec.storage import InMemoryProfileStore, Session, WatchedMovie
from flickpix_rec.tmdb import TmdbError

NAMES = rec.genre_name_map(GENRES)


def _session(history=(), favorites=()):
    store = InMemoryProfileStore()
    session = Session(store)
    for entry in history:
        session.append_watched(entry)
    if favorites:
        session.set_favorite_genres(list(favorites))
    return session


def _watched(movie_id, rating=9, genres=(18,)):
    return WatchedMovie(movie_id, f"Watched {movie_id}", rating, date(2024, 1, 1), list(genres))


def test_score_for_action_scifi_thriller_fan():
    candidate = movie(1, vote_average=8.0, genre_ids=[28, 12], popularity=50)

    score = rec.score_candidate(candidate, [28, 878, 53])

    assert score == pytest.approx(8.0 + 0.5 + 0.1 * math.log10(51))
    assert score == pytest.approx(8.67, abs=0.01)


def test_score_is_monotonic_in_vote_average():
    top = [28, 18]
    votes = [0.0, 2.5, 6.4, 6.5, 8.9, 10.0]
    scores = [rec.score_candidate(movie(1, vote_average=v, genre_ids=[28, 35], popularity=120), top) for v in votes]

    assert scores == sorted(scores)
    assert len(set(scores)) == len(scores)


def test_repeated_genre_ids_count_once():
    single = rec.score_candidate(movie(1, genre_ids=[28]), [28])
    repeated = rec.score_candidate(movie(1, genre_ids=[28, 28]), [28])
    assert single == repeated


def test_score_and_rank_filters_sorts_and_truncates():
    candidates = [
        movie(1, vote_average=7.0, genre_ids=[18]),
        movie(2, vote_average=9.0),
        movie(3, vote_average=8.0, genre_ids=[18]),
        movie(4, vote_average=9.5),
    ]

    ranked = rec.score_and_rank(candidates, [18], watched_ids={4}, limit=2)

    assert [m.id for m, _ in ranked] == [2, 3]
    assert all(m.id != 4 for m, _ in ranked)


def test_score_and_rank_is_stable_on_ties():
    candidates = [movie(i, vote_average=7.0, popularity=10.0) for i in (5, 3, 9, 1)]

    ranked = rec.score_and_rank(candidates, [18], watched_ids=set(), limit=10)

    assert [m.id for m, _ in ranked] == [5, 3, 9, 1]


@pytest.mark.parametrize("limit, available, expected", [(10, 4, 4), (2, 4, 2), (0, 4, 0), (5, 0, 0)])
def test_result_length_is_min_of_limit_and_available(limit, available, expected):
    candidates = [movie(i) for i in range(available)]
    assert len(rec.score_and_rank(candidates, [18], set(), limit)) == expected


def test_reason_single_matching_genre():
    candidate = movie(1, genre_ids=[18, 35])
    assert rec.build_reason(candidate, [18, 27], NAMES) == "Matches your favorite genres: Drama"


def test_reason_uses_at_most_two_genres_in_movie_order():
    candidate = movie(1, genre_ids=[53, 28, 878])
    reason = rec.build_reason(candidate, [28, 878, 53], NAMES)
    assert reason == "Matches your favorite genres: Thriller, Action"


def test_reason_without_overlap_names_first_genre_or_movie():
    assert rec.build_reason(movie(1, genre_ids=[35, 18]), [28], NAMES) == "Highly rated Comedy"
    assert rec.build_reason(movie(2, genre_ids=[]), [28], NAMES) == "Highly rated movie"
    assert rec.build_reason(movie(3, genre_ids=[10770]), [28], NAMES) == "Highly rated movie"


def test_reason_skips_unnamed_matches():
    candidate = movie(1, genre_ids=[9999, 18])
    assert rec.build_reason(candidate, [9999, 18], NAMES) == "Matches your favorite genres: Drama"
    assert rec.build_reason(movie(2, genre_ids=[9999]), [9999], NAMES) == "Highly rated movie"


def test_options_validation():
    with pytest.raises(ValueError):
        rec.RecommendationOptions(limit=-1)
    with pytest.raises(ValueError):
        rec.RecommendationOptions(min_rating=11)
    with pytest.raises(ValueError):
        rec.RecommendationOptions(min_vote_count=-5)

    defaults = rec.RecommendationOptions()
    assert (defaults.limit, defaults.min_rating, defaults.min_vote_count) == (10, 6.5, 100)


def _personal_catalog():
    return FakeCatalog(
        discover_pages={
            ("vote_average.desc", 1): [
                movie(100, vote_average=8.5, genre_ids=[28, 878], popularity=40),
                movie(101, vote_average=8.8, genre_ids=[18], popularity=15),
                movie(102, vote_average=7.9, genre_ids=[878], popularity=300),
            ],
            ("popularity.desc", 2): [
                movie(102, vote_average=1.0, genre_ids=[878], popularity=300),
                movie(103, vote_average=7.1, genre_ids=[28, 53], popularity=900),
                movie(200, vote_average=9.9, genre_ids=[28], popularity=5),
            ],
        },
        popular=[movie(900)],
    )


def test_engine_end_to_end():
    catalog = _personal_catalog()
    session = _session(
        history=[_watched(200, 9, [28, 878]), _watched(201, 4, [27])],
        favorites=[53],
    )

    recs = rec.RecommendationEngine(catalog).get_recommendations(session, rec.RecommendationOptions(limit=3))

    assert [r.id for r in recs] == [100, 101, 102]
    assert recs[0].reason == "Matches your favorite genres: Action, Science Fiction"
    assert recs[1].reason == "Highly rated Drama"
    assert recs[0].score == pytest.approx(8.5 + 1.0 + 0.1 * math.log10(41))
    assert recs[2].vote_average == 7.9  # first-seen instance kept

    discover_queries = [c[1] for c in catalog.calls if c[0] == "discover"]
    assert [q.genre_ids for q in discover_queries] == [(53, 28, 878), (53, 28, 878)]
    assert [c[0] for c in catalog.calls].count("genres") == 1
    assert ("popular", 1) not in catalog.calls


def test_engine_never_returns_watched_movies():
    catalog = _personal_catalog()
    session = _session(history=[_watched(m, 9, [28]) for m in (100, 101, 102, 103, 200)])

    recs = rec.RecommendationEngine(catalog).get_recommendations(session)

    assert recs == []


def test_fallback_when_no_taste_signal():
    catalog = FakeCatalog(popular=[movie(1), movie(2), movie(3), movie(4)])
    session = _session()

    recs = rec.RecommendationEngine(catalog).get_recommendations(session, rec.RecommendationOptions(limit=3))

    assert [r.id for r in recs] == [1, 2, 3]
    assert all(r.reason == "Popular right now" for r in recs)
    assert all(r.score is None for r in recs)
    assert [c[0] for c in catalog.calls] == ["popular"]


def test_fallback_drops_watched_movies_rated_below_threshold():
    catalog = FakeCatalog(popular=[movie(1), movie(2), movie(3)])
    session = _session(history=[_watched(2, rating=5, genres=[18])])

    recs = rec.RecommendationEngine(catalog).get_recommendations(session)

    assert [r.id for r in recs] == [1, 3]


def test_empty_popular_list_is_not_an_error():
    recs = rec.RecommendationEngine(FakeCatalog()).get_recommendations(_session())
    assert recs == []


def test_recommendations_are_idempotent():
    session = _session(history=[_watched(200, 9, [28, 878])])
    engine = rec.RecommendationEngine(_personal_catalog())

    first = engine.get_recommendations(session)
    second = engine.get_recommendations(session)

    assert first == second


def test_catalog_errors_propagate():
    class BrokenCatalog(FakeCatalog):
        def list_genres(self):
            raise TmdbError(500, "Internal error")

    session = _session(favorites=[18])
    with pytest.raises(TmdbError) as excinfo:
        rec.RecommendationEngine(BrokenCatalog()).get_recommendations(session)
    assert excinfo.value.status_code == 500


def test_recommendation_to_dict_uses_app_field_names():
    r = rec.Recommendation.from_movie(movie(7, genre_ids=[18]), "Popular right now")
    data = r.to_dict()

    assert data["posterPath"] == "/poster7.jpg"
    assert data["genreIds"] == [18]
    assert data["reason"] == "Popular right now"
    assert data["score"] is None


def test_image_helpers():
    assert rec.get_poster_url("/p.jpg") == "https://image.tmdb.org/t/p/w500/p.jpg"
    assert rec.get_backdrop_url("/b.jpg", "w1280") == "https://image.tmdb.org/t/p/w1280/b.jpg"
    assert rec.get_poster_url(None) is None


@pytest.mark.asyncio
async def test_async_engine_matches_sync_engine():
    pages = _personal_catalog().discover_pages
    session = _session(history=[_watched(200, 9, [28, 878])], favorites=[53])

    sync_recs = rec.RecommendationEngine(FakeCatalog(discover_pages=pages)).get_recommendations(session)
    async_recs = await rec.RecommendationEngine(AsyncFakeCatalog(discover_pages=pages)).get_recommendations_async(session)

    assert async_recs == sync_recs


@pytest.mark.asyncio
async def test_async_engine_fallback():
    catalog = AsyncFakeCatalog(popular=[movie(1), movie(2)])

    recs = await rec.RecommendationEngine(catalog).get_recommendations_async(_session())

    assert [r.reason for r in recs] == ["Popular right now", "Popular right now"]


@pytest.mark.asyncio
async def test_async_engine_reads_profile_off_the_event_loop():
    session = _session(history=[_watched(200, 9, [28, 878])], favorites=[53])
    read_on = []
    load_profile = session.profile

    def tracked_profile():
        read_on.append(threading.get_ident())
        return load_profile()

    session.profile = tracked_profile
    pages = _personal_catalog().discover_pages

    recs = await rec.RecommendationEngine(AsyncFakeCatalog(discover_pages=pages)).get_recommendations_async(session)

    assert read_on and read_on[0] != threading.get_ident()
    assert [r.id for r in recs][:2] == [100, 101]
