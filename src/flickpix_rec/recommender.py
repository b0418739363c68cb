"""
Recommendation engine.

Pipeline for one request:
    1. Load the active user's profile
    2. Derive up to three favorite genres (profile.derive_top_genres)
    3. Fetch candidates with two discover queries (candidates.gather_candidates)
    4. Drop watched films, score, stable-sort and truncate (score_and_rank)
    5. Explain each pick from its genre overlap (build_reason)

With no genre signal at all the engine returns currently popular films
instead. Catalog errors propagate unchanged; nothing here retries.
"""
import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from collections.abc import Iterable
from .tmdb import Genre, MovieSummary, backdrop_url, poster_url
from .profile import derive_top_genres
from .candidates import gather_candidates, gather_candidates_async
from .storage import Session
from .config import (
    GENRE_OVERLAP_WEIGHT,
    POPULARITY_WEIGHT,
    MAX_REASON_GENRES,
    DEFAULT_LIMIT,
    DEFAULT_MIN_RATING,
    DEFAULT_MIN_VOTE_COUNT,
    DEFAULT_POSTER_SIZE,
    DEFAULT_BACKDROP_SIZE,
    POPULAR_REASON,
    MATCH_REASON_TEMPLATE,
    FALLBACK_REASON_TEMPLATE,
    FALLBACK_GENRE_WORD,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecommendationOptions:
    limit: int = DEFAULT_LIMIT
    min_rating: float = DEFAULT_MIN_RATING
    min_vote_count: int = DEFAULT_MIN_VOTE_COUNT

    def __post_init__(self):
        if self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")
        if not 0 <= self.min_rating <= 10:
            raise ValueError(f"min_rating must be between 0 and 10, got {self.min_rating}")
        if self.min_vote_count < 0:
            raise ValueError(f"min_vote_count must be >= 0, got {self.min_vote_count}")


@dataclass
class Recommendation:
    id: int
    title: str
    overview: str
    poster_path: str | None
    backdrop_path: str | None
    vote_average: float
    vote_count: int
    release_date: str
    genre_ids: list[int]
    reason: str
    score: float | None = None

    @classmethod
    def from_movie(cls, movie: MovieSummary, reason: str, score: float | None = None) -> "Recommendation":
        return cls(
            id=movie.id,
            title=movie.title,
            overview=movie.overview,
            poster_path=movie.poster_path,
            backdrop_path=movie.backdrop_path,
            vote_average=movie.vote_average,
            vote_count=movie.vote_count,
            release_date=movie.release_date,
            genre_ids=list(movie.genre_ids),
            reason=reason,
            score=score,
        )

    def to_dict(self) -> dict:
        """camelCase output shape consumed by the app."""
        data = asdict(self)
        return {
            "id": data["id"],
            "title": data["title"],
            "overview": data["overview"],
            "posterPath": data["poster_path"],
            "backdropPath": data["backdrop_path"],
            "voteAverage": data["vote_average"],
            "voteCount": data["vote_count"],
            "releaseDate": data["release_date"],
            "genreIds": data["genre_ids"],
            "reason": data["reason"],
            "score": round(data["score"], 4) if data["score"] is not None else None,
        }


def genre_overlap(movie: MovieSummary, top_genres: Iterable[int]) -> list[int]:
    """The movie's genre ids that are favorites, in the movie's own order."""
    favorites = set(top_genres)
    return [g for g in dict.fromkeys(movie.genre_ids) if g in favorites]


def score_candidate(movie: MovieSummary, top_genres: Iterable[int]) -> float:
    """
    vote_average + 0.5 per favorite genre matched + 0.1 * log10(popularity + 1).

    Quality dominates; genre overlap is a small nudge and popularity a damped
    bonus so blockbusters do not outrank better-rated films.
    """
    overlap = len(genre_overlap(movie, top_genres))
    popularity = max(movie.popularity, 0.0)
    return (
        movie.vote_average
        + GENRE_OVERLAP_WEIGHT * overlap
        + POPULARITY_WEIGHT * math.log10(popularity + 1)
    )


def score_and_rank(
    candidates: Iterable[MovieSummary],
    top_genres: list[int],
    watched_ids: set[int],
    limit: int = DEFAULT_LIMIT,
) -> list[tuple[MovieSummary, float]]:
    """Drop watched films, score the rest and keep the best `limit` (stable on ties)."""
    scored = [
        (movie, score_candidate(movie, top_genres))
        for movie in candidates
        if movie.id not in watched_ids
    ]
    # sorted() is stable: equal scores keep candidate order
    scored = sorted(scored, key=lambda pair: pair[1], reverse=True)
    return scored[:max(limit, 0)]


def genre_name_map(genres: Iterable[Genre]) -> dict[int, str]:
    return {g.id: g.name for g in genres}


def build_reason(movie: MovieSummary, top_genres: Iterable[int], genre_names: dict[int, str]) -> str:
    matched = [
        genre_names[g] for g in genre_overlap(movie, top_genres) if genre_names.get(g)
    ][:MAX_REASON_GENRES]
    if matched:
        return MATCH_REASON_TEMPLATE.format(", ".join(matched))

    first_genre = genre_names.get(movie.genre_ids[0]) if movie.genre_ids else None
    if movie.genre_ids and not first_genre:
        logger.warning(f"No genre name for id {movie.genre_ids[0]} (movie {movie.id})")
    return FALLBACK_REASON_TEMPLATE.format(first_genre or FALLBACK_GENRE_WORD)


def popular_fallback(
    popular: Iterable[MovieSummary],
    watched_ids: set[int],
    limit: int,
) -> list[Recommendation]:
    unwatched = [m for m in popular if m.id not in watched_ids]
    return [Recommendation.from_movie(m, POPULAR_REASON) for m in unwatched[:limit]]


def explain(
    ranked: list[tuple[MovieSummary, float]],
    top_genres: list[int],
    genre_names: dict[int, str],
) -> list[Recommendation]:
    return [
        Recommendation.from_movie(movie, build_reason(movie, top_genres, genre_names), score)
        for movie, score in ranked
    ]


def get_poster_url(path: str | None, size: str = DEFAULT_POSTER_SIZE) -> str | None:
    return poster_url(path, size)


def get_backdrop_url(path: str | None, size: str = DEFAULT_BACKDROP_SIZE) -> str | None:
    return backdrop_url(path, size)


class RecommendationEngine:
    """
    Single entry point for personalized suggestions.

    `catalog` is a TmdbClient for get_recommendations, or an AsyncTmdbClient
    for get_recommendations_async. The engine keeps no per-user state; the
    Session passed to each call says whose profile to read.
    """

    def __init__(self, catalog):
        self.catalog = catalog

    def get_recommendations(
        self,
        session: Session,
        options: RecommendationOptions | None = None,
    ) -> list[Recommendation]:
        options = options or RecommendationOptions()
        profile = session.profile()
        watched_ids = profile.watched_ids()

        top_genres = derive_top_genres(profile.watch_history, profile.preferences)
        if not top_genres:
            logger.info(f"No taste signal for '{session.user_id}', falling back to popular movies")
            popular = self.catalog.get_popular()
            return popular_fallback(popular.results, watched_ids, options.limit)

        candidates = gather_candidates(
            self.catalog, top_genres, options.min_rating, options.min_vote_count
        )
        ranked = score_and_rank(candidates, top_genres, watched_ids, options.limit)
        genre_names = genre_name_map(self.catalog.list_genres())

        recs = explain(ranked, top_genres, genre_names)
        logger.debug(f"{len(recs)} recommendations for '{session.user_id}' (genres {top_genres})")
        return recs

    async def get_recommendations_async(
        self,
        session: Session,
        options: RecommendationOptions | None = None,
    ) -> list[Recommendation]:
        options = options or RecommendationOptions()
        profile = await asyncio.to_thread(session.profile)
        watched_ids = profile.watched_ids()

        top_genres = derive_top_genres(profile.watch_history, profile.preferences)
        if not top_genres:
            logger.info(f"No taste signal for '{session.user_id}', falling back to popular movies")
            popular = await self.catalog.get_popular()
            return popular_fallback(popular.results, watched_ids, options.limit)

        candidates = await gather_candidates_async(
            self.catalog, top_genres, options.min_rating, options.min_vote_count
        )
        ranked = score_and_rank(candidates, top_genres, watched_ids, options.limit)
        genre_names = genre_name_map(await self.catalog.list_genres())

        return explain(ranked, top_genres, genre_names)
