import asyncio
import logging
from collections.abc import Iterable
from .tmdb import AsyncTmdbClient, DiscoverQuery, MovieSummary, TmdbClient
from .config import CANDIDATE_QUERIES

logger = logging.getLogger(__name__)


def build_discover_queries(
    top_genres: list[int],
    min_rating: float,
    min_vote_count: int,
) -> list[DiscoverQuery]:
    """One query per CANDIDATE_QUERIES entry, sharing the genre filter and floors."""
    return [
        DiscoverQuery(
            genre_ids=tuple(top_genres),
            sort_by=sort_by,
            min_vote_average=min_rating,
            min_vote_count=min_vote_count,
            page=page,
        )
        for sort_by, page in CANDIDATE_QUERIES
    ]


def dedupe_movies(movies: Iterable[MovieSummary]) -> list[MovieSummary]:
    """Drop repeated ids, keeping the first occurrence and the original order."""
    unique: dict[int, MovieSummary] = {}
    for movie in movies:
        unique.setdefault(movie.id, movie)
    return list(unique.values())


def gather_candidates(
    client: TmdbClient,
    top_genres: list[int],
    min_rating: float,
    min_vote_count: int,
) -> list[MovieSummary]:
    """Run the discover queries in order and merge their results."""
    results: list[MovieSummary] = []
    for query in build_discover_queries(top_genres, min_rating, min_vote_count):
        page = client.discover(query)
        logger.debug(f"discover {query.sort_by} page {query.page}: {len(page.results)} results")
        results.extend(page.results)

    candidates = dedupe_movies(results)
    logger.debug(f"{len(candidates)} unique candidates from {len(results)} results")
    return candidates


async def gather_candidates_async(
    client: AsyncTmdbClient,
    top_genres: list[int],
    min_rating: float,
    min_vote_count: int,
) -> list[MovieSummary]:
    """Same as gather_candidates, with the discover queries issued concurrently."""
    queries = build_discover_queries(top_genres, min_rating, min_vote_count)
    pages = await asyncio.gather(*(client.discover(q) for q in queries))

    # gather preserves argument order, so the merge matches the sequential path
    candidates = dedupe_movies(movie for page in pages for movie in page.results)
    logger.debug(f"{len(candidates)} unique candidates from {len(queries)} concurrent queries")
    return candidates
