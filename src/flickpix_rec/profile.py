import logging
from collections.abc import Iterable
from .storage import UserPreferences, WatchedMovie
from .config import HIGHLY_RATED_MIN, PREFERENCE_BOOST, TOP_GENRE_COUNT

logger = logging.getLogger(__name__)


class GenreTally:
    """Accumulated affinity score per genre id."""

    def __init__(self):
        self._scores: dict[int, float] = {}

    def increment(self, genre_id: int, amount: float = 1) -> None:
        self._scores[genre_id] = self._scores.get(genre_id, 0) + amount

    def add_boost(self, genre_id: int, boost: float = PREFERENCE_BOOST) -> None:
        """Explicit preference; creates the entry if the genre was never watched."""
        self.increment(genre_id, boost)

    def score(self, genre_id: int) -> float:
        return self._scores.get(genre_id, 0)

    def ranked(self) -> list[tuple[int, float]]:
        """(genre id, score) by score descending; equal scores go to the lower genre id."""
        return sorted(self._scores.items(), key=lambda item: (-item[1], item[0]))

    def top(self, n: int) -> list[int]:
        return [genre_id for genre_id, _ in self.ranked()[:n]]

    def __len__(self) -> int:
        return len(self._scores)

    def __bool__(self) -> bool:
        return bool(self._scores)


def build_genre_tally(
    watch_history: Iterable[WatchedMovie],
    preferences: UserPreferences,
    min_rating: int = HIGHLY_RATED_MIN,
    boost: float = PREFERENCE_BOOST,
) -> GenreTally:
    """
    Count genres over highly rated films, then boost explicit favorites.

    With the default boost of 5, one explicit preference outweighs a genre
    seen in up to four loved films.
    """
    tally = GenreTally()
    for movie in watch_history:
        if movie.rating < min_rating:
            continue
        for genre_id in set(movie.genres):
            tally.increment(genre_id)

    for genre_id in dict.fromkeys(preferences.favorite_genres):
        tally.add_boost(genre_id, boost)

    return tally


def derive_top_genres(
    watch_history: Iterable[WatchedMovie],
    preferences: UserPreferences,
    limit: int = TOP_GENRE_COUNT,
) -> list[int]:
    """Up to `limit` favorite genre ids; empty when there is no taste signal."""
    tally = build_genre_tally(watch_history, preferences)
    top = tally.top(limit)
    logger.debug(f"Top genres {top} from tally {tally.ranked()}")
    return top
