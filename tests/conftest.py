import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from flickpix_rec.tmdb import Genre, MoviePage, MovieSummary  # noqa: E402


GENRES = [
    Genre(28, "Action"),
    Genre(12, "Adventure"),
    Genre(35, "Comedy"),
    Genre(18, "Drama"),
    Genre(27, "Horror"),
    Genre(878, "Science Fiction"),
    Genre(53, "Thriller"),
]


def movie(movie_id, vote_average=7.0, genre_ids=(), popularity=10.0, title=None, **extra):
    return MovieSummary(
        id=movie_id,
        title=title or f"Movie {movie_id}",
        overview=f"Overview {movie_id}",
        genre_ids=tuple(genre_ids),
        release_date="2020-01-01",
        vote_average=vote_average,
        vote_count=extra.pop("vote_count", 500),
        popularity=popularity,
        poster_path=f"/poster{movie_id}.jpg",
        backdrop_path=f"/backdrop{movie_id}.jpg",
        **extra,
    )


class FakeCatalog:
    """In-process stand-in for TmdbClient that records calls."""

    def __init__(self, discover_pages=None, popular=None, genres=GENRES):
        # discover_pages: {(sort_by, page): [MovieSummary, ...]}
        self.discover_pages = discover_pages or {}
        self.popular = popular or []
        self.genres = genres
        self.calls = []

    def discover(self, query):
        self.calls.append(("discover", query))
        results = list(self.discover_pages.get((query.sort_by, query.page), []))
        return MoviePage(results=results, page=query.page, total_results=len(results), total_pages=1)

    def get_popular(self, page=1):
        self.calls.append(("popular", page))
        return MoviePage(results=list(self.popular), page=page, total_results=len(self.popular))

    def list_genres(self):
        self.calls.append(("genres",))
        return list(self.genres)


class AsyncFakeCatalog(FakeCatalog):
    async def discover(self, query):
        return FakeCatalog.discover(self, query)

    async def get_popular(self, page=1):
        return FakeCatalog.get_popular(self, page)

    async def list_genres(self):
        return FakeCatalog.list_genres(self)


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with temporary store paths to keep tests isolated.
    """
    monkeypatch.setenv("FLICKPIX_DB", str(tmp_path / "test.db"))
    monkeypatch.setenv("FLICKPIX_PROFILE", str(tmp_path / "profile.json"))
    monkeypatch.setenv("FLICKPIX_ENV_FILE", str(tmp_path / ".env"))
    monkeypatch.delenv("TMDB_API_KEY", raising=False)
    import flickpix_rec.config as config

    yield importlib.reload(config)

    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def sqlite_store(tmp_path):
    from flickpix_rec import database
    from flickpix_rec.storage import SqliteProfileStore

    db_path = tmp_path / "profiles.db"
    yield SqliteProfileStore(db_path)
    database.close_pool(db_path)
