"""
TMDB (The Movie Database) API v3 client.

Wraps the catalog endpoints used by the recommendation engine and the CLI.
Both a blocking client and an async client are provided; they share the
record types and response handling below.

Docs: https://developer.themoviedb.org/reference/intro/getting-started
"""
import httpx
import logging
from dataclasses import dataclass, field
from .config import (
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TMDB_IMAGE_BASE,
    HTTP_TIMEOUT,
    POSTER_SIZES,
    BACKDROP_SIZES,
    DEFAULT_POSTER_SIZE,
    DEFAULT_BACKDROP_SIZE,
)

logger = logging.getLogger(__name__)

SORT_OPTIONS = frozenset({
    "popularity.asc", "popularity.desc",
    "vote_average.asc", "vote_average.desc",
    "vote_count.asc", "vote_count.desc",
    "primary_release_date.asc", "primary_release_date.desc",
    "revenue.asc", "revenue.desc",
    "original_title.asc", "original_title.desc",
})
TRENDING_WINDOWS = ("day", "week")


class TmdbConfigError(RuntimeError):
    """The client cannot be used because no API key was configured."""


class TmdbError(RuntimeError):
    """Non-success response or transport failure from TMDB."""

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        self.message = message
        prefix = f"TMDB {status_code}" if status_code is not None else "TMDB request failed"
        super().__init__(f"{prefix}: {message}")


@dataclass(frozen=True)
class Genre:
    id: int
    name: str

    @classmethod
    def from_api(cls, data: dict) -> "Genre":
        return cls(id=int(data["id"]), name=data.get("name") or "")


@dataclass(frozen=True)
class MovieSummary:
    """A movie as returned by list endpoints (discover, popular, search...)."""
    id: int
    title: str
    overview: str = ""
    genre_ids: tuple[int, ...] = ()
    release_date: str = ""
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0
    poster_path: str | None = None
    backdrop_path: str | None = None
    original_language: str | None = None
    adult: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "MovieSummary":
        return cls(
            id=int(data["id"]),
            title=data.get("title") or data.get("original_title") or "",
            overview=data.get("overview") or "",
            genre_ids=tuple(int(g) for g in data.get("genre_ids") or ()),
            release_date=data.get("release_date") or "",
            vote_average=float(data.get("vote_average") or 0.0),
            vote_count=int(data.get("vote_count") or 0),
            popularity=float(data.get("popularity") or 0.0),
            poster_path=data.get("poster_path"),
            backdrop_path=data.get("backdrop_path"),
            original_language=data.get("original_language"),
            adult=bool(data.get("adult", False)),
        )


@dataclass
class MoviePage:
    results: list[MovieSummary]
    page: int = 1
    total_results: int = 0
    total_pages: int = 0

    @classmethod
    def from_api(cls, data: dict) -> "MoviePage":
        results = [MovieSummary.from_api(item) for item in data.get("results") or []]
        return cls(
            results=results,
            page=int(data.get("page") or 1),
            total_results=int(data.get("total_results") or len(results)),
            total_pages=int(data.get("total_pages") or 0),
        )


@dataclass
class MovieDetails:
    id: int
    title: str
    overview: str
    genres: list[Genre]
    release_date: str
    vote_average: float
    vote_count: int
    popularity: float
    poster_path: str | None
    backdrop_path: str | None
    runtime: int | None = None
    tagline: str = ""
    budget: int = 0
    revenue: int = 0
    status: str = ""
    production_companies: list[str] = field(default_factory=list)

    @property
    def genre_ids(self) -> list[int]:
        return [g.id for g in self.genres]

    @classmethod
    def from_api(cls, data: dict) -> "MovieDetails":
        return cls(
            id=int(data["id"]),
            title=data.get("title") or "",
            overview=data.get("overview") or "",
            genres=[Genre.from_api(g) for g in data.get("genres") or []],
            release_date=data.get("release_date") or "",
            vote_average=float(data.get("vote_average") or 0.0),
            vote_count=int(data.get("vote_count") or 0),
            popularity=float(data.get("popularity") or 0.0),
            poster_path=data.get("poster_path"),
            backdrop_path=data.get("backdrop_path"),
            runtime=data.get("runtime"),
            tagline=data.get("tagline") or "",
            budget=int(data.get("budget") or 0),
            revenue=int(data.get("revenue") or 0),
            status=data.get("status") or "",
            production_companies=[c.get("name", "") for c in data.get("production_companies") or []],
        )


@dataclass
class CastMember:
    id: int
    name: str
    character: str
    order: int
    profile_path: str | None = None


@dataclass
class CrewMember:
    id: int
    name: str
    job: str
    department: str
    profile_path: str | None = None


@dataclass
class Credits:
    cast: list[CastMember]
    crew: list[CrewMember]

    @classmethod
    def from_api(cls, data: dict) -> "Credits":
        cast = [
            CastMember(
                id=int(c["id"]),
                name=c.get("name") or "",
                character=c.get("character") or "",
                order=int(c.get("order") or 0),
                profile_path=c.get("profile_path"),
            )
            for c in data.get("cast") or []
        ]
        crew = [
            CrewMember(
                id=int(c["id"]),
                name=c.get("name") or "",
                job=c.get("job") or "",
                department=c.get("department") or "",
                profile_path=c.get("profile_path"),
            )
            for c in data.get("crew") or []
        ]
        return cls(cast=cast, crew=crew)

    def directors(self) -> list[str]:
        return [c.name for c in self.crew if c.job == "Director"]


@dataclass(frozen=True)
class DiscoverQuery:
    """Filters for /discover/movie. Genres are AND-ed by TMDB when comma-joined."""
    genre_ids: tuple[int, ...] = ()
    sort_by: str = "popularity.desc"
    min_vote_average: float | None = None
    min_vote_count: int | None = None
    page: int = 1
    primary_release_year: int | None = None
    max_vote_average: float | None = None
    min_runtime: int | None = None
    max_runtime: int | None = None

    def to_params(self) -> dict[str, str | int | float]:
        if self.sort_by not in SORT_OPTIONS:
            raise ValueError(f"Unsupported sort order: {self.sort_by}")
        if self.page < 1:
            raise ValueError(f"Page must be >= 1, got {self.page}")

        params: dict[str, str | int | float] = {"sort_by": self.sort_by, "page": self.page}
        optional = {
            "with_genres": ",".join(str(g) for g in self.genre_ids) if self.genre_ids else None,
            "vote_average.gte": self.min_vote_average,
            "vote_average.lte": self.max_vote_average,
            "vote_count.gte": self.min_vote_count,
            "primary_release_year": self.primary_release_year,
            "with_runtime.gte": self.min_runtime,
            "with_runtime.lte": self.max_runtime,
        }
        for key, value in optional.items():
            if value is not None:
                params[key] = value
        return params


def _image_url(path: str | None, size: str, allowed: tuple[str, ...]) -> str | None:
    if size not in allowed:
        raise ValueError(f"Unsupported image size '{size}' (expected one of {', '.join(allowed)})")
    return f"{TMDB_IMAGE_BASE}/{size}{path}" if path else None


def poster_url(path: str | None, size: str = DEFAULT_POSTER_SIZE) -> str | None:
    return _image_url(path, size, POSTER_SIZES)


def backdrop_url(path: str | None, size: str = DEFAULT_BACKDROP_SIZE) -> str | None:
    return _image_url(path, size, BACKDROP_SIZES)


def _resolve_api_key(api_key: str | None) -> str:
    key = api_key or TMDB_API_KEY
    if not key:
        raise TmdbConfigError(
            "TMDB API key not set. Export TMDB_API_KEY or add it to .env."
        )
    return key


def _check_response(resp: httpx.Response, path: str) -> dict:
    """Raise TmdbError on non-2xx, else return the decoded JSON body."""
    if resp.is_success:
        return resp.json()
    body = resp.text
    logger.error(f"TMDB returned {resp.status_code} for {path}: {body[:200]}")
    raise TmdbError(resp.status_code, body)


def _check_window(time_window: str) -> str:
    if time_window not in TRENDING_WINDOWS:
        raise ValueError(f"time_window must be 'day' or 'week', got '{time_window}'")
    return time_window


class TmdbClient:
    """Blocking TMDB client. Use as a context manager or call close()."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = TMDB_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self._api_key = _resolve_api_key(api_key)
        self.client = httpx.Client(
            base_url=base_url,
            headers={"Accept": "application/json", "User-Agent": "flickpix-rec/1.0"},
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def close(self):
        self.client.close()

    def _get(self, path: str, params: dict | None = None) -> dict:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        logger.debug(f"GET {path} {query}")
        query["api_key"] = self._api_key
        try:
            resp = self.client.get(path, params=query)
        except httpx.HTTPError as e:
            logger.error(f"Request error on {path}: {type(e).__name__}: {e}")
            raise TmdbError(None, str(e)) from e
        return _check_response(resp, path)

    def list_genres(self) -> list[Genre]:
        """Full list of movie genres (id -> name)."""
        data = self._get("/genre/movie/list")
        return [Genre.from_api(g) for g in data.get("genres") or []]

    def discover(self, query: DiscoverQuery) -> MoviePage:
        return MoviePage.from_api(self._get("/discover/movie", query.to_params()))

    def get_popular(self, page: int = 1) -> MoviePage:
        return MoviePage.from_api(self._get("/movie/popular", {"page": page}))

    def get_top_rated(self, page: int = 1) -> MoviePage:
        return MoviePage.from_api(self._get("/movie/top_rated", {"page": page}))

    def get_trending(self, time_window: str = "week") -> MoviePage:
        return MoviePage.from_api(self._get(f"/trending/movie/{_check_window(time_window)}"))

    def search_movies(self, query: str, page: int = 1) -> MoviePage:
        return MoviePage.from_api(self._get("/search/movie", {"query": query, "page": page}))

    def get_movie_details(self, movie_id: int) -> MovieDetails:
        return MovieDetails.from_api(self._get(f"/movie/{int(movie_id)}"))

    def get_movie_credits(self, movie_id: int) -> Credits:
        return Credits.from_api(self._get(f"/movie/{int(movie_id)}/credits"))

    def get_similar(self, movie_id: int, page: int = 1) -> MoviePage:
        return MoviePage.from_api(self._get(f"/movie/{int(movie_id)}/similar", {"page": page}))

    def get_movie_recommendations(self, movie_id: int, page: int = 1) -> MoviePage:
        """TMDB's own per-movie recommendations (not this engine's)."""
        return MoviePage.from_api(self._get(f"/movie/{int(movie_id)}/recommendations", {"page": page}))


class AsyncTmdbClient:
    """Async TMDB client for issuing independent queries concurrently."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = TMDB_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = _resolve_api_key(api_key)
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Accept": "application/json", "User-Agent": "flickpix-rec/1.0"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self):
        await self.client.aclose()

    async def _get(self, path: str, params: dict | None = None) -> dict:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        logger.debug(f"GET {path} {query}")
        query["api_key"] = self._api_key
        try:
            resp = await self.client.get(path, params=query)
        except httpx.HTTPError as e:
            logger.error(f"Request error on {path}: {type(e).__name__}: {e}")
            raise TmdbError(None, str(e)) from e
        return _check_response(resp, path)

    async def list_genres(self) -> list[Genre]:
        data = await self._get("/genre/movie/list")
        return [Genre.from_api(g) for g in data.get("genres") or []]

    async def discover(self, query: DiscoverQuery) -> MoviePage:
        return MoviePage.from_api(await self._get("/discover/movie", query.to_params()))

    async def get_popular(self, page: int = 1) -> MoviePage:
        return MoviePage.from_api(await self._get("/movie/popular", {"page": page}))

    async def get_top_rated(self, page: int = 1) -> MoviePage:
        return MoviePage.from_api(await self._get("/movie/top_rated", {"page": page}))

    async def get_trending(self, time_window: str = "week") -> MoviePage:
        return MoviePage.from_api(await self._get(f"/trending/movie/{_check_window(time_window)}"))

    async def search_movies(self, query: str, page: int = 1) -> MoviePage:
        return MoviePage.from_api(await self._get("/search/movie", {"query": query, "page": page}))

    async def get_movie_details(self, movie_id: int) -> MovieDetails:
        return MovieDetails.from_api(await self._get(f"/movie/{int(movie_id)}"))

    async def get_movie_credits(self, movie_id: int) -> Credits:
        return Credits.from_api(await self._get(f"/movie/{int(movie_id)}/credits"))

    async def get_similar(self, movie_id: int, page: int = 1) -> MoviePage:
        return MoviePage.from_api(await self._get(f"/movie/{int(movie_id)}/similar", {"page": page}))

    async def get_movie_recommendations(self, movie_id: int, page: int = 1) -> MoviePage:
        return MoviePage.from_api(await self._get(f"/movie/{int(movie_id)}/recommendations", {"page": page}))
