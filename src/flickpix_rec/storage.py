"""
User profile storage.

A profile is the unit of persistence: every write reads the whole profile,
changes it and writes it back. There is no optimistic-concurrency check, so
two concurrent writers for the same user can lose an update (last write wins).

Backends are selected by configuration (see create_store):
    memory  - process-local dict, for tests and scripts
    file    - one JSON document holding users and their profiles
    sqlite  - key-value table of JSON profiles in SQLite
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from .database import get_db, init_db, load_json, parse_timestamp_naive
from .config import (
    STORE_BACKEND,
    STORE_BACKENDS,
    PROFILE_PATH,
    DB_PATH,
    DEFAULT_USER_ID,
    DEFAULT_USER_NAME,
    MIN_RATING,
    MAX_RATING,
)

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Persisted profile data could not be read."""


class UnknownUserError(KeyError):
    """Raised when selecting a user id the store does not know."""


def validate_rating(rating: int) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValueError(f"Rating must be an integer, got {rating!r}")
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {rating}")
    return rating


def _parse_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError:
        return parse_timestamp_naive(value).date()


@dataclass
class WatchedMovie:
    movie_id: int
    title: str
    rating: int
    watched_at: date = field(default_factory=date.today)
    genres: list[int] = field(default_factory=list)

    def __post_init__(self):
        validate_rating(self.rating)
        self.watched_at = _parse_date(self.watched_at)

    def to_dict(self) -> dict:
        return {
            "movieId": self.movie_id,
            "title": self.title,
            "rating": self.rating,
            "watchedAt": self.watched_at.isoformat(),
            "genres": list(self.genres),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WatchedMovie":
        return cls(
            movie_id=int(data["movieId"]),
            title=data.get("title", ""),
            rating=int(data["rating"]),
            watched_at=data.get("watchedAt") or date.today(),
            genres=[int(g) for g in data.get("genres") or []],
        )


@dataclass
class UserPreferences:
    favorite_genres: list[int] = field(default_factory=list)
    notes: str | None = None

    def to_dict(self) -> dict:
        data = {"favoriteGenres": list(self.favorite_genres)}
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "UserPreferences":
        data = data or {}
        return cls(
            favorite_genres=[int(g) for g in data.get("favoriteGenres") or []],
            notes=data.get("notes"),
        )


@dataclass
class UserProfile:
    preferences: UserPreferences = field(default_factory=UserPreferences)
    watch_history: list[WatchedMovie] = field(default_factory=list)

    def watched_ids(self) -> set[int]:
        return {m.movie_id for m in self.watch_history}

    def ratings(self) -> dict[int, int]:
        """movie id -> rating; a later entry for the same movie wins."""
        return {m.movie_id: m.rating for m in self.watch_history}

    def to_dict(self) -> dict:
        return {
            "preferences": self.preferences.to_dict(),
            "watchHistory": [m.to_dict() for m in self.watch_history],
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "UserProfile":
        data = data or {}
        return cls(
            preferences=UserPreferences.from_dict(data.get("preferences")),
            watch_history=[WatchedMovie.from_dict(m) for m in data.get("watchHistory") or []],
        )


@dataclass(frozen=True)
class User:
    id: str
    name: str


class ProfileStore(ABC):
    """
    Profiles keyed by user id, plus a registry of known users.

    Subclasses implement raw load/save; the profile operations are shared.
    """

    @abstractmethod
    def _load(self, user_id: str) -> UserProfile | None:
        """Return the stored profile, or None if the user has none."""

    @abstractmethod
    def save_profile(self, user_id: str, profile: UserProfile) -> None:
        """Persist the whole profile for user_id."""

    @abstractmethod
    def list_users(self) -> list[User]:
        """Known users in registration order."""

    @abstractmethod
    def add_user(self, user_id: str, name: str) -> User:
        """Register a user (idempotent; an existing user keeps its name)."""

    def has_user(self, user_id: str) -> bool:
        return any(u.id == user_id for u in self.list_users())

    def get_profile(self, user_id: str) -> UserProfile:
        """Load a profile, creating an empty one for unknown ids."""
        profile = self._load(user_id)
        if profile is None:
            logger.info(f"Creating default profile for user '{user_id}'")
            self.add_user(user_id, user_id)
            profile = UserProfile()
            self.save_profile(user_id, profile)
        return profile

    def get_preferences(self, user_id: str) -> UserPreferences:
        return self.get_profile(user_id).preferences

    def get_watch_history(self, user_id: str) -> list[WatchedMovie]:
        return self.get_profile(user_id).watch_history

    def get_watched_ids(self, user_id: str) -> set[int]:
        return self.get_profile(user_id).watched_ids()

    def get_ratings(self, user_id: str) -> dict[int, int]:
        return self.get_profile(user_id).ratings()

    def append_watched(self, user_id: str, movie: WatchedMovie) -> None:
        profile = self.get_profile(user_id)
        profile.watch_history.append(movie)
        self.save_profile(user_id, profile)
        logger.debug(f"User '{user_id}' watched {movie.movie_id} ({movie.title}), rated {movie.rating}")

    def update_rating(self, user_id: str, movie_id: int, rating: int) -> None:
        """Change the rating of a watched movie; no-op if it was never watched."""
        validate_rating(rating)
        profile = self.get_profile(user_id)
        for entry in profile.watch_history:
            if entry.movie_id == movie_id:
                entry.rating = rating
                self.save_profile(user_id, profile)
                return
        logger.debug(f"update_rating: movie {movie_id} not in history of '{user_id}', ignoring")

    def set_favorite_genres(self, user_id: str, genre_ids: list[int], notes: str | None = None) -> None:
        profile = self.get_profile(user_id)
        profile.preferences = UserPreferences(
            favorite_genres=list(dict.fromkeys(genre_ids)),
            notes=notes if notes is not None else profile.preferences.notes,
        )
        self.save_profile(user_id, profile)


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles: dict[str, UserProfile] | None = None, users: list[User] | None = None):
        self._lock = threading.Lock()
        self._users: dict[str, User] = {}
        self._profiles: dict[str, dict] = {}
        self.add_user(DEFAULT_USER_ID, DEFAULT_USER_NAME)
        for user in users or []:
            self.add_user(user.id, user.name)
        for user_id, profile in (profiles or {}).items():
            self.add_user(user_id, user_id)
            self.save_profile(user_id, profile)

    # Profiles are held serialized so callers never share mutable state
    def _load(self, user_id):
        with self._lock:
            data = self._profiles.get(user_id)
        return UserProfile.from_dict(data) if data is not None else None

    def save_profile(self, user_id, profile):
        with self._lock:
            self._profiles[user_id] = profile.to_dict()

    def list_users(self):
        with self._lock:
            return list(self._users.values())

    def add_user(self, user_id, name):
        with self._lock:
            return self._users.setdefault(user_id, User(user_id, name))


class JsonFileProfileStore(ProfileStore):
    """
    All users and profiles in one JSON document:

        {"users": [{"id": ..., "name": ...}], "profiles": {"<id>": {...}}}

    A legacy single-profile document ({"preferences": ..., "watchHistory": ...})
    is read as the default user's profile and rewritten in the new layout on
    the next save.
    """

    def __init__(self, path: Path | str = PROFILE_PATH):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {"users": [{"id": DEFAULT_USER_ID, "name": DEFAULT_USER_NAME}], "profiles": {}}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read profile store {self.path}: {e}")
            raise StoreError(f"Cannot read profile store {self.path}: {e}") from e

        if "profiles" not in data:
            legacy = {k: data[k] for k in ("preferences", "watchHistory") if k in data}
            data = {
                "users": [{"id": DEFAULT_USER_ID, "name": DEFAULT_USER_NAME}],
                "profiles": {DEFAULT_USER_ID: legacy} if legacy else {},
            }
        data.setdefault("users", [])
        return data

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(exist_ok=True, parents=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    def _load(self, user_id):
        with self._lock:
            raw = self._read()["profiles"].get(user_id)
        return UserProfile.from_dict(raw) if raw is not None else None

    def save_profile(self, user_id, profile):
        with self._lock:
            data = self._read()
            data["profiles"][user_id] = profile.to_dict()
            self._write(data)

    def list_users(self):
        with self._lock:
            return [User(str(u["id"]), u.get("name") or str(u["id"])) for u in self._read()["users"]]

    def add_user(self, user_id, name):
        with self._lock:
            data = self._read()
            for u in data["users"]:
                if u["id"] == user_id:
                    return User(user_id, u.get("name") or user_id)
            data["users"].append({"id": user_id, "name": name})
            self._write(data)
            return User(user_id, name)


class SqliteProfileStore(ProfileStore):
    """Key-value store: one JSON profile blob per user id."""

    def __init__(self, db_path: Path | str = DB_PATH):
        self.db_path = Path(db_path)
        init_db(self.db_path)
        self.add_user(DEFAULT_USER_ID, DEFAULT_USER_NAME)

    def _load(self, user_id):
        with get_db(read_only=True, db_path=self.db_path) as conn:
            row = conn.execute(
                "SELECT profile_data FROM user_profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        data = load_json(row["profile_data"])
        if data is None:
            raise StoreError(f"Corrupt profile data for user '{user_id}'")
        return UserProfile.from_dict(data)

    def save_profile(self, user_id, profile):
        with get_db(db_path=self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO user_profiles (user_id, profile_data, updated_at) VALUES (?, ?, ?)",
                (user_id, json.dumps(profile.to_dict()), datetime.now().isoformat()),
            )

    def list_users(self):
        with get_db(read_only=True, db_path=self.db_path) as conn:
            rows = conn.execute("SELECT id, name FROM users ORDER BY rowid").fetchall()
        return [User(row["id"], row["name"]) for row in rows]

    def add_user(self, user_id, name):
        with get_db(db_path=self.db_path) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (id, name, created_at) VALUES (?, ?, ?)",
                (user_id, name, datetime.now().isoformat()),
            )
            row = conn.execute("SELECT name FROM users WHERE id = ?", (user_id,)).fetchone()
        return User(user_id, row["name"])


def create_store(backend: str = STORE_BACKEND, path: Path | str | None = None) -> ProfileStore:
    """Build the configured store backend; path overrides the backend's default location."""
    if backend == "memory":
        return InMemoryProfileStore()
    if backend == "file":
        return JsonFileProfileStore(path or PROFILE_PATH)
    if backend == "sqlite":
        return SqliteProfileStore(path or DB_PATH)
    raise ValueError(f"Unknown store backend '{backend}' (expected one of {', '.join(STORE_BACKENDS)})")


class Session:
    """
    Per-caller context holding the active user.

    Each session reads and writes only its active user's profile, so several
    sessions for different users can share one store.
    """

    def __init__(self, store: ProfileStore, user_id: str = DEFAULT_USER_ID):
        self.store = store
        self.user_id = user_id

    def set_active_user(self, user_id: str) -> None:
        if not self.store.has_user(user_id):
            raise UnknownUserError(user_id)
        self.user_id = user_id
        logger.debug(f"Active user is now '{user_id}'")

    def profile(self) -> UserProfile:
        return self.store.get_profile(self.user_id)

    def append_watched(self, movie: WatchedMovie) -> None:
        self.store.append_watched(self.user_id, movie)

    def update_rating(self, movie_id: int, rating: int) -> None:
        self.store.update_rating(self.user_id, movie_id, rating)

    def set_favorite_genres(self, genre_ids: list[int], notes: str | None = None) -> None:
        self.store.set_favorite_genres(self.user_id, genre_ids, notes)
