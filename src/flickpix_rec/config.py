"""
Configuration constants for the FlickPix recommendation engine.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables or a .env file.
"""
import os
import logging
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def load_api_key(env_path: Path | None = None) -> str | None:
    """
    Resolve the TMDB API key from the environment, then from a .env file.

    The placeholder value shipped in example .env files is treated as unset.
    """
    key = os.environ.get("TMDB_API_KEY") or dotenv_values(env_path or ENV_PATH).get("TMDB_API_KEY")
    if key in (None, "", "YOUR_KEY_HERE"):
        return None
    return key


# Catalog (TMDB) Configuration
ENV_PATH = Path(os.environ.get("FLICKPIX_ENV_FILE", ".env"))
TMDB_BASE_URL = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p"
TMDB_API_KEY = load_api_key()
HTTP_TIMEOUT = _get_float_env("FLICKPIX_HTTP_TIMEOUT", 30.0, min_val=1.0)

POSTER_SIZES = ("w92", "w154", "w185", "w342", "w500", "w780", "original")
BACKDROP_SIZES = ("w300", "w780", "w1280", "original")
DEFAULT_POSTER_SIZE = "w500"
DEFAULT_BACKDROP_SIZE = "w780"

# Profile Store Configuration
STORE_BACKENDS = ("memory", "file", "sqlite")
STORE_BACKEND = os.environ.get("FLICKPIX_STORE", "file")
if STORE_BACKEND not in STORE_BACKENDS:
    logger.warning(f"Invalid FLICKPIX_STORE='{STORE_BACKEND}', using default 'file'")
    STORE_BACKEND = "file"
PROFILE_PATH = Path(os.environ.get("FLICKPIX_PROFILE", "data/user-profile.json"))
DB_PATH = Path(os.environ.get("FLICKPIX_DB", "data/flickpix.db"))
DEFAULT_USER_ID = os.environ.get("FLICKPIX_USER", "default")
DEFAULT_USER_NAME = "Movie Fan"

# Taste Profile
HIGHLY_RATED_MIN = 8        # Ratings at or above this count as "loved" (1-10 scale)
PREFERENCE_BOOST = 5        # Explicit favorite genre outweighs up to four loved films
TOP_GENRE_COUNT = 3
MIN_RATING = 1
MAX_RATING = 10

# Candidate Aggregation: (sort_by, page) per discover query, issued in order
CANDIDATE_QUERIES = (
    ("vote_average.desc", 1),  # objectively best
    ("popularity.desc", 2),    # currently popular, second page for variety
)

# Scoring
GENRE_OVERLAP_WEIGHT = 0.5
POPULARITY_WEIGHT = 0.1
MAX_REASON_GENRES = 2

# Recommendation defaults
DEFAULT_LIMIT = _get_int_env("FLICKPIX_DEFAULT_LIMIT", 10, min_val=1)
DEFAULT_MIN_RATING = _get_float_env("FLICKPIX_MIN_RATING", 6.5, min_val=0.0)
DEFAULT_MIN_VOTE_COUNT = _get_int_env("FLICKPIX_MIN_VOTE_COUNT", 100, min_val=0)

# Reason text
POPULAR_REASON = "Popular right now"
MATCH_REASON_TEMPLATE = "Matches your favorite genres: {}"
FALLBACK_REASON_TEMPLATE = "Highly rated {}"
FALLBACK_GENRE_WORD = "movie"
