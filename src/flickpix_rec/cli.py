import argparse
import json
import logging
import sys
from datetime import date

from .config import (
    STORE_BACKEND,
    STORE_BACKENDS,
    DEFAULT_USER_ID,
    DEFAULT_LIMIT,
    DEFAULT_MIN_RATING,
    DEFAULT_MIN_VOTE_COUNT,
    POSTER_SIZES,
    DEFAULT_POSTER_SIZE,
)
from .tmdb import TmdbClient, TmdbConfigError, TmdbError
from .storage import (
    Session,
    StoreError,
    UnknownUserError,
    WatchedMovie,
    create_store,
)
from .recommender import (
    Recommendation,
    RecommendationEngine,
    RecommendationOptions,
    genre_name_map,
    get_poster_url,
)
from .profile import build_genre_tally

logger = logging.getLogger(__name__)


def _open_session(args: argparse.Namespace) -> Session:
    store = create_store(args.store, args.store_path)
    session = Session(store)
    if args.user != session.user_id:
        session.set_active_user(args.user)
    return session


def _genre_label(genre_id: int, names: dict[int, str]) -> str:
    return names.get(genre_id, f"#{genre_id}")


def _output_recommendations(recs: list[Recommendation], args: argparse.Namespace, user_id: str) -> None:
    """Format and log recommendations in the requested format."""
    output_format = getattr(args, "format", "text")

    if output_format == "json":
        output = []
        for r in recs:
            rec_data = r.to_dict()
            rec_data["posterUrl"] = get_poster_url(r.poster_path)
            output.append(rec_data)
        logger.info(json.dumps(output, indent=2))

    elif output_format == "markdown":
        logger.info(f"\n# Top {len(recs)} recommendations for {user_id}\n")
        for i, r in enumerate(recs, 1):
            year = r.release_date[:4] or "?"
            logger.info(f"## {i}. {r.title} ({year})")
            logger.info(f"**Rating**: {r.vote_average:.1f} ({r.vote_count} votes)  ")
            logger.info(f"**Why**: {r.reason}\n")

    else:
        logger.info(f"\nTop {len(recs)} recommendations for {user_id}:")
        if not recs:
            logger.info("  No recommendations right now. Rate a few movies or set favorite genres.")
        for i, r in enumerate(recs, 1):
            year = r.release_date[:4] or "?"
            score = f" - Score: {r.score:.2f}" if r.score is not None else ""
            logger.info(f"{i}. {r.title} ({year}) - {r.vote_average:.1f}/10{score}")
            logger.info(f"   Why: {r.reason}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations."""
    session = _open_session(args)
    options = RecommendationOptions(
        limit=args.limit,
        min_rating=args.min_rating,
        min_vote_count=args.min_vote_count,
    )
    with TmdbClient() as client:
        recs = RecommendationEngine(client).get_recommendations(session, options)
    _output_recommendations(recs, args, session.user_id)


def cmd_profile(args: argparse.Namespace) -> None:
    """Show the active user's watch history and taste profile."""
    session = _open_session(args)
    profile = session.profile()
    with TmdbClient() as client:
        names = genre_name_map(client.list_genres())

    prefs = profile.preferences
    logger.info(f"\nProfile for {session.user_id}:")
    logger.info(f"  Watch history: {len(profile.watch_history)} movies")
    favorites = ", ".join(_genre_label(g, names) for g in prefs.favorite_genres) or "none"
    logger.info(f"  Favorite genres: {favorites}")
    if prefs.notes:
        logger.info(f"  Notes: {prefs.notes}")

    tally = build_genre_tally(profile.watch_history, prefs)
    if tally:
        logger.info("\n  Genre affinity:")
        for genre_id, score in tally.ranked()[:args.top]:
            logger.info(f"    {_genre_label(genre_id, names):<20} {score:g}")

    recent = sorted(profile.watch_history, key=lambda m: m.watched_at, reverse=True)[:args.top]
    if recent:
        logger.info("\n  Recently watched:")
        for movie in recent:
            genres = ", ".join(_genre_label(g, names) for g in movie.genres)
            logger.info(f"    {movie.title} - rated {movie.rating}/10 ({genres}) on {movie.watched_at}")


def cmd_watch(args: argparse.Namespace) -> None:
    """Mark a movie as watched."""
    session = _open_session(args)
    title, genres = args.title, args.genres
    if title is None or genres is None:
        with TmdbClient() as client:
            details = client.get_movie_details(args.movie_id)
        title = title if title is not None else details.title
        genres = genres if genres is not None else details.genre_ids

    watched_at = date.fromisoformat(args.date) if args.date else date.today()
    session.append_watched(WatchedMovie(args.movie_id, title, args.rating, watched_at, list(genres)))
    logger.info(f"Added {title} ({args.movie_id}) rated {args.rating}/10")


def cmd_rate(args: argparse.Namespace) -> None:
    """Change the rating of a watched movie."""
    session = _open_session(args)
    if args.movie_id not in session.profile().watched_ids():
        logger.warning(f"Movie {args.movie_id} is not in the watch history; nothing to update")
        return
    session.update_rating(args.movie_id, args.rating)
    logger.info(f"Updated rating of {args.movie_id} to {args.rating}/10")


def cmd_prefer(args: argparse.Namespace) -> None:
    """Set explicit favorite genres."""
    session = _open_session(args)
    session.set_favorite_genres(args.genre_ids, notes=args.notes)
    logger.info(f"Favorite genres for {session.user_id}: {', '.join(str(g) for g in args.genre_ids)}")


def cmd_users(args: argparse.Namespace) -> None:
    """List known users."""
    store = create_store(args.store, args.store_path)
    logger.info("\nUsers:")
    for user in store.list_users():
        marker = "*" if user.id == args.user else " "
        logger.info(f" {marker} {user.id:<20} {user.name}")


def cmd_add_user(args: argparse.Namespace) -> None:
    """Register a new user."""
    store = create_store(args.store, args.store_path)
    user = store.add_user(args.user_id, args.name or args.user_id)
    logger.info(f"User {user.id} ({user.name}) registered")


def cmd_genres(args: argparse.Namespace) -> None:
    """List catalog genres."""
    with TmdbClient() as client:
        genres = client.list_genres()
    for genre in genres:
        logger.info(f"  {genre.id:>6}  {genre.name}")


def cmd_search(args: argparse.Namespace) -> None:
    """Search the catalog by title."""
    with TmdbClient() as client:
        page = client.search_movies(args.query, page=args.page)
    logger.info(f"\n{page.total_results} results for '{args.query}' (page {page.page}/{page.total_pages or 1}):")
    for movie in page.results[:args.limit]:
        year = movie.release_date[:4] or "?"
        logger.info(f"  {movie.id:>8}  {movie.title} ({year}) - {movie.vote_average:.1f}/10")


def cmd_poster(args: argparse.Namespace) -> None:
    """Print the poster URL of a movie."""
    with TmdbClient() as client:
        details = client.get_movie_details(args.movie_id)
    url = get_poster_url(details.poster_path, args.size)
    logger.info(url or f"No poster for {details.title}")


def main():
    parser = argparse.ArgumentParser(description="FlickPix movie recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--user", default=DEFAULT_USER_ID, help="Active user id")
    parser.add_argument("--store", choices=STORE_BACKENDS, default=STORE_BACKEND, help="Profile store backend")
    parser.add_argument("--store-path", help="Profile file or database path (overrides config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Recommend command
    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Number of recommendations")
    rec_parser.add_argument("--min-rating", type=float, default=DEFAULT_MIN_RATING,
                            help="Minimum TMDB vote average for candidates")
    rec_parser.add_argument("--min-vote-count", type=int, default=DEFAULT_MIN_VOTE_COUNT,
                            help="Minimum TMDB vote count for candidates")
    rec_parser.add_argument("--format", choices=["text", "json", "markdown"], default="text",
                            help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    # Profile command
    profile_parser = subparsers.add_parser("profile", help="Show the active user's taste profile")
    profile_parser.add_argument("--top", type=int, default=5, help="Rows to show per section")
    profile_parser.set_defaults(func=cmd_profile)

    # Watch history commands
    watch_parser = subparsers.add_parser("watch", help="Mark a movie as watched")
    watch_parser.add_argument("movie_id", type=int, help="TMDB movie id")
    watch_parser.add_argument("rating", type=int, help="Your rating (1-10)")
    watch_parser.add_argument("--title", help="Movie title (looked up when omitted)")
    watch_parser.add_argument("--genres", type=int, nargs="*", help="Genre ids (looked up when omitted)")
    watch_parser.add_argument("--date", help="Watch date, YYYY-MM-DD (default: today)")
    watch_parser.set_defaults(func=cmd_watch)

    rate_parser = subparsers.add_parser("rate", help="Update the rating of a watched movie")
    rate_parser.add_argument("movie_id", type=int, help="TMDB movie id")
    rate_parser.add_argument("rating", type=int, help="New rating (1-10)")
    rate_parser.set_defaults(func=cmd_rate)

    prefer_parser = subparsers.add_parser("prefer", help="Set favorite genres")
    prefer_parser.add_argument("genre_ids", type=int, nargs="+", help="Genre ids in order of preference")
    prefer_parser.add_argument("--notes", help="Free-form notes")
    prefer_parser.set_defaults(func=cmd_prefer)

    # User commands
    users_parser = subparsers.add_parser("users", help="List users")
    users_parser.set_defaults(func=cmd_users)

    add_user_parser = subparsers.add_parser("add-user", help="Register a user")
    add_user_parser.add_argument("user_id", help="New user id")
    add_user_parser.add_argument("--name", help="Display name")
    add_user_parser.set_defaults(func=cmd_add_user)

    # Catalog commands
    genres_parser = subparsers.add_parser("genres", help="List catalog genres")
    genres_parser.set_defaults(func=cmd_genres)

    search_parser = subparsers.add_parser("search", help="Search movies by title")
    search_parser.add_argument("query", help="Title to search for")
    search_parser.add_argument("--page", type=int, default=1, help="Result page")
    search_parser.add_argument("--limit", type=int, default=20, help="Results to show")
    search_parser.set_defaults(func=cmd_search)

    poster_parser = subparsers.add_parser("poster", help="Show a movie's poster URL")
    poster_parser.add_argument("movie_id", type=int, help="TMDB movie id")
    poster_parser.add_argument("--size", choices=POSTER_SIZES, default=DEFAULT_POSTER_SIZE, help="Image size")
    poster_parser.set_defaults(func=cmd_poster)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except TmdbConfigError as e:
        logger.error(str(e))
        sys.exit(1)
    except TmdbError as e:
        logger.error(f"Catalog request failed: {e}. Try again later.")
        sys.exit(1)
    except UnknownUserError as e:
        logger.error(f"Unknown user {e}. Run: flickpix users")
        sys.exit(1)
    except (StoreError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
