"""
BGG Cache - Application Entrypoint

Configures structlog, creates the async SQLAlchemy engine and exposes a
small command line around the cache.

Run via:
    python -m bggcache.main init-db
    python -m bggcache.main load 224517 68448 --filter players=4 --sort rating --desc
    python -m bggcache.main stats
    python -m bggcache.main tags --limit 15
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bggcache.cache.cacher import ThingCacher
from bggcache.cache.monitor import (
    freshness_distribution,
    log_cache_performance,
    most_popular_tags,
)
from bggcache.config import SortDirection, SortField, settings
from bggcache.errors import BggCacheError
from bggcache.models import Base, Thing
from bggcache.pipeline.bgg import BggClient


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Log lines go to stderr so that ``load`` output on stdout stays
    machine-readable.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Configure stdlib logging first (for third-party libraries)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


def create_db_engine(
    database_url: str | None = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    The URL defaults to settings.DATABASE_URL. PostgreSQL (asyncpg) is the
    production store; SQLite (aiosqlite) works for local use and tests.

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)
    url = database_url or settings.DATABASE_URL

    logger.info("database_engine_initializing", dialect=url.split(":", 1)[0])

    engine_kwargs: dict[str, Any] = {"echo": False}
    if not url.startswith("sqlite"):
        engine_kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
    engine = create_async_engine(url, **engine_kwargs)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


async def check_database(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Health check: raise if the database is unreachable."""
    logger = structlog.get_logger(__name__)
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def thing_to_dict(thing: Thing) -> dict[str, Any]:
    data = {
        column.key: getattr(thing, column.key)
        for column in Thing.__table__.columns
    }
    for key in ("last_refreshed_at", "inserted_at", "updated_at"):
        if data.get(key) is not None:
            data[key] = data[key].isoformat()
    data["tags"] = [tag.name for tag in thing.tags]
    return data


def filter_pair(value: str) -> tuple[str, str]:
    """argparse type for KEY=VALUE filter arguments."""
    key, sep, raw = value.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"filter must be KEY=VALUE, got {value!r}")
    return key.strip(), raw


def filters_from_pairs(pairs: list[tuple[str, str]]) -> dict[str, Any]:
    """Repeated tag_names accumulate into a list; other keys keep the last value."""
    filters: dict[str, Any] = {}
    for key, value in pairs:
        if key == "tag_names":
            filters.setdefault(key, []).append(value)
        else:
            filters[key] = value
    return filters


async def cmd_init_db(engine: AsyncEngine, args: argparse.Namespace) -> None:
    """Create all tables directly (development only; production runs alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    structlog.get_logger(__name__).info("database_tables_created")


async def cmd_load(
    session_factory: async_sessionmaker[AsyncSession],
    args: argparse.Namespace,
) -> None:
    filters = filters_from_pairs(args.filter)
    direction = SortDirection.DESC if args.desc else SortDirection.ASC

    async with BggClient() as client:
        cacher = ThingCacher(session_factory, client)
        result = await cacher.load_report(args.ids, filters, args.sort, direction)
        await cacher.drain()

    for thing in result.things:
        print(json.dumps(thing_to_dict(thing)))
    if result.failed_ids:
        structlog.get_logger(__name__).warning(
            "load_refresh_incomplete", failed_ids=result.failed_ids
        )


async def cmd_stats(
    session_factory: async_sessionmaker[AsyncSession],
    args: argparse.Namespace,
) -> None:
    async with session_factory() as session:
        stats = await log_cache_performance(session)
        distribution = await freshness_distribution(session)
    print(
        json.dumps(
            {"cache": stats._asdict(), "freshness": distribution._asdict()},
            indent=2,
        )
    )


async def cmd_tags(
    session_factory: async_sessionmaker[AsyncSession],
    args: argparse.Namespace,
) -> None:
    async with session_factory() as session:
        tags = await most_popular_tags(session, limit=args.limit)
    for tag in tags:
        print(json.dumps(tag._asdict()))


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bggcache",
        description="Local read-through cache of BoardGameGeek things.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m bggcache.main init-db
  python -m bggcache.main load 224517 68448 --filter players=4 --filter min_rating=7.5
  python -m bggcache.main load 224517 --filter "tag_names=Hand Management" --sort rating --desc
  python -m bggcache.main stats
""",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy async URL (default: DATABASE_URL from the environment).",
    )
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        help=f"Logging level (default: {settings.LOG_LEVEL}).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create all tables (development only).")

    load = subparsers.add_parser("load", help="Refresh and query things by BGG id.")
    load.add_argument("ids", nargs="+", help="BGG thing ids.")
    load.add_argument(
        "--filter",
        action="append",
        type=filter_pair,
        default=[],
        metavar="KEY=VALUE",
        help="Filter such as players=4 or tag_names=Dice Rolling (repeatable).",
    )
    load.add_argument(
        "--sort",
        default=SortField.NAME.value,
        choices=[field.value for field in SortField],
        help="Sort field (default: name).",
    )
    load.add_argument("--desc", action="store_true", help="Sort descending.")

    subparsers.add_parser("stats", help="Print cache freshness statistics.")

    tags = subparsers.add_parser("tags", help="Print the most used mechanics.")
    tags.add_argument("--limit", type=int, default=20, help="Number of tags (default: 20).")

    return parser


async def main(argv: list[str] | None = None) -> int:
    """
    Application entrypoint.

    Execution order:
    1. Configure logging (structlog JSON)
    2. Create async database engine and session factory
    3. Verify database connection (health check)
    4. Run the requested command
    """
    args = build_parser().parse_args(argv)
    configure_logging(log_level=args.log_level)
    logger = structlog.get_logger(__name__)

    engine, session_factory = create_db_engine(args.database_url)
    try:
        await check_database(session_factory)
        if args.command == "init-db":
            await cmd_init_db(engine, args)
        elif args.command == "load":
            await cmd_load(session_factory, args)
        elif args.command == "stats":
            await cmd_stats(session_factory, args)
        elif args.command == "tags":
            await cmd_tags(session_factory, args)
    except BggCacheError as e:
        logger.error(
            "bggcache_command_failed",
            command=args.command,
            error=str(e),
            error_type=type(e).__name__,
        )
        return 1
    finally:
        await engine.dispose()
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
