"""
BGG Cache - Freshness Classifier

Decides which requested Thing ids need a refresh from BGG.

An id is stale when any of these holds:
- no row exists for it
- last_refreshed_at is NULL (never fetched)
- last_refreshed_at is older than the cache TTL (1 week by default)
- schema_version is NULL or below CURRENT_SCHEMA_VERSION, even when the row
  is otherwise fresh; bumping the version forces a one-time global refresh

Pure read, no side effects.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

import structlog
from sqlalchemy import ColumnElement, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bggcache.config import settings
from bggcache.models.thing import CURRENT_SCHEMA_VERSION, Thing

logger = structlog.get_logger(__name__)


def stale_clause(
    cutoff: datetime,
    current_version: int = CURRENT_SCHEMA_VERSION,
) -> ColumnElement[bool]:
    """SQL condition matching stored rows that need a refresh."""
    return or_(
        Thing.last_refreshed_at.is_(None),
        Thing.last_refreshed_at < cutoff,
        Thing.schema_version.is_(None),
        Thing.schema_version < current_version,
    )


async def classify(
    session: AsyncSession,
    ids: Iterable[str],
    *,
    now: datetime | None = None,
    ttl: timedelta | None = None,
    current_version: int = CURRENT_SCHEMA_VERSION,
) -> list[str]:
    """
    Return the subset of ``ids`` that is missing, expired or outdated.

    Args:
        session: Async database session (read only).
        ids: Requested Thing ids; duplicates are tolerated.
        now: Reference time (defaults to current UTC time).
        ttl: Maximum age of a fresh row (defaults to settings.CACHE_TTL_DAYS).
        current_version: Schema version rows must have reached.

    Returns:
        Stale ids, deduplicated, in first-seen input order.
    """
    requested = list(dict.fromkeys(ids))
    if not requested:
        return []

    now = now or datetime.now(timezone.utc)
    cutoff = now - (ttl if ttl is not None else settings.cache_ttl)

    rows = (
        await session.execute(
            select(Thing.id, stale_clause(cutoff, current_version).label("is_stale"))
            .where(Thing.id.in_(requested))
        )
    ).all()
    stored = {row.id: bool(row.is_stale) for row in rows}

    stale_ids = [thing_id for thing_id in requested if stored.get(thing_id, True)]

    logger.info(
        "freshness_classified",
        requested=len(requested),
        stored=len(stored),
        missing=len(requested) - len(stored),
        stale=len(stale_ids),
    )
    return stale_ids
