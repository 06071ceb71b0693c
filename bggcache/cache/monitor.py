"""
BGG Cache - Cache Monitor

Read-only statistics over the local store: how much is cached, how fresh
it is, what was written in a time window, and which mechanics are most
common. Used by the ``stats`` and ``tags`` CLI commands.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple

import structlog
from sqlalchemy import ColumnElement, and_, extract, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bggcache.cache.freshness import stale_clause
from bggcache.config import settings
from bggcache.models.tag import Tag
from bggcache.models.thing import CURRENT_SCHEMA_VERSION, Thing
from bggcache.models.thing_tag import ThingTag

logger = structlog.get_logger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60
_UNIX_EPOCH_JULIAN_DAY = 2440587.5


class CacheStats(NamedTuple):
    total: int
    fresh: int
    stale: int
    never_refreshed: int
    outdated_schema: int
    hit_rate: float  # percent of rows that are fresh
    average_age_days: float


class FreshnessDistribution(NamedTuple):
    very_fresh: int  # < 1 day
    fresh: int  # 1-3 days
    aging: int  # 3-7 days
    stale: int  # > 7 days
    never_refreshed: int


class PeriodStats(NamedTuple):
    inserted: int
    refreshed: int


class TagCount(NamedTuple):
    name: str
    slug: str
    thing_count: int


def _utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _epoch_seconds(session: AsyncSession, column: Any) -> ColumnElement[Any]:
    """Seconds since the Unix epoch of a timestamp column, per dialect."""
    if session.bind.dialect.name == "sqlite":
        return (func.julianday(column) - _UNIX_EPOCH_JULIAN_DAY) * _SECONDS_PER_DAY
    return extract("epoch", column)


async def cache_stats(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    ttl: timedelta | None = None,
) -> CacheStats:
    """Counts of fresh and stale rows plus the hit rate and average age."""
    now = _utc(now)
    cutoff = now - (ttl if ttl is not None else settings.cache_ttl)
    stale = stale_clause(cutoff, CURRENT_SCHEMA_VERSION)

    row = (
        await session.execute(
            select(
                func.count(Thing.id).label("total"),
                func.count(Thing.id).filter(stale).label("stale"),
                func.count(Thing.id)
                .filter(Thing.last_refreshed_at.is_(None))
                .label("never_refreshed"),
                func.count(Thing.id)
                .filter(
                    (Thing.schema_version.is_(None))
                    | (Thing.schema_version < CURRENT_SCHEMA_VERSION)
                )
                .label("outdated_schema"),
                func.avg(_epoch_seconds(session, Thing.last_refreshed_at)).label(
                    "avg_epoch"
                ),
            )
        )
    ).one()

    total = row.total or 0
    stale_count = row.stale or 0
    fresh = total - stale_count
    hit_rate = round(fresh / total * 100, 2) if total else 0.0
    average_age_days = 0.0
    if row.avg_epoch is not None:
        average_age_days = round(
            (now.timestamp() - float(row.avg_epoch)) / _SECONDS_PER_DAY, 2
        )

    return CacheStats(
        total=total,
        fresh=fresh,
        stale=stale_count,
        never_refreshed=row.never_refreshed or 0,
        outdated_schema=row.outdated_schema or 0,
        hit_rate=hit_rate,
        average_age_days=average_age_days,
    )


async def log_cache_performance(session: AsyncSession) -> CacheStats:
    stats = await cache_stats(session)
    logger.info("cache_performance", **stats._asdict())
    return stats


async def freshness_distribution(
    session: AsyncSession,
    *,
    now: datetime | None = None,
) -> FreshnessDistribution:
    """Rows bucketed by age of their last refresh."""
    now = _utc(now)
    one_day = now - timedelta(days=1)
    three_days = now - timedelta(days=3)
    seven_days = now - timedelta(days=7)
    refreshed = Thing.last_refreshed_at

    row = (
        await session.execute(
            select(
                func.count(Thing.id).filter(refreshed > one_day).label("very_fresh"),
                func.count(Thing.id)
                .filter(and_(refreshed > three_days, refreshed <= one_day))
                .label("fresh"),
                func.count(Thing.id)
                .filter(and_(refreshed > seven_days, refreshed <= three_days))
                .label("aging"),
                func.count(Thing.id).filter(refreshed <= seven_days).label("stale"),
                func.count(Thing.id).filter(refreshed.is_(None)).label("never_refreshed"),
            )
        )
    ).one()

    return FreshnessDistribution(
        very_fresh=row.very_fresh or 0,
        fresh=row.fresh or 0,
        aging=row.aging or 0,
        stale=row.stale or 0,
        never_refreshed=row.never_refreshed or 0,
    )


async def period_stats(
    session: AsyncSession,
    start: datetime,
    end: datetime,
) -> PeriodStats:
    """Rows first inserted and rows refreshed within [start, end]."""
    start, end = _utc(start), _utc(end)
    row = (
        await session.execute(
            select(
                func.count(Thing.id)
                .filter(Thing.inserted_at.between(start, end))
                .label("inserted"),
                func.count(Thing.id)
                .filter(Thing.last_refreshed_at.between(start, end))
                .label("refreshed"),
            )
        )
    ).one()
    return PeriodStats(inserted=row.inserted or 0, refreshed=row.refreshed or 0)


async def oldest_cached(session: AsyncSession, limit: int = 10) -> list[Thing]:
    """Refreshed rows with the oldest refresh first."""
    result = await session.scalars(
        select(Thing)
        .where(Thing.last_refreshed_at.is_not(None))
        .order_by(Thing.last_refreshed_at.asc(), Thing.id.asc())
        .limit(limit)
    )
    return list(result.all())


async def most_popular_tags(session: AsyncSession, limit: int = 20) -> list[TagCount]:
    """Tags by number of linked Things, most used first."""
    thing_count = func.count(ThingTag.thing_id)
    rows = (
        await session.execute(
            select(Tag.name, Tag.slug, thing_count.label("thing_count"))
            .join(ThingTag, ThingTag.tag_id == Tag.id)
            .group_by(Tag.id, Tag.name, Tag.slug)
            .order_by(thing_count.desc(), Tag.name.asc())
            .limit(limit)
        )
    ).all()
    return [TagCount(row.name, row.slug, row.thing_count) for row in rows]
