"""
BGG Cache - Cache Orchestrator

Entry point for callers: given candidate Things (typically the ids of a BGG
collection or search result) plus filters and a sort, returns fully
hydrated Things from the local store, refreshing stale ones first.

    classify -> refresh stale ids -> one filtered, sorted SELECT

The refresh runs as a separate task awaited through ``asyncio.shield``. If
the caller is cancelled (request timeout, client disconnect) the refresh
keeps going in the background and still persists every batch it fetched;
``drain()`` waits for such leftovers, e.g. at shutdown.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, NamedTuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from bggcache.cache.freshness import classify
from bggcache.cache.query import apply_filters, build_filters, build_ordering
from bggcache.config import SortDirection, SortField
from bggcache.models.thing import Thing
from bggcache.pipeline.bgg import ThingFetcher
from bggcache.pipeline.refresher import BatchRefresher, RefreshReport

logger = structlog.get_logger(__name__)


class LoadResult(NamedTuple):
    """Things matching the query plus what happened during the refresh."""

    things: list[Thing]
    stale_ids: list[str]
    refreshed_ids: list[str]
    failed_ids: list[str]


def extract_ids(candidates: Iterable[Any]) -> list[str]:
    """
    Candidate ids in first-seen order.

    A candidate is an id string (or int), an object with an ``id``
    attribute, or a mapping with an ``"id"`` key. Blank ids are skipped.
    """
    ids: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        if isinstance(candidate, Mapping):
            raw = candidate.get("id")
        elif isinstance(candidate, (str, int)):
            raw = candidate
        else:
            raw = getattr(candidate, "id", None)
        if raw is None:
            continue
        thing_id = str(raw).strip()
        if thing_id and thing_id not in seen:
            seen.add(thing_id)
            ids.append(thing_id)
    return ids


class ThingCacher:
    """
    Read-through cache of BGG Things.

    Usage:
        async with BggClient() as client:
            cacher = ThingCacher(session_factory, client)
            games = await cacher.load(
                collection_ids,
                filters={"players": 4, "min_rating": 7.5},
                sort_field=SortField.RATING,
                sort_direction=SortDirection.DESC,
            )
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: ThingFetcher,
        refresher: BatchRefresher | None = None,
        ttl_days: int | None = None,
    ):
        self._session_factory = session_factory
        self._refresher = refresher or BatchRefresher(fetcher, session_factory)
        self._ttl_days = ttl_days
        self._pending: set[asyncio.Task[RefreshReport]] = set()

    async def load(
        self,
        candidates: Iterable[Any],
        filters: Mapping[str, Any] | None = None,
        sort_field: SortField | str = SortField.NAME,
        sort_direction: SortDirection | str = SortDirection.ASC,
        *,
        now: datetime | None = None,
    ) -> list[Thing]:
        """Fresh, filtered and sorted Things for the candidates."""
        result = await self.load_report(
            candidates, filters, sort_field, sort_direction, now=now
        )
        return result.things

    async def load_report(
        self,
        candidates: Iterable[Any],
        filters: Mapping[str, Any] | None = None,
        sort_field: SortField | str = SortField.NAME,
        sort_direction: SortDirection | str = SortDirection.ASC,
        *,
        now: datetime | None = None,
    ) -> LoadResult:
        """
        Like ``load`` but also reports which ids were stale, refreshed or
        failed, so an empty result can be told apart from a failed refresh.

        Raises:
            QueryError: Unsupported sort field or direction. Raised before
                any fetch happens.
        """
        ordering = build_ordering(sort_field, sort_direction)
        active_filters = build_filters(filters)

        ids = extract_ids(candidates)
        if not ids:
            return LoadResult([], [], [], [])

        ttl = timedelta(days=self._ttl_days) if self._ttl_days is not None else None

        async with self._session_factory() as session:
            stale_ids = await classify(session, ids, now=now, ttl=ttl)

        refreshed_ids: list[str] = []
        failed_ids: list[str] = []
        if stale_ids:
            report = await self._refresh(stale_ids)
            refreshed_ids = [thing.id for thing in report.things]
            failed_ids = report.failed_ids

        stmt = apply_filters(
            select(Thing)
            .where(Thing.id.in_(ids))
            .options(selectinload(Thing.tags)),
            active_filters,
        ).order_by(*ordering)

        async with self._session_factory() as session:
            things = list((await session.scalars(stmt)).all())

        logger.info(
            "cache_load_complete",
            candidates=len(ids),
            stale=len(stale_ids),
            refreshed=len(refreshed_ids),
            failed=len(failed_ids),
            returned=len(things),
            filters=len(active_filters),
            sort_field=getattr(sort_field, "value", sort_field),
        )
        return LoadResult(things, stale_ids, refreshed_ids, failed_ids)

    async def _refresh(self, stale_ids: list[str]) -> RefreshReport:
        task = asyncio.create_task(self._refresher.refresh(stale_ids))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.warning("refresh_detached", id_count=len(stale_ids))
            raise

    async def drain(self) -> None:
        """Wait for refreshes that outlived a cancelled caller."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
