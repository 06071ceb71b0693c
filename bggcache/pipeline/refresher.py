"""
BGG Cache - Batch Refresh Fetcher

Pulls stale Things from BGG in rate-limited chunks and persists them.

Chunk size never exceeds the fetcher's own ``batch_size`` when it has one.
Chunks run strictly one after another. Between two chunks the refresher
sleeps ``delay_seconds`` (BGG throttles aggressive clients), whether the
previous chunk succeeded or failed. A failed chunk is logged and skipped;
the remaining chunks still run. Retrying a failed chunk is the transport's
job, not this module's.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, NamedTuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bggcache.cache.upsert import upsert_thing
from bggcache.config import settings
from bggcache.errors import ThingValidationError, TransportError
from bggcache.models.thing import Thing
from bggcache.pipeline.bgg import RawThing, ThingFetcher

logger = structlog.get_logger(__name__)


class RefreshReport(NamedTuple):
    """Outcome of one refresh run."""

    things: list[Thing]
    failed_ids: list[str]
    missing_ids: list[str]
    invalid_ids: list[str]


def chunked(ids: list[str], size: int) -> list[list[str]]:
    """Split ``ids`` into consecutive chunks of at most ``size``."""
    if size < 1:
        raise ValueError(f"batch size must be positive, got {size}")
    return [ids[i:i + size] for i in range(0, len(ids), size)]


class BatchRefresher:
    """
    Refreshes Things by id through a ``ThingFetcher``.

    Usage:
        async with BggClient() as client:
            refresher = BatchRefresher(client, session_factory)
            report = await refresher.refresh(["224517", "68448"])
    """

    def __init__(
        self,
        fetcher: ThingFetcher,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int | None = None,
        delay_seconds: float | None = None,
    ):
        self._fetcher = fetcher
        self._session_factory = session_factory
        self._batch_size = batch_size or settings.BGG_BATCH_SIZE
        fetcher_limit = getattr(fetcher, "batch_size", None)
        if fetcher_limit and self._batch_size > fetcher_limit:
            logger.warning(
                "refresh_batch_size_clamped",
                requested=self._batch_size,
                fetcher_limit=fetcher_limit,
            )
            self._batch_size = fetcher_limit
        self._delay_seconds = (
            delay_seconds
            if delay_seconds is not None
            else settings.BGG_RATE_LIMIT_DELAY_SECONDS
        )

    async def refresh(self, stale_ids: Iterable[str]) -> RefreshReport:
        """
        Fetch and upsert every id in ``stale_ids``.

        Never raises for transport or validation failures; those ids are
        reported in ``failed_ids`` / ``invalid_ids`` instead.
        """
        ids = list(dict.fromkeys(stale_ids))
        things: list[Thing] = []
        failed_ids: list[str] = []
        missing_ids: list[str] = []
        invalid_ids: list[str] = []

        if not ids:
            return RefreshReport(things, failed_ids, missing_ids, invalid_ids)

        chunks = chunked(ids, self._batch_size)
        logger.info(
            "refresh_started",
            id_count=len(ids),
            batch_count=len(chunks),
            batch_size=self._batch_size,
        )

        for index, chunk in enumerate(chunks):
            try:
                raw_things = await self._fetcher.fetch_batch(chunk)
            except TransportError as e:
                failed_ids.extend(chunk)
                logger.error(
                    "refresh_batch_failed",
                    batch=index + 1,
                    batch_count=len(chunks),
                    ids=chunk,
                    status_code=e.status_code,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                upserted, invalid = await self._persist(raw_things)
                things.extend(upserted)
                invalid_ids.extend(invalid)

                returned = {raw.id for raw in raw_things}
                missing = [thing_id for thing_id in chunk if thing_id not in returned]
                missing_ids.extend(missing)
                if missing:
                    logger.warning("refresh_ids_not_returned", ids=missing)

            if index < len(chunks) - 1:
                await asyncio.sleep(self._delay_seconds)

        logger.info(
            "refresh_complete",
            refreshed=len(things),
            failed=len(failed_ids),
            missing=len(missing_ids),
            invalid=len(invalid_ids),
        )
        return RefreshReport(things, failed_ids, missing_ids, invalid_ids)

    async def _persist(self, raw_things: list[RawThing]) -> tuple[list[Thing], list[str]]:
        """Upsert each fetched Thing in its own transaction."""
        upserted: list[Thing] = []
        invalid: list[str] = []
        async with self._session_factory() as session:
            for raw in raw_things:
                try:
                    upserted.append(await upsert_thing(session, raw.to_params()))
                except ThingValidationError:
                    invalid.append(raw.id)
                except SQLAlchemyError as e:
                    invalid.append(raw.id)
                    logger.error(
                        "refresh_upsert_failed",
                        thing_id=raw.id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
        return upserted, invalid
