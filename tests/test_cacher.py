"""
Tests for the cache orchestrator (bggcache/cache/cacher.py).

Covers:
- End-to-end: missing ids refreshed, then filtered and sorted in SQL
- Fresh rows are served without fetching
- Tag-set AND filter end-to-end
- Refresh failures are reported and do not fail the load
- Candidate id extraction from strings, objects and mappings
- Invalid sort fails before any fetch
- A cancelled caller does not abort the refresh
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from bggcache.cache.cacher import LoadResult, ThingCacher, extract_ids
from bggcache.config import SortDirection, SortField
from bggcache.errors import QueryError
from bggcache.models import Thing


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


# ---------------------------------------------------------------------------
# extract_ids
# ---------------------------------------------------------------------------


def test_extract_ids_accepts_mixed_candidates() -> None:
    candidates = [
        "13",
        822,
        SimpleNamespace(id="224517"),
        {"id": "68448", "name": "7 Wonders"},
        {"name": "no id"},
        "  ",
        "13",
        SimpleNamespace(name="no id either"),
    ]

    assert extract_ids(candidates) == ["13", "822", "224517", "68448"]


# ---------------------------------------------------------------------------
# load
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_load_refreshes_and_sorts_by_rating(
    fake_fetcher, raw_thing, session_factory
) -> None:
    fetcher = fake_fetcher(
        [
            raw_thing("1", primary_name="Azul", average="7.8"),
            raw_thing("2", primary_name="Brass: Birmingham", average="8.7"),
            raw_thing("3", primary_name="Cascadia", average="8.1"),
        ]
    )
    cacher = ThingCacher(session_factory, fetcher)

    things = await cacher.load(
        ["1", "2", "3"],
        sort_field=SortField.RATING,
        sort_direction=SortDirection.DESC,
    )

    assert [thing.average for thing in things] == ["8.7", "8.1", "7.8"]
    assert all(isinstance(thing, Thing) for thing in things)
    assert fetcher.calls == [["1", "2", "3"]]


@pytest.mark.asyncio
async def test_load_returns_hydrated_tags(fake_fetcher, raw_thing, session_factory) -> None:
    fetcher = fake_fetcher([raw_thing("1", raw_tags=["Tile Placement", "Hand Management"])])
    cacher = ThingCacher(session_factory, fetcher)

    (thing,) = await cacher.load(["1"])

    assert [tag.name for tag in thing.tags] == ["Hand Management", "Tile Placement"]


@pytest.mark.asyncio
async def test_fresh_rows_are_not_fetched(
    fake_fetcher, raw_thing, seed_thing, session_factory, now
) -> None:
    await seed_thing("1", primary_name="Cached", last_refreshed_at=now - timedelta(days=1))
    fetcher = fake_fetcher([raw_thing("2")])
    cacher = ThingCacher(session_factory, fetcher)

    result = await cacher.load_report(["1", "2"], now=now)

    assert fetcher.calls == [["2"]]
    assert result.stale_ids == ["2"]
    assert result.refreshed_ids == ["2"]
    assert sorted(thing.id for thing in result.things) == ["1", "2"]


@pytest.mark.asyncio
async def test_second_load_is_served_from_store(fake_fetcher, raw_thing, session_factory) -> None:
    fetcher = fake_fetcher([raw_thing("1"), raw_thing("2")])
    cacher = ThingCacher(session_factory, fetcher)

    await cacher.load(["1", "2"])
    result = await cacher.load_report(["1", "2"])

    assert len(fetcher.calls) == 1
    assert result.stale_ids == []
    assert len(result.things) == 2


@pytest.mark.asyncio
async def test_load_filters_tags_with_and_semantics(
    fake_fetcher, raw_thing, session_factory
) -> None:
    fetcher = fake_fetcher(
        [
            raw_thing("1", primary_name="A", raw_tags=["Hand Management", "Tile Placement"]),
            raw_thing("2", primary_name="B", raw_tags=["Hand Management"]),
            raw_thing("3", primary_name="C", raw_tags=["Tile Placement", "Set Collection"]),
        ]
    )
    cacher = ThingCacher(session_factory, fetcher)

    things = await cacher.load(
        ["1", "2", "3"],
        filters={"tag_names": ["Hand Management", "Tile Placement"]},
    )

    assert [thing.id for thing in things] == ["1"]


@pytest.mark.asyncio
async def test_load_only_returns_candidates(
    fake_fetcher, raw_thing, seed_thing, session_factory, now
) -> None:
    await seed_thing("other", primary_name="Not requested", last_refreshed_at=now)
    fetcher = fake_fetcher([raw_thing("1")])
    cacher = ThingCacher(session_factory, fetcher)

    things = await cacher.load(["1"], now=now)

    assert [thing.id for thing in things] == ["1"]


@pytest.mark.asyncio
async def test_load_combines_numeric_filters(fake_fetcher, raw_thing, session_factory) -> None:
    fetcher = fake_fetcher(
        [
            raw_thing("1", primary_name="A", min_players="1", max_players="4", average="8.0"),
            raw_thing("2", primary_name="B", min_players="2", max_players="2", average="8.5"),
            raw_thing("3", primary_name="C", min_players="3", max_players="5", average="N/A"),
        ]
    )
    cacher = ThingCacher(session_factory, fetcher)

    things = await cacher.load(["1", "2", "3"], filters={"players": "3", "min_rating": 7})

    assert [thing.id for thing in things] == ["1"]


@pytest.mark.asyncio
async def test_refresh_failure_is_reported(
    fake_fetcher, raw_thing, seed_thing, session_factory, now
) -> None:
    await seed_thing("1", primary_name="Old", last_refreshed_at=now - timedelta(days=30))
    fetcher = fake_fetcher([raw_thing("1")], fail_on=["1"])
    cacher = ThingCacher(session_factory, fetcher)

    result = await cacher.load_report(["1", "2"], now=now)

    assert isinstance(result, LoadResult)
    assert result.stale_ids == ["1", "2"]
    assert result.failed_ids == ["1", "2"]
    assert result.refreshed_ids == []
    # The stale row is still served
    assert [thing.id for thing in result.things] == ["1"]


@pytest.mark.asyncio
async def test_empty_candidates(fake_fetcher, session_factory) -> None:
    fetcher = fake_fetcher()
    cacher = ThingCacher(session_factory, fetcher)

    assert await cacher.load([]) == []
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_invalid_sort_fails_before_fetch(fake_fetcher, raw_thing, session_factory) -> None:
    fetcher = fake_fetcher([raw_thing("1")])
    cacher = ThingCacher(session_factory, fetcher)

    with pytest.raises(QueryError):
        await cacher.load(["1"], sort_field="popularity")

    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_custom_ttl(fake_fetcher, raw_thing, seed_thing, session_factory, now) -> None:
    await seed_thing("1", last_refreshed_at=now - timedelta(days=2))
    fetcher = fake_fetcher([raw_thing("1")])
    cacher = ThingCacher(session_factory, fetcher, ttl_days=1)

    result = await cacher.load_report(["1"], now=now)

    assert result.stale_ids == ["1"]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class GatedFetcher:
    """Blocks inside fetch_batch until released."""

    def __init__(self, things):
        self.things = {thing.id: thing for thing in things}
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_batch(self, ids):
        self.started.set()
        await self.release.wait()
        return [self.things[thing_id] for thing_id in ids if thing_id in self.things]


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abort_refresh(raw_thing, session_factory) -> None:
    fetcher = GatedFetcher([raw_thing("1")])
    cacher = ThingCacher(session_factory, fetcher)

    load_task = asyncio.create_task(cacher.load(["1"]))
    await fetcher.started.wait()
    load_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await load_task

    fetcher.release.set()
    await cacher.drain()

    async with session_factory() as session:
        thing = await session.get(Thing, "1")
    assert thing is not None
    assert thing.last_refreshed_at is not None
