"""
BGG Cache - Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- In-memory SQLite store (aiosqlite) with all tables created
- Session factory shared by the code under test and the assertions
- Fake ThingFetcher recording every batch it is asked for
- Raw thing factory mirroring a BGG /thing item
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Sequence

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from bggcache.errors import TransportError
from bggcache.models import CURRENT_SCHEMA_VERSION, Base, Thing
from bggcache.pipeline.bgg import RawThing


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)

# Fixed reference time for freshness-sensitive tests
NOW = datetime(2026, 10, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    In-memory SQLite engine with every table created.

    StaticPool keeps one connection so all sessions see the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# BGG Fixtures
# ---------------------------------------------------------------------------


def make_raw_thing(thing_id: str, **overrides: Any) -> RawThing:
    """A plausible BGG board game; any field can be overridden."""
    fields: dict[str, Any] = {
        "id": thing_id,
        "type": "boardgame",
        "primary_name": f"Game {thing_id}",
        "description": f"Description of game {thing_id}",
        "year_published": "2015",
        "min_players": "2",
        "max_players": "4",
        "playing_time": "60",
        "min_play_time": "45",
        "max_play_time": "60",
        "min_age": "12",
        "users_rated": "1000",
        "average": "7.5",
        "bayes_average": "7.1",
        "rank": "100",
        "owned": "5000",
        "average_weight": "2.5",
        "raw_tags": ["Hand Management"],
    }
    fields.update(overrides)
    return RawThing.model_validate(fields)


@pytest.fixture
def raw_thing():
    return make_raw_thing


class FakeFetcher:
    """
    In-memory ThingFetcher.

    Returns the catalog entry for every requested id it knows, skips unknown
    ids (like BGG does) and raises TransportError for batches containing an
    id listed in ``fail_on``.
    """

    def __init__(
        self,
        catalog: dict[str, RawThing] | None = None,
        fail_on: Sequence[str] = (),
    ):
        self.catalog = dict(catalog or {})
        self.fail_on = set(fail_on)
        self.calls: list[list[str]] = []

    async def fetch_batch(self, ids: Sequence[str]) -> list[RawThing]:
        self.calls.append(list(ids))
        if self.fail_on.intersection(ids):
            raise TransportError("BGG request failed with status 503", status_code=503)
        return [self.catalog[thing_id] for thing_id in ids if thing_id in self.catalog]


@pytest.fixture
def fake_fetcher():
    def _factory(things: Sequence[RawThing] = (), fail_on: Sequence[str] = ()) -> FakeFetcher:
        return FakeFetcher({thing.id: thing for thing in things}, fail_on)

    return _factory


# ---------------------------------------------------------------------------
# Store seeding
# ---------------------------------------------------------------------------


@pytest.fixture
def seed_thing(session_factory: async_sessionmaker[AsyncSession]):
    """
    Insert a Thing row directly, bypassing the upsert path.

    Used to set up rows with arbitrary freshness metadata.
    """

    async def _seed(
        thing_id: str,
        *,
        last_refreshed_at: datetime | None = NOW,
        schema_version: int | None = CURRENT_SCHEMA_VERSION,
        **columns: Any,
    ) -> Thing:
        columns.setdefault("type", "boardgame")
        columns.setdefault("inserted_at", last_refreshed_at or NOW)
        columns.setdefault("updated_at", last_refreshed_at or NOW)
        thing = Thing(
            id=thing_id,
            last_refreshed_at=last_refreshed_at,
            schema_version=schema_version,
            **columns,
        )
        async with session_factory() as session:
            session.add(thing)
            await session.commit()
        return thing

    return _seed
