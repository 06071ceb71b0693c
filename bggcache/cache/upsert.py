"""
BGG Cache - Thing Upsert & Tag Linker

Persists one fetched Thing and keeps its mechanic tags in sync.

Steps per call, inside one transaction:
1. Stamp last_refreshed_at = now and schema_version = CURRENT_SCHEMA_VERSION.
2. Validate (id and type required). Nothing is written on failure.
3. INSERT ... ON CONFLICT (id) DO UPDATE every column except id,
   inserted_at and tags_checksum.
4. If raw tag names were supplied, compare their checksum with the stored
   one. Equal -> done. Different -> resolve-or-create Tag rows, delete the
   Thing's thing_tags rows, insert the new ones, store the new checksum.

This module holds the only write path to the store.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bggcache.errors import ThingValidationError
from bggcache.models.tag import Tag, generate_slug
from bggcache.models.thing import CURRENT_SCHEMA_VERSION, Thing
from bggcache.models.thing_tag import ThingTag

logger = structlog.get_logger(__name__)

CHECKSUM_SEPARATOR = "|"

# Columns an upsert must never overwrite on conflict.
_PRESERVED_ON_CONFLICT = frozenset({"id", "inserted_at", "tags_checksum"})


# ---------------------------------------------------------------------------
# Payload validation
# ---------------------------------------------------------------------------


class ThingParams(BaseModel):
    """Validated column values for one Thing upsert."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    subtype: str | None = None
    thumbnail: str | None = None
    image: str | None = None
    primary_name: str | None = None
    description: str | None = None
    year_published: str | None = None
    min_players: str | None = None
    max_players: str | None = None
    playing_time: str | None = None
    min_play_time: str | None = None
    max_play_time: str | None = None
    min_age: str | None = None
    users_rated: str | None = None
    average: str | None = None
    bayes_average: str | None = None
    rank: str | None = None
    owned: str | None = None
    average_weight: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def normalize_value(cls, v: Any) -> Any:
        """Blank strings become None; numbers are kept in their string form."""
        if isinstance(v, bool):
            return v
        if isinstance(v, (int, float)):
            return str(v)
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


def _clean_tag_names(raw_tags: Any) -> list[str]:
    """Trim, drop blanks and exact duplicates, keep first-seen order."""
    if not raw_tags:
        return []
    names: list[str] = []
    seen: set[str] = set()
    for name in raw_tags:
        if not isinstance(name, str):
            continue
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            names.append(name)
    return names


def tags_checksum(names: list[str]) -> str | None:
    """
    Order- and case-insensitive fingerprint of a tag name list.

    sha256 over the sorted, lowercased, trimmed names joined by "|".
    Returns None for an empty list.
    """
    normalized = sorted({name.strip().lower() for name in names if name and name.strip()})
    if not normalized:
        return None
    digest = hashlib.sha256(CHECKSUM_SEPARATOR.join(normalized).encode("utf-8"))
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# Dialect helpers
# ---------------------------------------------------------------------------


def _insert_for(session: AsyncSession):
    """Return the dialect-specific ``insert`` that supports ON CONFLICT."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert is not supported on dialect {dialect!r}")
    return insert


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def upsert_thing(
    session: AsyncSession,
    params: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> Thing:
    """
    Insert or replace one Thing and sync its tags.

    Args:
        session: Async database session. Committed on success, rolled back
            on any failure.
        params: Thing column values plus an optional ``raw_tags`` list of
            mechanic names. Unknown keys are ignored.
        now: Refresh timestamp (defaults to current UTC time).

    Returns:
        The persisted Thing with ``tags`` loaded.

    Raises:
        ThingValidationError: id or type missing/blank, or a field has an
            unusable type.
    """
    now = now or datetime.now(timezone.utc)
    raw_tags = params.get("raw_tags")

    try:
        validated = ThingParams.model_validate(dict(params))
    except ValidationError as e:
        thing_id = params.get("id")
        logger.warning(
            "thing_validation_failed",
            thing_id=thing_id,
            errors=[".".join(str(p) for p in err["loc"]) for err in e.errors()],
        )
        raise ThingValidationError(
            str(thing_id) if thing_id is not None else None, e.errors()
        ) from e

    values = validated.model_dump()
    values.update(
        last_refreshed_at=now,
        schema_version=CURRENT_SCHEMA_VERSION,
        inserted_at=now,
        updated_at=now,
    )
    tag_names = _clean_tag_names(raw_tags)
    new_checksum = tags_checksum(tag_names)

    try:
        await _upsert_row(session, values)
        if new_checksum is not None:
            await _sync_tags(session, validated.id, tag_names, new_checksum, now)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    thing = await session.get(
        Thing,
        validated.id,
        options=[selectinload(Thing.tags)],
        populate_existing=True,
    )
    logger.debug(
        "thing_upserted",
        thing_id=validated.id,
        tag_count=len(tag_names),
    )
    return thing


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _upsert_row(session: AsyncSession, values: dict[str, Any]) -> None:
    insert = _insert_for(session)
    stmt = insert(Thing).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Thing.id],
        set_={
            name: stmt.excluded[name]
            for name in values
            if name not in _PRESERVED_ON_CONFLICT
        },
    )
    await session.execute(stmt)


async def _sync_tags(
    session: AsyncSession,
    thing_id: str,
    tag_names: list[str],
    new_checksum: str,
    now: datetime,
) -> None:
    """Rewrite the Thing's tag links unless the stored checksum already matches."""
    stored_checksum = await session.scalar(
        select(Thing.tags_checksum).where(Thing.id == thing_id)
    )
    if stored_checksum == new_checksum:
        logger.debug("thing_tags_unchanged", thing_id=thing_id)
        return

    tag_ids = await _resolve_tags(session, tag_names, now)
    await _replace_tag_links(session, thing_id, tag_ids, new_checksum, now)

    logger.info(
        "thing_tags_synced",
        thing_id=thing_id,
        tag_count=len(tag_ids),
        previous_checksum=stored_checksum,
        checksum=new_checksum,
    )


async def _resolve_tags(
    session: AsyncSession,
    tag_names: list[str],
    now: datetime,
) -> list[uuid.UUID]:
    """
    Resolve each name to a Tag id, creating missing Tags.

    Inserts use ON CONFLICT DO NOTHING on both unique keys, so a tag created
    concurrently by another refresh (or a distinct name that slugifies to an
    existing slug) is reused instead of failing the sync.

    Returns:
        Distinct tag ids in the order of ``tag_names``.
    """
    slugs = {name: generate_slug(name) for name in tag_names}
    insert = _insert_for(session)
    await session.execute(
        insert(Tag)
        .values(
            [
                {
                    "id": uuid.uuid4(),
                    "name": name,
                    "slug": slugs[name],
                    "inserted_at": now,
                    "updated_at": now,
                }
                for name in tag_names
            ]
        )
        .on_conflict_do_nothing()
    )

    rows = (
        await session.execute(
            select(Tag.id, Tag.name, Tag.slug).where(
                or_(Tag.name.in_(tag_names), Tag.slug.in_(sorted(set(slugs.values()))))
            )
        )
    ).all()
    by_name = {row.name: row.id for row in rows}
    by_slug = {row.slug: row.id for row in rows}

    tag_ids: list[uuid.UUID] = []
    for name in tag_names:
        tag_id = by_name.get(name) or by_slug.get(slugs[name])
        if tag_id is None:
            logger.warning("tag_resolution_failed", tag_name=name, slug=slugs[name])
            continue
        if tag_id not in tag_ids:
            tag_ids.append(tag_id)
    return tag_ids


async def _replace_tag_links(
    session: AsyncSession,
    thing_id: str,
    tag_ids: list[uuid.UUID],
    new_checksum: str,
    now: datetime,
) -> None:
    """Delete all links of the Thing, insert the new set, store the checksum."""
    await session.execute(delete(ThingTag).where(ThingTag.thing_id == thing_id))
    if tag_ids:
        await session.execute(
            ThingTag.__table__.insert(),
            [
                {
                    "id": uuid.uuid4(),
                    "thing_id": thing_id,
                    "tag_id": tag_id,
                    "inserted_at": now,
                }
                for tag_id in tag_ids
            ],
        )
    await session.execute(
        update(Thing).where(Thing.id == thing_id).values(tags_checksum=new_checksum)
    )
