"""
BGG Cache - Thing Model

Local mirror of a BoardGameGeek "thing" (board game). Descriptive numeric
attributes are stored as strings exactly as BGG emits them: the API mixes
numbers with sentinels such as "Not Ranked", and numeric interpretation
happens at query time through the safe casts in ``bggcache.cache.casts``.

Cache metadata:
- last_refreshed_at: null means the row was never fetched from BGG
- schema_version: which generation of fields/relations populated the row
- tags_checksum: sha256 of the normalized mechanic names at last tag sync
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import INTEGER, TIMESTAMP, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bggcache.models.base import Base

if TYPE_CHECKING:
    from bggcache.models.tag import Tag

# Bump to force a one-time re-fetch of every cached row.
# 1 = pre-mechanics rows, 2 = rows carrying mechanics (tags) + checksum.
CURRENT_SCHEMA_VERSION: int = 2


class Thing(Base):
    """
    A board game mirrored from BGG, keyed by its BGG id.

    Rows are only written through ``bggcache.cache.upsert.upsert_thing``.
    """

    __tablename__ = "things"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, comment="BGG thing id (externally assigned)"
    )
    type: Mapped[str] = mapped_column(
        String, nullable=False, comment="BGG item type (e.g., 'boardgame')"
    )
    subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    thumbnail: Mapped[str | None] = mapped_column(String, nullable=True)
    image: Mapped[str | None] = mapped_column(String, nullable=True)
    primary_name: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Primary display name"
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- String-encoded numerics (see module docstring) ---
    year_published: Mapped[str | None] = mapped_column(String, nullable=True)
    min_players: Mapped[str | None] = mapped_column(String, nullable=True)
    max_players: Mapped[str | None] = mapped_column(String, nullable=True)
    playing_time: Mapped[str | None] = mapped_column(String, nullable=True)
    min_play_time: Mapped[str | None] = mapped_column(String, nullable=True)
    max_play_time: Mapped[str | None] = mapped_column(String, nullable=True)
    min_age: Mapped[str | None] = mapped_column(String, nullable=True)
    users_rated: Mapped[str | None] = mapped_column(String, nullable=True)
    average: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Average user rating"
    )
    bayes_average: Mapped[str | None] = mapped_column(String, nullable=True)
    rank: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Board game rank or 'Not Ranked'"
    )
    owned: Mapped[str | None] = mapped_column(String, nullable=True)
    average_weight: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Complexity weight (1-5)"
    )

    # --- Cache metadata ---
    tags_checksum: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="sha256 of sorted normalized tag names at last sync"
    )
    schema_version: Mapped[int | None] = mapped_column(
        INTEGER,
        nullable=True,
        comment="Field/relation generation this row was populated with",
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="Last successful fetch from BGG (null = never fetched)",
    )
    inserted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    tags: Mapped[list[Tag]] = relationship(
        "Tag",
        secondary="thing_tags",
        viewonly=True,
        order_by="Tag.name",
        lazy="raise_on_sql",
    )

    __table_args__ = (
        Index("ix_things_last_refreshed_at", "last_refreshed_at"),
        Index("ix_things_schema_version", "schema_version"),
        Index("ix_things_type", "type"),
        Index("ix_things_tags_checksum", "tags_checksum"),
    )

    def __repr__(self) -> str:
        return (
            f"<Thing id={self.id!r} name={self.primary_name!r} "
            f"schema_version={self.schema_version!r}>"
        )


# Case-insensitive name search and sort
Index("ix_things_lower_primary_name", func.lower(Thing.__table__.c.primary_name))
