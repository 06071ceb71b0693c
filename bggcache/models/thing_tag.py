"""
BGG Cache - Thing <-> Tag join model.

Insert-only. The complete set of rows for one Thing is replaced in a single
transaction whenever that Thing's tag checksum changes.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import TIMESTAMP, ForeignKey, Index, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from bggcache.models.base import Base


class ThingTag(Base):
    """Links one Thing to one Tag."""

    __tablename__ = "thing_tags"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    thing_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("things.id", ondelete="CASCADE"),
        nullable=False,
    )
    tag_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("tags.id", ondelete="CASCADE"),
        nullable=False,
    )
    inserted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("thing_id", "tag_id", name="uq_thing_tags_thing_id_tag_id"),
        Index("ix_thing_tags_thing_id", "thing_id"),
        Index("ix_thing_tags_tag_id", "tag_id"),
    )

    def __repr__(self) -> str:
        return f"<ThingTag thing_id={self.thing_id!r} tag_id={self.tag_id!r}>"
