"""
BGG Cache - Tag Model

A normalized, reusable descriptive label. Populated from BGG's
``boardgamemechanic`` links ("Hand Management", "Tile Placement", ...).
Tags are created lazily the first time a Thing's tag sync meets a new name
and are never updated or deleted by the cache.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from datetime import datetime

from sqlalchemy import TIMESTAMP, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from bggcache.models.base import Base

_SLUG_STRIP = re.compile(r"[^a-z0-9\s\-]")
_SLUG_COLLAPSE = re.compile(r"[\s\-]+")


def generate_slug(name: str) -> str:
    """
    Build a URL-friendly slug from a tag name.

    "Worker Placement" -> "worker-placement"
    "Apostrophe's & Quotes" -> "apostrophes-quotes"
    "???" -> "tag-" + first 12 hex chars of sha256("???")

    Names without any ASCII letter or digit get a hash-derived slug so
    that distinct names never share an empty slug.
    """
    slug = _SLUG_STRIP.sub("", name.lower())
    slug = _SLUG_COLLAPSE.sub("-", slug).strip("-")
    if slug:
        return slug
    digest = hashlib.sha256(name.strip().encode("utf-8")).hexdigest()
    return f"tag-{digest[:12]}"


class Tag(Base):
    """A BGG mechanic, unique by name and by slug."""

    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        comment="Generated opaque identifier",
    )
    name: Mapped[str] = mapped_column(
        String, unique=True, nullable=False, comment="Display name as emitted by BGG"
    )
    slug: Mapped[str] = mapped_column(
        String, unique=True, nullable=False, comment="Lower-kebab-case form of name"
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

    def __repr__(self) -> str:
        return f"<Tag id={self.id!r} name={self.name!r} slug={self.slug!r}>"
