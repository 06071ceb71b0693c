"""
Models package: exports every SQLAlchemy model.
"""

from bggcache.models.base import Base
from bggcache.models.tag import Tag
from bggcache.models.thing import CURRENT_SCHEMA_VERSION, Thing
from bggcache.models.thing_tag import ThingTag

__all__ = ["Base", "CURRENT_SCHEMA_VERSION", "Tag", "Thing", "ThingTag"]
