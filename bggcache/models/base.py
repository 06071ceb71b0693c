"""
SQLAlchemy 2.0 async DeclarativeBase for the BGG cache.

All models inherit from this Base.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all BGG cache database models."""
    pass
