"""
BGG Cache - Exception hierarchy.

Validation errors surface to the caller of ``upsert_thing``. Transport errors
are raised by fetchers and recovered by the batch refresher; they never reach
the caller of ``ThingCacher.load``.
"""

from __future__ import annotations

from typing import Any


class BggCacheError(Exception):
    """Base class for all cache errors."""


class ThingValidationError(BggCacheError):
    """A Thing payload is missing required identity/type fields or is malformed."""

    def __init__(self, thing_id: str | None, errors: list[dict[str, Any]]):
        self.thing_id = thing_id
        self.errors = errors
        fields = ", ".join(
            ".".join(str(part) for part in err.get("loc", ())) or "?" for err in errors
        )
        super().__init__(f"Invalid thing payload (id={thing_id!r}): {fields}")


class TransportError(BggCacheError):
    """A batch fetch from the catalog failed (network, HTTP status, payload)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BggApiError(TransportError):
    """BGG answered with an ``<errors>`` document."""


class BggParseError(TransportError):
    """BGG answered with a body that is not parseable XML."""


class QueryError(BggCacheError, ValueError):
    """Invalid sort field or direction."""
