"""
BGG Cache - BoardGameGeek XML API 2 Client

Fetches thing details (with ratings statistics and mechanics links) for a
batch of BGG ids. Implements the ``ThingFetcher`` protocol consumed by the
batch refresher.

Endpoint: GET {BGG_BASE_URL}/thing?id=1,2,3&stats=1
Limit: BGG_BATCH_SIZE ids per request (20 per the BGG docs)

Every failure mode (network, non-success status after retries, BGG error
document, unparseable XML) surfaces as a ``TransportError`` so the
refresher can skip the batch.
"""

from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET
from typing import Any, Protocol, Sequence

import httpx
import structlog
from pydantic import BaseModel, Field

from bggcache.config import settings
from bggcache.errors import BggApiError, BggParseError, TransportError

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Pydantic Response Models
# ---------------------------------------------------------------------------


class RawThing(BaseModel):
    """
    One ``<item>`` of a BGG thing response.

    Numeric attributes stay strings; BGG mixes numbers with sentinels.
    """

    id: str = Field(..., description="BGG thing id")
    type: str = Field(..., description="Item type (e.g., 'boardgame')")
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
    raw_tags: list[str] = Field(default_factory=list, description="Mechanic names")

    def to_params(self) -> dict[str, Any]:
        """Upsert parameters for ``bggcache.cache.upsert.upsert_thing``."""
        return self.model_dump()


class ThingFetcher(Protocol):
    """
    Fetch-by-id-batch capability of the external catalog.

    A fetcher may also expose a ``batch_size`` attribute with its
    per-request id limit; BatchRefresher never sends larger chunks.
    """

    async def fetch_batch(self, ids: Sequence[str]) -> list[RawThing]:
        ...


# ---------------------------------------------------------------------------
# XML parsing
# ---------------------------------------------------------------------------

# <element value="..."/> children of <item>
_ITEM_VALUES = {
    "yearpublished": "year_published",
    "minplayers": "min_players",
    "maxplayers": "max_players",
    "playingtime": "playing_time",
    "minplaytime": "min_play_time",
    "maxplaytime": "max_play_time",
    "minage": "min_age",
}

# <element value="..."/> children of <statistics><ratings>
_RATING_VALUES = {
    "usersrated": "users_rated",
    "average": "average",
    "bayesaverage": "bayes_average",
    "owned": "owned",
    "averageweight": "average_weight",
}


def _text(item: ET.Element, tag: str) -> str | None:
    node = item.find(tag)
    if node is None or node.text is None:
        return None
    return node.text.strip() or None


def _value(parent: ET.Element | None, tag: str) -> str | None:
    if parent is None:
        return None
    node = parent.find(tag)
    if node is None:
        return None
    return node.get("value")


def _parse_item(item: ET.Element, tag_link_type: str) -> RawThing:
    primary_name = None
    for name in item.findall("name"):
        if name.get("type") == "primary":
            primary_name = name.get("value")
            break

    ratings = item.find("statistics/ratings")
    rank = None
    if ratings is not None:
        for node in ratings.findall("ranks/rank"):
            if node.get("name") == "boardgame":
                rank = node.get("value")
                break

    fields: dict[str, Any] = {
        "id": item.get("id"),
        "type": item.get("type"),
        "subtype": item.get("subtype"),
        "thumbnail": _text(item, "thumbnail"),
        "image": _text(item, "image"),
        "primary_name": primary_name,
        "description": _text(item, "description"),
        "rank": rank,
        "raw_tags": [
            link.get("value", "")
            for link in item.findall("link")
            if link.get("type") == tag_link_type and link.get("value")
        ],
    }
    for tag, field in _ITEM_VALUES.items():
        fields[field] = _value(item, tag)
    for tag, field in _RATING_VALUES.items():
        fields[field] = _value(ratings, tag)
    return RawThing.model_validate(fields)


def parse_things_xml(
    body: str | bytes,
    tag_link_type: str | None = None,
) -> list[RawThing]:
    """
    Parse a BGG ``/thing`` response body.

    Items missing an id or type are skipped with a warning.

    Raises:
        BggParseError: Body is not XML or not an ``<items>`` document.
        BggApiError: Body is a BGG ``<errors>`` document.
    """
    tag_link_type = tag_link_type or settings.BGG_TAG_LINK_TYPE
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise BggParseError(f"failed_to_parse_xml: {e}") from e

    if root.tag in ("errors", "error"):
        messages = [m.text.strip() for m in root.iter("message") if m.text]
        raise BggApiError(f"BGG API error: {'; '.join(messages) or 'unknown error'}")
    if root.tag != "items":
        raise BggParseError(f"failed_to_parse_xml: unexpected root <{root.tag}>")

    things: list[RawThing] = []
    for item in root.findall("item"):
        if not item.get("id") or not item.get("type"):
            logger.warning("bgg_item_skipped", item_id=item.get("id"), reason="missing id or type")
            continue
        things.append(_parse_item(item, tag_link_type))
    return things


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class BggClient:
    """
    Async client for the BGG XML API 2.

    Usage:
        async with BggClient() as client:
            things = await client.fetch_batch(["224517", "68448"])
    """

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        max_retries: int | None = None,
        base_backoff: float | None = None,
        max_backoff: float | None = None,
        batch_size: int | None = None,
        timeout: float | None = None,
    ):
        self._api_token = api_token if api_token is not None else settings.BGG_API_TOKEN
        self._base_url = base_url or settings.BGG_BASE_URL
        self._max_retries = max_retries if max_retries is not None else settings.BGG_MAX_RETRIES
        self._base_backoff = (
            base_backoff if base_backoff is not None else settings.BGG_BASE_BACKOFF_SECONDS
        )
        self._max_backoff = (
            max_backoff if max_backoff is not None else settings.BGG_MAX_BACKOFF_SECONDS
        )
        self._batch_size = batch_size or settings.BGG_BATCH_SIZE
        self._timeout = timeout or settings.BGG_TIMEOUT_SECONDS
        self._client: httpx.AsyncClient | None = None

    @property
    def batch_size(self) -> int:
        """Most ids accepted per /thing request."""
        return self._batch_size

    async def __aenter__(self) -> BggClient:
        headers: dict[str, str] = {"Accept": "application/xml"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    def _backoff(self, attempt: int) -> float:
        return min(self._base_backoff * (2 ** attempt), self._max_backoff)

    async def _request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """GET with retry and capped exponential backoff on 429, 5xx and network errors."""
        assert self._client is not None, "Client not initialized. Use 'async with'."

        last_error: Exception | None = None
        last_status: int | None = None

        for attempt in range(self._max_retries + 1):
            retrying = attempt < self._max_retries
            try:
                response = await self._client.get(path, params=params)

                if response.status_code == 429 or response.status_code >= 500:
                    last_status = response.status_code
                    wait_time = self._backoff(attempt)
                    logger.warning(
                        "bgg_retryable_status",
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        wait_seconds=wait_time if retrying else 0,
                        path=path,
                    )
                    if retrying:
                        await asyncio.sleep(wait_time)
                    continue

                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                logger.error(
                    "bgg_http_error",
                    status_code=e.response.status_code,
                    attempt=attempt + 1,
                    path=path,
                )
                raise TransportError(
                    f"BGG request failed with status {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e

            except httpx.RequestError as e:
                last_error = e
                wait_time = self._backoff(attempt)
                logger.error(
                    "bgg_request_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    attempt=attempt + 1,
                    path=path,
                )
                if retrying:
                    await asyncio.sleep(wait_time)
                continue

        raise TransportError(
            f"BGG request failed after {self._max_retries + 1} attempts",
            status_code=last_status,
        ) from last_error

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_batch(self, ids: Sequence[str]) -> list[RawThing]:
        """
        Fetch full details for up to ``batch_size`` things.

        Args:
            ids: BGG thing ids (ints are accepted and stringified).

        Returns:
            Parsed things in response order. Ids unknown to BGG are simply
            absent from the result.

        Raises:
            ValueError: More ids than the per-request limit.
            TransportError: Request, status or payload failure.
        """
        id_list = [str(thing_id).strip() for thing_id in ids if str(thing_id).strip()]
        if not id_list:
            return []
        if len(id_list) > self._batch_size:
            raise ValueError(
                f"BGG accepts at most {self._batch_size} ids per request, got {len(id_list)}"
            )

        logger.info("bgg_fetch_batch", id_count=len(id_list))

        response = await self._request(
            "/thing",
            params={"id": ",".join(id_list), "stats": "1"},
        )
        things = parse_things_xml(response.content)

        logger.info(
            "bgg_fetch_batch_complete",
            requested=len(id_list),
            returned=len(things),
        )
        return things
