"""
Tests for the BGG XML API client (bggcache/pipeline/bgg.py).

Covers:
- parse_things_xml: full item, missing optional data, mechanics-only tags,
  error documents, malformed XML
- BggClient initialization and configuration
- fetch_batch: request shape, bearer token, batch size guard
- Retry logic: 429 rate-limiting, 5xx, network errors, exhausted retries
- Non-retryable status codes
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from bggcache.config import settings
from bggcache.errors import BggApiError, BggParseError, TransportError
from bggcache.pipeline.bgg import BggClient, RawThing, parse_things_xml

BASE_URL = "https://bgg.test/xmlapi2"
THING_URL = f"{BASE_URL}/thing"

THINGS_XML = """<?xml version="1.0" encoding="utf-8"?>
<items termsofuse="https://boardgamegeek.com/xmlapi/termsofuse">
  <item type="boardgame" id="224517">
    <thumbnail>https://example.com/brass_thumb.jpg</thumbnail>
    <image>https://example.com/brass.jpg</image>
    <name type="primary" sortindex="1" value="Brass: Birmingham" />
    <name type="alternate" sortindex="1" value="Brass: Birmingham (alt)" />
    <description>Build networks, grow industries.</description>
    <yearpublished value="2018" />
    <minplayers value="2" />
    <maxplayers value="4" />
    <playingtime value="120" />
    <minplaytime value="60" />
    <maxplaytime value="120" />
    <minage value="14" />
    <link type="boardgamecategory" id="1021" value="Economic" />
    <link type="boardgamemechanic" id="2040" value="Hand Management" />
    <link type="boardgamemechanic" id="2081" value="Network and Route Building" />
    <link type="boardgamedesigner" id="9714" value="Gavan Brown" />
    <statistics page="1">
      <ratings>
        <usersrated value="48000" />
        <average value="8.59" />
        <bayesaverage value="8.40" />
        <ranks>
          <rank type="subtype" id="1" name="boardgame" friendlyname="Board Game Rank" value="1" />
          <rank type="family" id="5497" name="strategygames" friendlyname="Strategy Game Rank" value="1" />
        </ranks>
        <owned value="70000" />
        <averageweight value="3.87" />
      </ratings>
    </statistics>
  </item>
  <item type="boardgame" id="123456">
    <name type="primary" sortindex="1" value="Simple Game" />
    <minplayers value="2" />
    <maxplayers value="4" />
    <statistics>
      <ratings>
        <average value="0" />
        <ranks>
          <rank type="subtype" id="1" name="boardgame" value="Not Ranked" />
        </ranks>
      </ratings>
    </statistics>
  </item>
</items>"""

ERROR_XML = """<?xml version="1.0" encoding="utf-8"?>
<errors>
  <error>
    <message>Item not found</message>
  </error>
</errors>"""


# ---------------------------------------------------------------------------
# XML parsing
# ---------------------------------------------------------------------------


def test_parse_full_item() -> None:
    brass, _ = parse_things_xml(THINGS_XML)

    assert isinstance(brass, RawThing)
    assert brass.id == "224517"
    assert brass.type == "boardgame"
    assert brass.primary_name == "Brass: Birmingham"
    assert brass.thumbnail == "https://example.com/brass_thumb.jpg"
    assert brass.description == "Build networks, grow industries."
    assert brass.year_published == "2018"
    assert (brass.min_players, brass.max_players) == ("2", "4")
    assert (brass.min_play_time, brass.max_play_time) == ("60", "120")
    assert brass.min_age == "14"
    assert brass.users_rated == "48000"
    assert brass.average == "8.59"
    assert brass.bayes_average == "8.40"
    assert brass.rank == "1"
    assert brass.owned == "70000"
    assert brass.average_weight == "3.87"


def test_parse_keeps_only_mechanic_links_as_tags() -> None:
    brass, _ = parse_things_xml(THINGS_XML)

    assert brass.raw_tags == ["Hand Management", "Network and Route Building"]


def test_parse_sparse_item() -> None:
    _, simple = parse_things_xml(THINGS_XML.encode("utf-8"))

    assert simple.id == "123456"
    assert simple.rank == "Not Ranked"
    assert simple.description is None
    assert simple.thumbnail is None
    assert simple.average_weight is None
    assert simple.raw_tags == []


def test_parse_custom_tag_link_type() -> None:
    brass, _ = parse_things_xml(THINGS_XML, tag_link_type="boardgamecategory")

    assert brass.raw_tags == ["Economic"]


def test_parse_empty_items() -> None:
    assert parse_things_xml('<items termsofuse="x"></items>') == []


def test_parse_skips_item_without_id() -> None:
    assert parse_things_xml('<items><item type="boardgame"/></items>') == []


def test_parse_error_document() -> None:
    with pytest.raises(BggApiError, match="BGG API error: Item not found"):
        parse_things_xml(ERROR_XML)


def test_parse_malformed_xml() -> None:
    with pytest.raises(BggParseError, match="failed_to_parse_xml"):
        parse_things_xml("<items><item></items>")


def test_parse_errors_are_transport_errors() -> None:
    with pytest.raises(TransportError):
        parse_things_xml("not xml at all")


def test_raw_thing_to_params_carries_tags() -> None:
    brass, _ = parse_things_xml(THINGS_XML)
    params = brass.to_params()

    assert params["id"] == "224517"
    assert params["raw_tags"] == ["Hand Management", "Network and Route Building"]


# ---------------------------------------------------------------------------
# Client configuration
# ---------------------------------------------------------------------------


def test_client_init_defaults() -> None:
    client = BggClient()

    assert client._base_url == settings.BGG_BASE_URL
    assert client._max_retries == settings.BGG_MAX_RETRIES
    assert client._batch_size == settings.BGG_BATCH_SIZE
    assert client._client is None  # Not yet opened


def test_client_backoff_is_capped() -> None:
    client = BggClient(base_backoff=1.0, max_backoff=5.0)

    assert [client._backoff(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_request_without_context_manager_fails() -> None:
    client = BggClient(base_url=BASE_URL)

    with pytest.raises(AssertionError):
        await client.fetch_batch(["1"])


# ---------------------------------------------------------------------------
# fetch_batch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_batch_success() -> None:
    with respx.mock:
        route = respx.get(THING_URL).mock(return_value=httpx.Response(200, text=THINGS_XML))

        async with BggClient(base_url=BASE_URL, api_token="") as client:
            things = await client.fetch_batch(["224517", 123456])

    assert [thing.id for thing in things] == ["224517", "123456"]
    request = route.calls.last.request
    assert request.url.params["id"] == "224517,123456"
    assert request.url.params["stats"] == "1"
    assert "Authorization" not in request.headers


@pytest.mark.asyncio
async def test_fetch_batch_sends_bearer_token() -> None:
    with respx.mock:
        route = respx.get(THING_URL).mock(return_value=httpx.Response(200, text="<items/>"))

        async with BggClient(base_url=BASE_URL, api_token="secret") as client:
            assert await client.fetch_batch(["1"]) == []

    assert route.calls.last.request.headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_fetch_batch_empty_ids_makes_no_request() -> None:
    with respx.mock(assert_all_called=False) as respx_mock:
        route = respx_mock.get(THING_URL).mock(return_value=httpx.Response(200, text="<items/>"))

        async with BggClient(base_url=BASE_URL) as client:
            assert await client.fetch_batch([]) == []

    assert not route.called


@pytest.mark.asyncio
async def test_fetch_batch_rejects_oversized_batch() -> None:
    async with BggClient(base_url=BASE_URL, batch_size=2) as client:
        with pytest.raises(ValueError):
            await client.fetch_batch(["1", "2", "3"])


@pytest.mark.asyncio
async def test_fetch_batch_error_document_raises() -> None:
    with respx.mock:
        respx.get(THING_URL).mock(return_value=httpx.Response(200, text=ERROR_XML))

        async with BggClient(base_url=BASE_URL) as client:
            with pytest.raises(BggApiError):
                await client.fetch_batch(["999999999"])


# ---------------------------------------------------------------------------
# Retry logic
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_on_429_then_success() -> None:
    with respx.mock, patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        route = respx.get(THING_URL).mock(
            side_effect=[
                httpx.Response(429),
                httpx.Response(200, text=THINGS_XML),
            ]
        )

        async with BggClient(base_url=BASE_URL, max_retries=3, base_backoff=1.0) as client:
            things = await client.fetch_batch(["224517"])

    assert len(things) == 2
    assert route.call_count == 2
    mock_sleep.assert_awaited_once_with(1.0)


@pytest.mark.asyncio
async def test_retry_on_server_error_with_backoff() -> None:
    with respx.mock, patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        respx.get(THING_URL).mock(
            side_effect=[
                httpx.Response(500),
                httpx.Response(503),
                httpx.Response(200, text="<items/>"),
            ]
        )

        async with BggClient(base_url=BASE_URL, max_retries=3, base_backoff=1.0) as client:
            await client.fetch_batch(["1"])

    assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_on_network_error() -> None:
    with respx.mock, patch("asyncio.sleep", new_callable=AsyncMock):
        route = respx.get(THING_URL).mock(
            side_effect=[
                httpx.ConnectError("connection refused"),
                httpx.Response(200, text="<items/>"),
            ]
        )

        async with BggClient(base_url=BASE_URL) as client:
            assert await client.fetch_batch(["1"]) == []

    assert route.call_count == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_transport_error() -> None:
    with respx.mock, patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        route = respx.get(THING_URL).mock(return_value=httpx.Response(503))

        async with BggClient(base_url=BASE_URL, max_retries=2) as client:
            with pytest.raises(TransportError) as exc_info:
                await client.fetch_batch(["1"])

    assert exc_info.value.status_code == 503
    assert route.call_count == 3
    assert mock_sleep.await_count == 2


@pytest.mark.asyncio
async def test_client_error_is_not_retried() -> None:
    with respx.mock, patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        route = respx.get(THING_URL).mock(return_value=httpx.Response(404))

        async with BggClient(base_url=BASE_URL) as client:
            with pytest.raises(TransportError) as exc_info:
                await client.fetch_batch(["1"])

    assert exc_info.value.status_code == 404
    assert route.call_count == 1
    mock_sleep.assert_not_awaited()
