"""Tests for the deal-creation collaborator clients.

Uses httpx.MockTransport so no network is touched. Retry backoff is only
exercised on the non-retried (4xx) path to keep the suite fast.
"""

from __future__ import annotations

import json

import httpx
import pytest

from src.dealflow.config import Settings
from src.dealflow.errors import DealCreationError
from src.dealflow.gate.deal_client import (
    HttpDealCreationClient,
    LocalDealCreationClient,
    _is_transient,
    build_deal_client,
)
from src.dealflow.gate.schemas import Listing, ListingType


@pytest.fixture
def listing() -> Listing:
    return Listing(id="L1", listing_type=ListingType.PUBLIC)


@pytest.mark.asyncio
async def test_local_client_mints_deal_ids(listing):
    client = LocalDealCreationClient()

    first = await client.create_deal(listing, "A", "closed")
    second = await client.create_deal(listing, "A", "closed")

    assert first.startswith("deal-")
    assert first != second


@pytest.mark.asyncio
async def test_http_client_posts_with_idempotency_key(listing):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "deal-remote-1"})

    client = HttpDealCreationClient(
        "https://deals.test/api/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )

    deal_id = await client.create_deal(listing, "A", "closed")

    assert deal_id == "deal-remote-1"
    assert len(seen) == 1
    request = seen[0]
    assert str(request.url) == "https://deals.test/api/deals"
    assert request.headers["Idempotency-Key"] == "convert-L1"
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content) == {
        "listing_id": "L1",
        "listing_type": "PUBLIC",
        "buyer_id": "A",
        "notes": "closed",
        "source": "distribution",
    }


@pytest.mark.asyncio
async def test_http_client_accepts_deal_id_key(listing):
    transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"deal_id": 42}))
    client = HttpDealCreationClient("https://deals.test", transport=transport)

    assert await client.create_deal(listing, "A") == "42"


@pytest.mark.asyncio
async def test_http_client_client_error_not_retried(listing):
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400, json={"error": "bad listing"})

    client = HttpDealCreationClient("https://deals.test", transport=httpx.MockTransport(handler))

    with pytest.raises(DealCreationError) as exc_info:
        await client.create_deal(listing, "A")

    assert calls == 1
    assert exc_info.value.context == {"listing_id": "L1"}


@pytest.mark.asyncio
async def test_http_client_missing_id_raises(listing):
    transport = httpx.MockTransport(lambda r: httpx.Response(200, json={}))
    client = HttpDealCreationClient("https://deals.test", transport=transport)

    with pytest.raises(DealCreationError):
        await client.create_deal(listing, "A")


@pytest.mark.asyncio
async def test_http_client_non_json_body_raises(listing):
    transport = httpx.MockTransport(
        lambda r: httpx.Response(200, text="<html>ok</html>", headers={"Content-Type": "text/html"})
    )
    client = HttpDealCreationClient("https://deals.test", transport=transport)

    with pytest.raises(DealCreationError) as exc_info:
        await client.create_deal(listing, "A")

    assert exc_info.value.context == {"listing_id": "L1"}


@pytest.mark.asyncio
async def test_http_client_json_list_body_raises(listing):
    transport = httpx.MockTransport(lambda r: httpx.Response(200, json=["deal-1"]))
    client = HttpDealCreationClient("https://deals.test", transport=transport)

    with pytest.raises(DealCreationError, match="not a JSON object"):
        await client.create_deal(listing, "A")


def test_is_transient_classification():
    request = httpx.Request("POST", "https://deals.test/deals")
    server_error = httpx.HTTPStatusError(
        "boom", request=request, response=httpx.Response(503, request=request)
    )
    client_error = httpx.HTTPStatusError(
        "bad", request=request, response=httpx.Response(422, request=request)
    )

    assert _is_transient(server_error)
    assert not _is_transient(client_error)
    assert _is_transient(httpx.ConnectError("refused", request=request))
    assert not _is_transient(ValueError("nope"))


def test_build_deal_client_selects_implementation():
    assert isinstance(build_deal_client(Settings(DEAL_SERVICE_URL="")), LocalDealCreationClient)

    remote = build_deal_client(
        Settings(DEAL_SERVICE_URL="https://deals.test", DEAL_SERVICE_TIMEOUT=5)
    )
    assert isinstance(remote, HttpDealCreationClient)
