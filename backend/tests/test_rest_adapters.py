from __future__ import annotations

import asyncio

import httpx
import pytest

from discovery.adapters.birdeye_adapter import BirdeyeAdapter
from discovery.adapters.dextools_adapter import DextoolsAdapter, extract_token
from discovery.core.errors import FailureKind

from conftest import GENEROUS_LIMIT


def _birdeye(handler, manager, clock) -> BirdeyeAdapter:
    adapter = BirdeyeAdapter(api_key="k3y", transport=httpx.MockTransport(handler), clock=clock)
    manager.register_source(adapter, GENEROUS_LIMIT)
    adapter.bind(manager, _noop_sink)
    return adapter


async def _noop_sink(raw):
    return None


def test_birdeye_parses_tokens_and_skips_malformed(manager, clock):
    seen_requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_requests.append(request)
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {
                    "tokens": [
                        {"address": "MintA", "symbol": "AAA", "name": "Alpha", "price": 0.01, "liquidity": 5000, "mc": 90000, "holder": 12},
                        {"symbol": "NOADDR"},
                        {"address": "MintB"},
                    ]
                },
            },
        )

    adapter = _birdeye(handler, manager, clock)
    items = asyncio.run(adapter.discover())

    assert [i.mint for i in items] == ["MintA", "MintB"]
    assert items[0].initial_liquidity == 5000.0
    assert items[0].metadata["holders"] == 12
    assert items[1].symbol == "UNKNOWN" and items[1].name == "Unknown Token"

    request = seen_requests[0]
    assert request.url.path == "/defi/v3/token/new"
    assert request.url.params["chain"] == "solana"
    assert request.url.params["limit"] == "50"
    assert request.headers["X-API-KEY"] == "k3y"
    assert manager.get_health("birdeye").last_successful_discovery == clock.now()


def test_birdeye_unsuccessful_body_is_empty_not_error(manager, clock):
    adapter = _birdeye(lambda r: httpx.Response(200, json={"success": False}), manager, clock)
    assert asyncio.run(adapter.discover()) == []
    assert manager.get_health("birdeye").consecutive_failures == 0


@pytest.mark.parametrize(
    ("status", "headers", "kind"),
    [
        (429, {"Retry-After": "120"}, FailureKind.RATE_LIMITED),
        (401, {}, FailureKind.AUTH),
        (403, {}, FailureKind.AUTH),
        (503, {}, FailureKind.TRANSIENT),
    ],
)
def test_birdeye_status_mapping(manager, clock, status, headers, kind):
    adapter = _birdeye(lambda r: httpx.Response(status, headers=headers), manager, clock)
    assert asyncio.run(adapter.discover()) == []
    health = manager.get_health("birdeye")
    assert health.last_failure_kind == kind
    assert health.is_healthy is (kind != FailureKind.AUTH)


def test_birdeye_network_error_is_transient(manager, clock):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    adapter = _birdeye(handler, manager, clock)
    assert asyncio.run(adapter.discover()) == []
    assert manager.get_health("birdeye").last_failure_kind == FailureKind.TRANSIENT


def test_birdeye_non_json_body_is_a_failure(manager, clock):
    adapter = _birdeye(lambda r: httpx.Response(200, text="<html>"), manager, clock)
    assert asyncio.run(adapter.discover()) == []
    assert manager.get_health("birdeye").consecutive_failures == 1


def test_extract_token_skips_quote_side():
    pool = {
        "address": "Pool1",
        "token0": {"address": "So11111111111111111111111111111111111111112", "symbol": "SOL", "name": "Wrapped SOL"},
        "token1": {"address": "MintX", "symbol": "XYZ", "name": "Xyz"},
    }
    assert extract_token(pool) == {"address": "MintX", "symbol": "XYZ", "name": "Xyz"}

    quote_only = {"address": "Pool2", "symbol": "SOL-USDC", "name": "SOL/USDC",
                  "token0": {"address": "So1", "symbol": "SOL", "name": "SOL"},
                  "token1": {"address": "Usdc", "symbol": "usdc", "name": "USDC"}}
    assert extract_token(quote_only)["address"] == "So1"
    assert extract_token({"address": "Pool3"}) is None


def _dextools(handler, manager, clock, **kwargs) -> DextoolsAdapter:
    adapter = DextoolsAdapter(api_key="dk", transport=httpx.MockTransport(handler), clock=clock, **kwargs)
    manager.register_source(adapter, GENEROUS_LIMIT)
    adapter.bind(manager, _noop_sink)
    return adapter


def _pool(address: str, mint: str, liquidity: float) -> dict:
    return {
        "address": address,
        "liquidity": liquidity,
        "price": 0.5,
        "creationTime": "2024-01-01T00:00:00Z",
        "token0": {"address": mint, "symbol": mint.upper(), "name": mint},
        "token1": {"address": "So1", "symbol": "SOL", "name": "SOL"},
    }


def test_dextools_merges_endpoints_and_filters_liquidity(manager, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-API-Key"] == "dk"
        if request.url.path.endswith("/new"):
            assert request.url.params["sort"] == "creationTime"
            return httpx.Response(200, json={"statusCode": 200, "data": {"results": [_pool("P1", "new1", 5000), _pool("P2", "dust", 10)]}})
        assert request.url.params["sort"] == "volume"
        return httpx.Response(200, json={"statusCode": 200, "data": {"results": [_pool("P3", "hot1", 50000)]}})

    adapter = _dextools(handler, manager, clock, min_liquidity=1000)
    items = asyncio.run(adapter.discover())

    assert sorted(i.mint for i in items) == ["hot1", "new1"]
    by_mint = {i.mint: i for i in items}
    assert by_mint["new1"].metadata["endpoint"] == "new_pairs"
    assert by_mint["hot1"].metadata["dextools_url"].endswith("/P3")


def test_dextools_one_endpoint_failing_keeps_the_other(manager, clock):
    def handler(request):
        if request.url.path.endswith("/hot"):
            return httpx.Response(500)
        return httpx.Response(200, json={"statusCode": 200, "data": {"results": [_pool("P1", "new1", 5000)]}})

    adapter = _dextools(handler, manager, clock)
    assert [i.mint for i in asyncio.run(adapter.discover())] == ["new1"]
    assert manager.get_health("dextools").consecutive_failures == 0


def test_dextools_both_failing_reports_most_severe(manager, clock):
    def handler(request):
        if request.url.path.endswith("/hot"):
            return httpx.Response(500)
        return httpx.Response(403)

    adapter = _dextools(handler, manager, clock)
    assert asyncio.run(adapter.discover()) == []
    health = manager.get_health("dextools")
    assert health.last_failure_kind == FailureKind.AUTH
    assert not health.is_healthy
