import json

import httpx
import pytest

from gateway.market import fetch_top_symbols, rank_usdt_symbols
from gateway.proxy import ResponseCache, cache_key
from gateway.proxy.cache import CachedResponse

ROWS = [
    {"symbol": "BTCUSDT", "quoteVolume": "900000000", "lastPrice": "67000"},
    {"symbol": "ETHUSDT", "quoteVolume": "500000000", "lastPrice": "3500"},
    {"symbol": "BTCUPUSDT", "quoteVolume": "990000000", "lastPrice": "10"},
    {"symbol": "ETHDOWNUSDT", "quoteVolume": "980000000", "lastPrice": "1"},
    {"symbol": "ETHBTC", "quoteVolume": "999999999", "lastPrice": "0.05"},
    {"symbol": "SOLUSDT", "quoteVolume": "700000000", "lastPrice": "150"},
    {"symbol": "DEADUSDT", "quoteVolume": "0", "lastPrice": "1"},
    {"symbol": "NOPRICEUSDT", "quoteVolume": "100", "lastPrice": None},
]


class TestRank:
    def test_orders_by_quote_volume_and_filters(self):
        assert rank_usdt_symbols(ROWS, 10) == ["btcusdt", "solusdt", "ethusdt"]

    def test_limit(self):
        assert rank_usdt_symbols(ROWS, 1) == ["btcusdt"]

    def test_ignores_malformed_rows(self):
        assert rank_usdt_symbols([None, {}, {"symbol": 5}, "x"], 10) == []


def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetches_and_caches_ticker(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=ROWS)

        cache = ResponseCache()
        async with client_for(handler) as client:
            first = await fetch_top_symbols(client, cache, limit=2)
            second = await fetch_top_symbols(client, cache, limit=2)

        assert first == second == ["btcusdt", "solusdt"]
        assert len(calls) == 1
        assert str(calls[0].url) == "https://api.binance.com/api/v3/ticker/24hr"
        assert calls[0].headers["host"] == "api.binance.com"

    @pytest.mark.asyncio
    async def test_uses_payload_cached_by_proxy(self):
        cache = ResponseCache()
        cache.put(
            cache_key("GET", "api.binance.com/api/v3/ticker/24hr"),
            CachedResponse(status_code=200, body=json.dumps(ROWS).encode()),
        )

        def handler(request):
            raise AssertionError("upstream must not be called")

        async with client_for(handler) as client:
            symbols = await fetch_top_symbols(client, cache)

        assert symbols == ["btcusdt", "solusdt", "ethusdt"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(429, json={"code": -1003}),
            httpx.Response(200, text="<html>not json</html>"),
            httpx.Response(200, json={"code": 0, "msg": "not a list"}),
        ],
    )
    async def test_failures_yield_empty_list(self, response):
        async with client_for(lambda request: response) as client:
            assert await fetch_top_symbols(client) == []

    @pytest.mark.asyncio
    async def test_network_error_yields_empty_list(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        async with client_for(handler) as client:
            assert await fetch_top_symbols(client) == []
