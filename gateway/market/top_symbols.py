"""
Top USDT symbols by 24h quote volume, computed from a single Binance
24h ticker call.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from gateway.proxy.cache import CachedResponse, ResponseCache, cache_key
from gateway.proxy.headers import build_upstream_headers, filter_response_headers
from gateway.vars import STATS_CACHE_TTL, TOP_SYMBOLS_LIMIT

logger = logging.getLogger("uvicorn.error")

TICKER_24H_HOST = "api.binance.com"
TICKER_24H_PATH = "/api/v3/ticker/24hr"
TICKER_24H_URL = f"https://{TICKER_24H_HOST}{TICKER_24H_PATH}"
TOP_SYMBOLS_TIMEOUT = 7.0

# Leveraged tokens such as BTCUPUSDT / BTCDOWNUSDT
EXCLUDED_MARKERS = ("UP", "DOWN")


def _as_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def rank_usdt_symbols(rows: Iterable[Dict[str, Any]], limit: int = TOP_SYMBOLS_LIMIT) -> List[str]:
    ranked = []
    for row in rows:
        symbol = row.get("symbol") if isinstance(row, dict) else None
        if not isinstance(symbol, str) or not symbol.endswith("USDT"):
            continue
        if any(marker in symbol for marker in EXCLUDED_MARKERS):
            continue
        quote_volume = _as_float(row.get("quoteVolume"))
        last_price = _as_float(row.get("lastPrice"))
        if quote_volume <= 0 or last_price <= 0:
            continue
        ranked.append((quote_volume, symbol.lower()))

    ranked.sort(key=lambda item: item[0], reverse=True)
    return [symbol for _, symbol in ranked[:limit]]


async def fetch_top_symbols(
    client: httpx.AsyncClient,
    cache: Optional[ResponseCache] = None,
    limit: int = TOP_SYMBOLS_LIMIT,
) -> List[str]:
    """
    Return the ``limit`` most traded USDT symbols, lower-cased.

    The 24h ticker payload is shared with the proxied ``/binance/api/v3/ticker/24hr``
    route through the response cache. Any failure yields an empty list.
    """
    key = cache_key("GET", TICKER_24H_HOST + TICKER_24H_PATH)
    try:
        hit = cache.get(key, STATS_CACHE_TTL) if cache is not None else None
        if hit is not None:
            body = hit.payload.body
        else:
            response = await client.get(
                TICKER_24H_URL,
                headers=build_upstream_headers({}, TICKER_24H_HOST),
                timeout=TOP_SYMBOLS_TIMEOUT,
            )
            response.raise_for_status()
            body = response.content
            if cache is not None:
                cache.put(
                    key,
                    CachedResponse(
                        status_code=response.status_code,
                        headers=filter_response_headers(response.headers.items()),
                        body=body,
                    ),
                )
        rows = json.loads(body)
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"[TopSymbols] Fetch error: {e!r}")
        return []

    if not isinstance(rows, list):
        logger.error(f"[TopSymbols] Unexpected payload type: {type(rows).__name__}")
        return []

    symbols = rank_usdt_symbols(rows, limit)
    logger.info(f"[TopSymbols] Generated top {limit} symbols ({len(symbols)})")
    return symbols
