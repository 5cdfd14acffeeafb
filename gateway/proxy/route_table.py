"""
Static routing from gateway path prefixes to exchange origins.

Routes are checked in declaration order and the first matching prefix wins, so
more specific prefixes must be declared before broader ones of the same
exchange.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse

from gateway.vars import PRICE_CACHE_TTL, STALE_CACHE_TTL, STATS_CACHE_TTL

ALL_METHODS: FrozenSet[str] = frozenset(
    {"GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"}
)

# Ordered (path substring, fresh ttl) rules; the first hit wins
DEFAULT_TTL_RULES: Tuple[Tuple[str, float], ...] = (("/24hr", STATS_CACHE_TTL),)


@dataclass(frozen=True)
class Route:
    name: str
    prefix: str
    upstream_origin: str
    strip_prefix: str
    web_origin: Optional[str] = None
    methods: FrozenSet[str] = ALL_METHODS
    ttl_fresh: float = PRICE_CACHE_TTL
    ttl_stale: float = STALE_CACHE_TTL
    ttl_rules: Tuple[Tuple[str, float], ...] = DEFAULT_TTL_RULES
    default_query: Tuple[Tuple[str, str], ...] = ()

    @property
    def upstream_host(self) -> str:
        return urlparse(self.upstream_origin).netloc

    def matches(self, method: str, path: str) -> bool:
        return method.upper() in self.methods and path.startswith(self.prefix)

    def rewrite_path(self, path: str) -> str:
        """Strip the gateway segment, keeping the remainder verbatim."""
        remainder = path[len(self.strip_prefix):] if path.startswith(self.strip_prefix) else path
        if not remainder.startswith("/"):
            remainder = "/" + remainder
        return remainder

    def rewrite_query(self, query: str) -> str:
        if not self.default_query:
            return query
        present = {k for k, _ in parse_qsl(query, keep_blank_values=True)}
        missing = [(k, v) for k, v in self.default_query if k not in present]
        if not missing:
            return query
        extra = urlencode(missing)
        return f"{query}&{extra}" if query else extra

    def upstream_url(self, path: str, query: str = "") -> str:
        url = self.upstream_origin.rstrip("/") + self.rewrite_path(path)
        query = self.rewrite_query(query)
        return f"{url}?{query}" if query else url

    def fresh_ttl_for(self, upstream_path: str) -> float:
        for needle, ttl in self.ttl_rules:
            if needle in upstream_path:
                return ttl
        return self.ttl_fresh


class RouteTable:
    def __init__(self, routes: Iterable[Route]):
        self._routes: Tuple[Route, ...] = tuple(routes)

    @property
    def routes(self) -> Tuple[Route, ...]:
        return self._routes

    def resolve(self, method: str, path: str) -> Optional[Route]:
        """Return the first route matching ``path``, or None when nothing does."""
        for route in self._routes:
            if route.matches(method, path):
                return route
        return None


BINANCE_WEB = "https://www.binance.com"
BYBIT_WEB = "https://www.bybit.com"

DEFAULT_ROUTES: Tuple[Route, ...] = (
    Route(
        name="binance-futures-data",
        prefix="/binance/futures/data/",
        upstream_origin="https://fapi.binance.com",
        strip_prefix="/binance",
        web_origin=BINANCE_WEB,
        ttl_fresh=STATS_CACHE_TTL,
    ),
    Route(
        name="binance-fapi",
        prefix="/binance/fapi/",
        upstream_origin="https://fapi.binance.com",
        strip_prefix="/binance",
        web_origin=BINANCE_WEB,
    ),
    Route(
        name="binance-dapi",
        prefix="/binance/dapi/",
        upstream_origin="https://dapi.binance.com",
        strip_prefix="/binance",
        web_origin=BINANCE_WEB,
    ),
    Route(
        name="binance-spot",
        prefix="/binance/",
        upstream_origin="https://api.binance.com",
        strip_prefix="/binance",
        web_origin=BINANCE_WEB,
    ),
    Route(
        name="bybit-tickers",
        prefix="/bybit/v5/market/tickers",
        upstream_origin="https://api.bybit.com",
        strip_prefix="/bybit",
        web_origin=BYBIT_WEB,
        default_query=(("category", "spot"),),
    ),
    Route(
        name="bybit",
        prefix="/bybit/",
        upstream_origin="https://api.bybit.com",
        strip_prefix="/bybit",
        web_origin=BYBIT_WEB,
    ),
    Route(
        name="gate",
        prefix="/gate/",
        upstream_origin="https://api.gateio.ws",
        strip_prefix="/gate",
        web_origin="https://www.gate.io",
    ),
    Route(
        name="mexc",
        prefix="/mexc/",
        upstream_origin="https://api.mexc.com",
        strip_prefix="/mexc",
        web_origin="https://www.mexc.com",
    ),
)


def default_route_table() -> RouteTable:
    return RouteTable(DEFAULT_ROUTES)

