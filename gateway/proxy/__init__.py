from .cache import CachedResponse, CacheHit, ResponseCache, cache_key
from .engine import HttpProxyEngine, create_upstream_client
from .rate_tracker import RateLimitTracker
from .route_table import Route, RouteTable, default_route_table

__all__ = [
    "CachedResponse",
    "CacheHit",
    "ResponseCache",
    "cache_key",
    "HttpProxyEngine",
    "create_upstream_client",
    "RateLimitTracker",
    "Route",
    "RouteTable",
    "default_route_table",
]
