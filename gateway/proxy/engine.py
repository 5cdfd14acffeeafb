"""
HTTP proxy engine: answers each inbound request from the cache or from the
upstream exchange, translating every upstream failure into a structured
gateway error.
"""

import asyncio
import functools
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace
from prometheus_client import Counter
from starlette.types import Receive, Scope, Send

from gateway.errors import (
    GatewayError,
    InternalError,
    RouteNotFound,
    UpstreamBlocked,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from gateway.proxy.cache import CachedResponse, CacheHit, ResponseCache, cache_key
from gateway.proxy.headers import (
    HeaderPairs,
    build_upstream_headers,
    filter_response_headers,
    is_hardened_path,
)
from gateway.proxy.rate_tracker import RateLimitTracker
from gateway.proxy.route_table import Route, RouteTable, default_route_table
from gateway.utils import body_preview
from gateway.utils.exception_logging import log_exception_with_details
from gateway.utils.traced_requests import traced_request
from gateway.vars import (
    DIAGNOSTIC_PEEK_BYTES,
    RETRY_AFTER_SECONDS,
    UPSTREAM_TIMEOUT,
    WAF_HARDENED_PREFIXES,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

CACHEABLE_METHODS = frozenset({"GET", "HEAD"})
CACHE_STATUS_HEADER = "X-Cache-Status"

CACHE_EVENTS = Counter(
    "gateway_cache_events_total", "Cache outcomes of proxied requests", ["outcome"]
)
UPSTREAM_REJECTIONS = Counter(
    "gateway_upstream_rejections_total", "Upstream 429 responses", ["route"]
)

# Connection pool limits
UPSTREAM_MAX_CONNECTIONS = 100
UPSTREAM_MAX_KEEPALIVE = 20


def create_upstream_client(timeout: float = UPSTREAM_TIMEOUT) -> httpx.AsyncClient:
    """Shared AsyncClient for all upstream calls; the caller owns closing it."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        limits=httpx.Limits(
            max_connections=UPSTREAM_MAX_CONNECTIONS,
            max_keepalive_connections=UPSTREAM_MAX_KEEPALIVE,
        ),
        follow_redirects=False,  # Redirects are the client's business
    )


class RelayedResponse(StreamingResponse):
    """
    Streaming response over an open upstream body. ``on_close`` runs once the
    ASGI call ends for any reason, including a client that disconnects before
    the first body chunk is pulled from the iterator.
    """

    def __init__(self, content, on_close: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self.on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            try:
                await self.body_iterator.aclose()
            finally:
                await self.on_close()


def _with_headers(response: Response, headers: HeaderPairs) -> Response:
    for name, value in headers:
        response.headers.append(name, value)
    return response


def looks_like_html(content_type: str, head: bytes) -> bool:
    if "html" in (content_type or "").lower():
        return True
    start = head.lstrip()[:15].lower()
    return start.startswith(b"<!doctype") or start.startswith(b"<html")


class HttpProxyEngine:
    def __init__(
        self,
        client: httpx.AsyncClient,
        routes: Optional[RouteTable] = None,
        cache: Optional[ResponseCache] = None,
        rate_tracker: Optional[RateLimitTracker] = None,
        timeout: float = UPSTREAM_TIMEOUT,
        retry_after: int = RETRY_AFTER_SECONDS,
        hardened_prefixes: Iterable[str] = WAF_HARDENED_PREFIXES,
        peek_bytes: int = DIAGNOSTIC_PEEK_BYTES,
    ):
        self.client = client
        self.routes = routes or default_route_table()
        self.cache = cache or ResponseCache()
        self.rate_tracker = rate_tracker or RateLimitTracker()
        self.timeout = timeout
        self.retry_after = retry_after
        self.hardened_prefixes = tuple(hardened_prefixes)
        self.peek_bytes = peek_bytes
        # cache key -> event set once the leading fetch for that key settles
        self._inflight: Dict[str, asyncio.Event] = {}

    async def handle(self, request: Request) -> Response:
        """Answer one inbound request. Never raises."""
        try:
            return await self._handle(request)
        except GatewayError as e:
            return e.to_response()
        except Exception as e:
            log_exception_with_details(
                logger, f"[Proxy] {request.method} {request.url.path}", e
            )
            return InternalError().to_response()

    async def _handle(self, request: Request) -> Response:
        method = request.method.upper()
        path = request.url.path
        query = request.url.query

        route = self.routes.resolve(method, path)
        if route is None:
            raise RouteNotFound(path)

        upstream_path = route.rewrite_path(path)
        upstream_url = route.upstream_url(path, query)
        key = cache_key(
            method, route.upstream_host + upstream_path, route.rewrite_query(query)
        )
        ttl_fresh = route.fresh_ttl_for(upstream_path)
        cacheable = method in CACHEABLE_METHODS

        with traced_request(
            tracer,
            "proxy_request",
            start_message=f"[Proxy] {method} {path} -> {upstream_url}",
            extra_attrs={
                "proxy.route": route.name,
                "proxy.method": method,
                "proxy.upstream_url": upstream_url,
            },
        ) as span:
            if not cacheable:
                span.set_attribute("proxy.cache", "bypass")
                return await self._forward(
                    request, route, upstream_path, upstream_url, key, ttl_fresh, span
                )

            hit = self.cache.get(key, ttl_fresh, allow_stale=True, ttl_stale=route.ttl_stale)
            if hit is not None and not hit.is_stale:
                return self._serve_cached(hit, span)

            pending = self._inflight.get(key)
            if pending is not None:
                hit = await self._follow(key, pending, ttl_fresh)
                if hit is not None:
                    return self._serve_cached(hit, span)

            done = asyncio.Event()
            self._inflight[key] = done
            try:
                response = await self._forward(
                    request, route, upstream_path, upstream_url, key, ttl_fresh, span, done
                )
            except BaseException:
                self._release(key, done)
                raise
            if not isinstance(response, RelayedResponse):
                self._release(key, done)
            return response

    async def _follow(
        self, key: str, pending: asyncio.Event, ttl_fresh: float
    ) -> Optional[CacheHit]:
        """Wait for the in-flight fetch of ``key`` and return what it cached."""
        try:
            await asyncio.wait_for(pending.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Proxy] Gave up waiting for in-flight fetch of {key}")
            self._release(key, pending)
            return None
        return self.cache.get(key, ttl_fresh)

    def _release(self, key: str, done: Optional[asyncio.Event]) -> None:
        if done is None:
            return
        if self._inflight.get(key) is done:
            del self._inflight[key]
        done.set()

    def _serve_cached(self, hit: CacheHit, span) -> Response:
        status = "stale" if hit.is_stale else "hit"
        span.set_attribute("proxy.cache", status)
        CACHE_EVENTS.labels(outcome=status).inc()
        payload: CachedResponse = hit.payload
        span.set_attribute("proxy.status_code", payload.status_code)
        response = _with_headers(
            Response(content=payload.body, status_code=payload.status_code),
            payload.headers,
        )
        response.headers[CACHE_STATUS_HEADER] = status
        if hit.is_stale:
            response.headers["X-Cache-Age"] = f"{hit.age:.1f}"
        return response

    def _request_body(self, request: Request):
        if "content-length" in request.headers or "transfer-encoding" in request.headers:
            return request.stream()
        return None

    async def _forward(
        self,
        request: Request,
        route: Route,
        upstream_path: str,
        upstream_url: str,
        key: str,
        ttl_fresh: float,
        span,
        done: Optional[asyncio.Event] = None,
    ) -> Response:
        hardened = is_hardened_path(upstream_path, self.hardened_prefixes)
        headers = build_upstream_headers(
            request.headers.items(),
            route.upstream_host,
            hardened_origin=route.web_origin if hardened else None,
        )
        upstream_request = self.client.build_request(
            request.method,
            upstream_url,
            headers=headers,
            content=self._request_body(request),
        )

        try:
            upstream = await asyncio.wait_for(
                self.client.send(upstream_request, stream=True), timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"[Proxy] Timeout after {self.timeout}s for {upstream_url}: {e!r}")
            span.set_attribute("proxy.error", "timeout")
            raise UpstreamTimeout(route.upstream_host, self.timeout)
        except httpx.TransportError as e:
            logger.error(f"[Proxy] Failed to reach {upstream_url}: {e!r}")
            span.set_attribute("proxy.error", "unreachable")
            raise UpstreamUnreachable(route.upstream_host)

        try:
            return await self._relay(
                request, route, upstream, upstream_path, upstream_url, key, ttl_fresh, span, done
            )
        except BaseException:
            await upstream.aclose()
            raise

    async def _relay(
        self,
        request: Request,
        route: Route,
        upstream: httpx.Response,
        upstream_path: str,
        upstream_url: str,
        key: str,
        ttl_fresh: float,
        span,
        done: Optional[asyncio.Event],
    ) -> Response:
        status = upstream.status_code
        span.set_attribute("proxy.status_code", status)

        if status == 429:
            await upstream.aclose()
            return self._on_rate_limited(route, upstream_path, key, ttl_fresh, span)

        chunks = upstream.aiter_bytes()
        head = b""
        if status == 403:
            head = await self._peek(chunks)
            if looks_like_html(upstream.headers.get("content-type", ""), head):
                await upstream.aclose()
                logger.warning(
                    f"[Proxy] Blocked by {route.upstream_host} for {upstream_url}: "
                    f"{body_preview(head, self.peek_bytes)}"
                )
                span.set_attribute("proxy.error", "blocked")
                raise UpstreamBlocked(route.upstream_host)

        store = request.method.upper() in CACHEABLE_METHODS and 200 <= status < 400
        response_headers = filter_response_headers(upstream.headers.items())
        span.set_attribute("proxy.cache", "miss")
        CACHE_EVENTS.labels(outcome="miss").inc()
        response = _with_headers(
            RelayedResponse(
                self._relay_body(
                    upstream, chunks, head, key, response_headers, store, upstream_url, done
                ),
                on_close=functools.partial(self._close_relay, upstream, key, done),
                status_code=status,
            ),
            response_headers,
        )
        response.headers[CACHE_STATUS_HEADER] = "miss"
        return response

    async def _close_relay(
        self, upstream: httpx.Response, key: str, done: Optional[asyncio.Event]
    ) -> None:
        self._release(key, done)
        await upstream.aclose()

    def _on_rate_limited(
        self, route: Route, upstream_path: str, key: str, ttl_fresh: float, span
    ) -> Response:
        endpoint = f"{route.upstream_host}{upstream_path}"
        recent = self.rate_tracker.record(endpoint)
        UPSTREAM_REJECTIONS.labels(route=route.name).inc()
        logger.warning(
            f"[Proxy] Upstream 429 for {endpoint} "
            f"({recent} rejections in the last {self.rate_tracker.window_seconds:.0f}s)"
        )
        span.set_attribute("proxy.error", "rate_limited")

        hit = self.cache.get(key, ttl_fresh, allow_stale=True, ttl_stale=route.ttl_stale)
        if hit is not None:
            logger.warning(f"[Proxy] Serving cached data aged {hit.age:.1f}s for {endpoint}")
            return self._serve_cached(hit, span)
        raise UpstreamRateLimited(endpoint, self.retry_after, recent)

    async def _peek(self, chunks: AsyncIterator[bytes]) -> bytes:
        head = bytearray()
        async for chunk in chunks:
            head.extend(chunk)
            if len(head) >= self.peek_bytes:
                break
        return bytes(head)

    async def _relay_body(
        self,
        upstream: httpx.Response,
        chunks: AsyncIterator[bytes],
        head: bytes,
        key: str,
        response_headers: HeaderPairs,
        store: bool,
        upstream_url: str,
        done: Optional[asyncio.Event],
    ) -> AsyncIterator[bytes]:
        status = upstream.status_code
        body = bytearray() if store else None
        peek = bytearray(head[: self.peek_bytes])
        total = len(head)
        completed = False
        try:
            if head:
                if body is not None:
                    body.extend(head)
                yield head
            async for chunk in chunks:
                total += len(chunk)
                if body is not None:
                    body.extend(chunk)
                if status >= 400 and len(peek) < self.peek_bytes:
                    peek.extend(chunk[: self.peek_bytes - len(peek)])
                yield chunk
            completed = True
        except httpx.HTTPError as e:
            logger.warning(f"[Proxy] Upstream body from {upstream_url} interrupted: {e!r}")
        finally:
            await upstream.aclose()
            if completed and body is not None:
                self.cache.put(
                    key,
                    CachedResponse(
                        status_code=status, headers=response_headers, body=bytes(body)
                    ),
                )
            if status >= 400:
                logger.info(
                    f"[Proxy] Upstream {status} from {upstream_url}: "
                    f"{body_preview(bytes(peek), self.peek_bytes, total)}"
                )
            self._release(key, done)
