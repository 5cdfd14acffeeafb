"""
Header sanitizing for upstream requests and downstream responses.

Both functions are pure: the output depends only on the arguments, which keeps
them testable without any network I/O.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from gateway.vars import (
    DEFAULT_ACCEPT,
    DEFAULT_ACCEPT_LANGUAGE,
    DEFAULT_USER_AGENT,
)

# Hop-by-hop headers that should NOT be forwarded (RFC 7230)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "proxy-connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Headers that would reveal the gateway or the original client to the upstream
PROXY_IDENTIFYING_HEADERS = frozenset(
    {
        "host",
        "forwarded",
        "via",
        "x-real-ip",
        "true-client-ip",
        "cf-connecting-ip",
    }
)

PROXY_IDENTIFYING_PREFIXES = (
    "x-forwarded-",
    "x-original-",
    "sec-fetch-",
    "sec-ch-",
    "cf-",
)

# The gateway re-streams bodies as it decoded them, so sizes/encodings change
RESPONSE_DROP_HEADERS = HOP_BY_HOP_HEADERS | frozenset(
    {"content-encoding", "content-length"}
)

# Content codings httpx decodes without optional extras; relayed bodies are always decoded
DECODABLE_ENCODINGS = "gzip, deflate"

HeaderInput = Union[Mapping[str, str], Iterable[Tuple[str, str]]]
HeaderPairs = List[Tuple[str, str]]


def _items(headers: HeaderInput) -> Iterable[Tuple[str, str]]:
    if hasattr(headers, "items"):
        return headers.items()
    return headers


def _is_dropped(name_lower: str) -> bool:
    if name_lower in HOP_BY_HOP_HEADERS or name_lower in PROXY_IDENTIFYING_HEADERS:
        return True
    return name_lower.startswith(PROXY_IDENTIFYING_PREFIXES)


def build_upstream_headers(
    inbound_headers: HeaderInput,
    target_host: str,
    hardened_origin: Optional[str] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> Dict[str, str]:
    """
    Turn inbound request headers into headers that are safe to send upstream.

    Hop-by-hop and proxy-identifying headers are removed, ``host`` is pinned to
    ``target_host`` and browser-like defaults are injected where missing. When
    ``hardened_origin`` is given the endpoint is treated as aggressively
    filtered: ``referer``/``origin`` are forced to the exchange's own web
    origin and compression is disabled. Otherwise ``accept-encoding`` is
    pinned to the codings the relay can decode.
    """
    headers: Dict[str, str] = {}

    # Names are lower-cased so later lookups are case-insensitive
    for name, value in _items(inbound_headers):
        name_lower = name.lower()
        if _is_dropped(name_lower):
            continue
        headers[name_lower] = value

    headers["host"] = target_host

    if not headers.get("user-agent"):
        headers["user-agent"] = user_agent
    if not headers.get("accept"):
        headers["accept"] = DEFAULT_ACCEPT
    if not headers.get("accept-language"):
        headers["accept-language"] = DEFAULT_ACCEPT_LANGUAGE

    if hardened_origin:
        origin = hardened_origin.rstrip("/")
        headers["referer"] = origin + "/"
        headers["origin"] = origin
        headers["accept-encoding"] = "identity"
    else:
        headers["accept-encoding"] = DECODABLE_ENCODINGS

    return headers


def filter_response_headers(headers: HeaderInput) -> HeaderPairs:
    """
    Drop hop-by-hop and re-encoding sensitive headers from an upstream response.
    Pairs are kept in order, so repeated headers such as ``set-cookie`` survive.
    """
    return [
        (name, value)
        for name, value in _items(headers)
        if name.lower() not in RESPONSE_DROP_HEADERS
    ]


def is_hardened_path(upstream_path: str, hardened_prefixes: Iterable[str]) -> bool:
    return any(upstream_path.startswith(prefix) for prefix in hardened_prefixes)


# The websocket client library generates its own handshake headers
TUNNEL_DROP_HEADERS = frozenset(
    {
        "host",
        "user-agent",
        "origin",
        "accept-encoding",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
        "content-length",
    }
)


def build_tunnel_headers(
    inbound_headers: HeaderInput, target_host: str
) -> HeaderPairs:
    """Extra headers for an upstream WebSocket handshake (user agent is passed separately)."""
    headers = build_upstream_headers(inbound_headers, target_host)
    return [
        (name, value)
        for name, value in headers.items()
        if name not in TUNNEL_DROP_HEADERS
    ]
