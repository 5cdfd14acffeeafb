"""Exact-match table of WebSocket relay paths and their upstream streams."""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional


@dataclass(frozen=True)
class WsTarget:
    path: str
    url: str
    # Endpoint taking the stream selection as a query string, when it differs
    stream_url: Optional[str] = None

    def upstream_url(self, query: str = "") -> str:
        if not query:
            return self.url
        return f"{self.stream_url or self.url}?{query}"


class WsTargetTable:
    def __init__(self, targets: Iterable[WsTarget]):
        self._targets: Dict[str, WsTarget] = {t.path: t for t in targets}

    def paths(self):
        return list(self._targets)

    def resolve(self, path: str, query: str = "") -> Optional[str]:
        target = self._targets.get(path)
        if target is None:
            return None
        return target.upstream_url(query)


DEFAULT_WS_TARGETS = (
    WsTarget(
        "/ws/binance/spot",
        "wss://stream.binance.com:9443/ws/!ticker@arr",
        stream_url="wss://stream.binance.com:9443/stream",
    ),
    WsTarget(
        "/ws/binance/futures",
        "wss://fstream.binance.com/ws/!ticker@arr",
        stream_url="wss://fstream.binance.com/stream",
    ),
    WsTarget("/ws/bybit", "wss://stream.bybit.com/v5/public/spot"),
    WsTarget("/ws/bybit/futures", "wss://stream.bybit.com/v5/public/linear"),
    WsTarget("/ws/mexc", "wss://wbs.mexc.com/ws"),
    WsTarget("/ws/gate", "wss://api.gateio.ws/ws/v4/"),
)


def default_ws_targets() -> WsTargetTable:
    return WsTargetTable(DEFAULT_WS_TARGETS)
