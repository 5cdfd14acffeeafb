"""
WebSocket tunnel engine.

Each inbound upgrade gets one ``Tunnel``: the upstream socket is opened first
and the inbound handshake is completed only once the upstream leg is open.
Frames are then relayed in both directions until either leg closes or fails,
at which point the other leg is closed too.

Tunnel lifecycle::

    CONNECTING --upstream open--> OPEN --either leg ends--> CLOSING --> CLOSED
    CONNECTING --upstream failed------------------------------------> CLOSED
"""

import asyncio
import contextlib
import enum
import logging
from typing import Callable, Optional
from urllib.parse import urlparse

from aiohttp import WSMsgType
from fastapi import WebSocket, WebSocketDisconnect
from opentelemetry import trace
from prometheus_client import Gauge
from starlette.websockets import WebSocketState

from gateway.proxy.headers import build_tunnel_headers
from gateway.tunnel.targets import WsTargetTable, default_ws_targets
from gateway.tunnel.upstream import open_upstream
from gateway.utils.exception_logging import log_exception_with_details
from gateway.vars import DEFAULT_USER_AGENT, WS_OPEN_TIMEOUT

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

ACTIVE_TUNNELS = Gauge("gateway_active_tunnels", "Live WebSocket tunnels")

# Close codes sent to the client leg
CLOSE_NORMAL = 1000
CLOSE_POLICY = 1008
CLOSE_UPSTREAM_ERROR = 1011


class TunnelState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseReason(str, enum.Enum):
    CLIENT_CLOSED = "client_closed"
    CLIENT_ERROR = "client_error"
    UPSTREAM_CLOSED = "upstream_closed"
    UPSTREAM_ERROR = "upstream_error"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


TRANSITIONS = {
    TunnelState.CONNECTING: {TunnelState.OPEN, TunnelState.CLOSED},
    TunnelState.OPEN: {TunnelState.CLOSING},
    TunnelState.CLOSING: {TunnelState.CLOSED},
    TunnelState.CLOSED: set(),
}


class Tunnel:
    def __init__(self, client: WebSocket, target_url: str):
        self.client = client
        self.target_url = target_url
        self.upstream = None
        self.state = TunnelState.CONNECTING
        self.close_reason: Optional[CloseReason] = None

    def _transition(self, new_state: TunnelState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid tunnel transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(
            f"[Tunnel] {self.target_url}: {self.state.value} -> {new_state.value}"
        )
        self.state = new_state

    def client_is_open(self) -> bool:
        return (
            self.client.client_state == WebSocketState.CONNECTED
            and self.client.application_state == WebSocketState.CONNECTED
        )

    def upstream_is_open(self) -> bool:
        return self.upstream is not None and not self.upstream.closed

    async def reject(self, reason: CloseReason = CloseReason.UPSTREAM_UNAVAILABLE) -> None:
        """Refuse the inbound upgrade; the client never sees a completed handshake."""
        self.close_reason = reason
        self._transition(TunnelState.CLOSED)
        # Closing before accept() makes the server answer the handshake with 403
        with contextlib.suppress(Exception):
            await self.client.close(code=CLOSE_POLICY)

    async def open(self, upstream) -> None:
        self.upstream = upstream
        await self.client.accept(subprotocol=upstream.protocol)
        self._transition(TunnelState.OPEN)

    async def relay(self) -> CloseReason:
        """Pump frames both ways until one leg ends, then tear down the other."""
        to_upstream = asyncio.create_task(self._client_to_upstream())
        to_client = asyncio.create_task(self._upstream_to_client())
        try:
            done, pending = await asyncio.wait(
                {to_upstream, to_client}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            to_upstream.cancel()
            to_client.cancel()
            await self._close_legs(CloseReason.CLIENT_ERROR)
            raise
        finished = done.pop()
        if finished.cancelled():
            reason = CloseReason.CLIENT_ERROR
        elif finished.exception() is not None:
            log_exception_with_details(
                logger, f"[Tunnel] {self.target_url}", finished.exception(), logging.WARNING
            )
            reason = (
                CloseReason.CLIENT_ERROR
                if finished is to_upstream
                else CloseReason.UPSTREAM_ERROR
            )
        else:
            reason = finished.result()

        self.close_reason = reason
        self._transition(TunnelState.CLOSING)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self._close_legs(reason)
        self._transition(TunnelState.CLOSED)
        logger.info(f"[Tunnel] Closed {self.target_url} ({reason.value})")
        return reason

    async def _client_to_upstream(self) -> CloseReason:
        while True:
            try:
                message = await self.client.receive()
            except WebSocketDisconnect:
                return CloseReason.CLIENT_CLOSED
            except RuntimeError:
                return CloseReason.CLIENT_ERROR
            if message["type"] == "websocket.disconnect":
                return CloseReason.CLIENT_CLOSED

            data = message.get("bytes")
            if data is None:
                data = message.get("text")
            if data is None or not self.upstream_is_open():
                continue
            try:
                await self.upstream.send(data)
            except ConnectionError:
                return CloseReason.UPSTREAM_ERROR

    async def _upstream_to_client(self) -> CloseReason:
        while True:
            message = await self.upstream.receive()
            if message.type in (WSMsgType.CLOSE, WSMsgType.CLOSING):
                return CloseReason.UPSTREAM_CLOSED
            if message.type in (WSMsgType.CLOSED, WSMsgType.ERROR):
                # CLOSED without a close frame means the connection was lost
                return CloseReason.UPSTREAM_ERROR
            if not self.client_is_open():
                continue
            try:
                if message.type is WSMsgType.BINARY:
                    await self.client.send_bytes(message.data)
                elif message.type is WSMsgType.TEXT:
                    await self.client.send_text(message.data)
            except (WebSocketDisconnect, RuntimeError, OSError):
                return CloseReason.CLIENT_CLOSED

    async def _close_legs(self, reason: CloseReason) -> None:
        if self.upstream is not None:
            with contextlib.suppress(Exception):
                await self.upstream.close()
        if self.client_is_open():
            code = (
                CLOSE_UPSTREAM_ERROR
                if reason is CloseReason.UPSTREAM_ERROR
                else CLOSE_NORMAL
            )
            with contextlib.suppress(Exception):
                await self.client.close(code=code)


class TunnelEngine:
    def __init__(
        self,
        targets: Optional[WsTargetTable] = None,
        connector: Optional[Callable] = None,
        open_timeout: float = WS_OPEN_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.targets = targets or default_ws_targets()
        self.connector = connector or open_upstream
        self.open_timeout = open_timeout
        self.user_agent = user_agent

    async def open_tunnel(
        self, websocket: WebSocket, path: str, query: str = ""
    ) -> Optional[Tunnel]:
        """
        Open the upstream leg for an inbound upgrade and complete the inbound
        handshake. Returns None when the upgrade was rejected.
        """
        target_url = self.targets.resolve(path, query)
        if target_url is None:
            logger.warning(f"[Tunnel] No relay target for {path}, rejecting upgrade")
            with contextlib.suppress(Exception):
                await websocket.close(code=CLOSE_POLICY)
            return None

        tunnel = Tunnel(websocket, target_url)
        target_host = urlparse(target_url).netloc
        headers = build_tunnel_headers(websocket.headers.items(), target_host)
        headers.append(("user-agent", self.user_agent))
        try:
            upstream = await self.connector(
                target_url,
                headers=headers,
                protocols=websocket.scope.get("subprotocols") or (),
                open_timeout=self.open_timeout,
            )
        except Exception as e:
            logger.warning(f"[Tunnel] Upstream {target_url} failed to open: {e!r}")
            await tunnel.reject()
            return None

        try:
            await tunnel.open(upstream)
        except Exception as e:
            log_exception_with_details(logger, f"[Tunnel] Accepting {path}", e, logging.WARNING)
            tunnel.close_reason = CloseReason.CLIENT_ERROR
            tunnel._transition(TunnelState.CLOSED)
            with contextlib.suppress(Exception):
                await upstream.close()
            return None
        logger.info(f"[Tunnel] Connected {path} -> {target_url}")
        return tunnel

    async def serve(self, websocket: WebSocket, path: str, query: str = "") -> Optional[CloseReason]:
        with tracer.start_as_current_span("ws_tunnel") as span:
            span.set_attribute("tunnel.path", path)
            tunnel = await self.open_tunnel(websocket, path, query)
            if tunnel is None:
                span.set_attribute("tunnel.rejected", True)
                return None
            span.set_attribute("tunnel.upstream_url", tunnel.target_url)
            ACTIVE_TUNNELS.inc()
            try:
                reason = await tunnel.relay()
            finally:
                ACTIVE_TUNNELS.dec()
            span.set_attribute("tunnel.close_reason", reason.value)
            return reason
