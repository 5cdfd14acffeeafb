"""In-memory stand-ins for both legs of a WebSocket tunnel."""

import asyncio

from aiohttp import WSMessage, WSMsgType
from starlette.websockets import WebSocketState


class FakeUpstream:
    """
    Upstream socket double: delivers ``scripted`` messages, then stays open
    until closed, until ``close_after`` frames were received (then sends a
    close frame), or reports a lost connection with ``fail_after_script``.
    """

    def __init__(self, scripted=(), close_after=None, fail_after_script=False):
        self.scripted = list(scripted)
        self.close_after = close_after
        self.fail_after_script = fail_after_script
        self.received = []
        self.closed = False
        self.protocol = None

    async def send(self, data):
        self.received.append(data)

    async def close(self):
        self.closed = True

    async def receive(self):
        if self.scripted:
            data = self.scripted.pop(0)
            if isinstance(data, bytes):
                return WSMessage(WSMsgType.BINARY, data, None)
            return WSMessage(WSMsgType.TEXT, data, None)
        if self.fail_after_script:
            self.closed = True
            return WSMessage(WSMsgType.CLOSED, None, None)
        for _ in range(500):
            if self.closed:
                return WSMessage(WSMsgType.CLOSED, None, None)
            if self.close_after is not None and len(self.received) >= self.close_after:
                self.closed = True
                return WSMessage(WSMsgType.CLOSE, 1000, "")
            await asyncio.sleep(0.01)
        self.closed = True
        return WSMessage(WSMsgType.CLOSE, 1000, "")


class FakeConnector:
    """Callable replacing ``gateway.tunnel.upstream.open_upstream``."""

    def __init__(self, upstream=None, error=None):
        self.upstream = upstream
        self.error = error
        self.calls = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.upstream


class FakeClient:
    """Inbound WebSocket double with the subset of Starlette's API the tunnel uses."""

    def __init__(self, incoming=(), headers=None, subprotocols=None):
        self.incoming = asyncio.Queue()
        for item in incoming:
            self.incoming.put_nowait(item)
        self.headers = headers or {}
        self.scope = {"subprotocols": subprotocols or []}
        self.sent = []
        self.accepted = False
        self.close_code = None
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING

    def push_bytes(self, data: bytes):
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def push_text(self, data: str):
        self.incoming.put_nowait({"type": "websocket.receive", "text": data})

    def push_disconnect(self, code: int = 1000):
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    def push_error(self, error: Exception):
        self.incoming.put_nowait(error)

    async def accept(self, subprotocol=None):
        self.accepted = True
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def receive(self):
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        if item["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return item

    async def send_bytes(self, data: bytes):
        self.sent.append(data)

    async def send_text(self, data: str):
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED
