"""
Upstream leg of a tunnel: an aiohttp client WebSocket together with the
session that owns it.
"""

import asyncio
from typing import Iterable, Optional, Sequence, Tuple, Union

import aiohttp

from gateway.vars import WS_OPEN_TIMEOUT


class UpstreamSocket:
    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self.session = session
        self.ws = ws

    @property
    def closed(self) -> bool:
        return self.ws.closed

    @property
    def protocol(self) -> Optional[str]:
        return self.ws.protocol

    async def send(self, data: Union[bytes, str]) -> None:
        if isinstance(data, bytes):
            await self.ws.send_bytes(data)
        else:
            await self.ws.send_str(data)

    async def receive(self) -> aiohttp.WSMessage:
        return await self.ws.receive()

    async def close(self) -> None:
        try:
            await self.ws.close()
        finally:
            await self.session.close()


async def open_upstream(
    url: str,
    headers: Iterable[Tuple[str, str]] = (),
    protocols: Sequence[str] = (),
    open_timeout: float = WS_OPEN_TIMEOUT,
) -> UpstreamSocket:
    """Open a client WebSocket to ``url``; raises if the handshake does not complete."""
    session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=open_timeout))
    try:
        ws = await asyncio.wait_for(
            session.ws_connect(
                url,
                headers=list(headers),
                protocols=tuple(protocols),
                autoclose=True,
                autoping=True,
            ),
            timeout=open_timeout,
        )
    except BaseException:
        await session.close()
        raise
    return UpstreamSocket(session, ws)
