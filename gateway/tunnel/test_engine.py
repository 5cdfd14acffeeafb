"""
Tests for the tunnel state machine and the tunnel engine.

Covers:
- Rejection of unknown paths and of upstreams that fail to open
- Handshake ordering (upstream first, then inbound accept)
- Frame relay in both directions, binary and text
- Teardown for client close, client error, upstream close, upstream error
"""

import asyncio

import pytest

from gateway.tunnel.engine import (
    CLOSE_NORMAL,
    CLOSE_POLICY,
    CLOSE_UPSTREAM_ERROR,
    CloseReason,
    Tunnel,
    TunnelEngine,
    TunnelState,
)
from gateway.tunnel.targets import WsTarget, WsTargetTable
from gateway.utils_tests.fake_websockets import FakeClient, FakeConnector, FakeUpstream

TARGETS = WsTargetTable(
    [
        WsTarget(
            "/ws/binance/spot",
            "wss://stream.example.com/ws/!ticker@arr",
            stream_url="wss://stream.example.com/stream",
        )
    ]
)


def make_engine(connector):
    return TunnelEngine(targets=TARGETS, connector=connector, user_agent="test-agent")


class TestOpenTunnel:
    @pytest.mark.asyncio
    async def test_unknown_path_is_rejected_without_upstream(self):
        connector = FakeConnector(upstream=FakeUpstream())
        client = FakeClient()

        tunnel = await make_engine(connector).open_tunnel(client, "/ws/unknown")

        assert tunnel is None
        assert connector.calls == []
        assert client.accepted is False
        assert client.close_code == CLOSE_POLICY

    @pytest.mark.asyncio
    async def test_upstream_failure_never_completes_handshake(self):
        connector = FakeConnector(error=OSError("connection refused"))
        client = FakeClient()

        tunnel = await make_engine(connector).open_tunnel(client, "/ws/binance/spot")

        assert tunnel is None
        assert client.accepted is False
        assert client.close_code == CLOSE_POLICY

    @pytest.mark.asyncio
    async def test_handshake_timeout_is_rejected(self):
        connector = FakeConnector(error=asyncio.TimeoutError())
        client = FakeClient()

        tunnel = await make_engine(connector).open_tunnel(client, "/ws/binance/spot")

        assert tunnel is None
        assert client.accepted is False

    @pytest.mark.asyncio
    async def test_opens_upstream_then_accepts(self):
        upstream = FakeUpstream()
        connector = FakeConnector(upstream=upstream)
        client = FakeClient(headers={"user-agent": "python", "sec-websocket-key": "abc"})

        tunnel = await make_engine(connector).open_tunnel(client, "/ws/binance/spot")

        assert tunnel is not None
        assert tunnel.state is TunnelState.OPEN
        assert client.accepted is True
        url, kwargs = connector.calls[0]
        assert url == "wss://stream.example.com/ws/!ticker@arr"
        names = [name for name, _ in kwargs["headers"]]
        assert ("user-agent", "test-agent") in kwargs["headers"]
        assert names.count("user-agent") == 1
        assert "sec-websocket-key" not in names
        assert "host" not in names

    @pytest.mark.asyncio
    async def test_query_selects_stream_endpoint(self):
        connector = FakeConnector(upstream=FakeUpstream())

        await make_engine(connector).open_tunnel(
            FakeClient(), "/ws/binance/spot", "streams=btcusdt@trade"
        )

        assert connector.calls[0][0] == (
            "wss://stream.example.com/stream?streams=btcusdt@trade"
        )


class TestRelay:
    @pytest.mark.asyncio
    async def test_binary_frames_reach_upstream_in_order(self):
        frames = [b"\x00\x01", b"\x02", b"\xff\xfe\xfd"]
        upstream = FakeUpstream(close_after=3)
        client = FakeClient()
        for frame in frames:
            client.push_bytes(frame)

        tunnel = await make_engine(FakeConnector(upstream=upstream)).open_tunnel(
            client, "/ws/binance/spot"
        )
        reason = await asyncio.wait_for(tunnel.relay(), timeout=5)

        assert upstream.received == frames
        assert all(isinstance(frame, bytes) for frame in upstream.received)
        assert reason is CloseReason.UPSTREAM_CLOSED
        assert client.close_code == CLOSE_NORMAL
        assert tunnel.state is TunnelState.CLOSED

    @pytest.mark.asyncio
    async def test_upstream_messages_reach_client(self):
        upstream = FakeUpstream(scripted=[b"\x10\x20", '{"e":"24hrTicker"}'], close_after=0)
        client = FakeClient()

        tunnel = await make_engine(FakeConnector(upstream=upstream)).open_tunnel(
            client, "/ws/binance/spot"
        )
        await asyncio.wait_for(tunnel.relay(), timeout=5)

        assert client.sent == [b"\x10\x20", '{"e":"24hrTicker"}']

    @pytest.mark.asyncio
    async def test_client_close_closes_upstream(self):
        upstream = FakeUpstream()
        client = FakeClient()
        client.push_text("ping")
        client.push_disconnect()

        tunnel = await make_engine(FakeConnector(upstream=upstream)).open_tunnel(
            client, "/ws/binance/spot"
        )
        reason = await asyncio.wait_for(tunnel.relay(), timeout=5)

        assert reason is CloseReason.CLIENT_CLOSED
        assert upstream.received == ["ping"]
        assert upstream.closed is True
        assert tunnel.state is TunnelState.CLOSED

    @pytest.mark.asyncio
    async def test_client_error_closes_upstream(self):
        upstream = FakeUpstream()
        client = FakeClient()
        client.push_error(RuntimeError("socket broke"))

        tunnel = await make_engine(FakeConnector(upstream=upstream)).open_tunnel(
            client, "/ws/binance/spot"
        )
        reason = await asyncio.wait_for(tunnel.relay(), timeout=5)

        assert reason is CloseReason.CLIENT_ERROR
        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_upstream_error_closes_client(self):
        upstream = FakeUpstream(scripted=["last"], fail_after_script=True)
        client = FakeClient()

        tunnel = await make_engine(FakeConnector(upstream=upstream)).open_tunnel(
            client, "/ws/binance/spot"
        )
        reason = await asyncio.wait_for(tunnel.relay(), timeout=5)

        assert reason is CloseReason.UPSTREAM_ERROR
        assert client.sent == ["last"]
        assert client.close_code == CLOSE_UPSTREAM_ERROR

    @pytest.mark.asyncio
    async def test_frames_are_dropped_when_upstream_not_open(self):
        upstream = FakeUpstream()
        client = FakeClient()
        client.push_bytes(b"late")
        client.push_disconnect()

        tunnel = await make_engine(FakeConnector(upstream=upstream)).open_tunnel(
            client, "/ws/binance/spot"
        )
        upstream.closed = True
        await asyncio.wait_for(tunnel.relay(), timeout=5)

        assert upstream.received == []


class TestTunnelStateMachine:
    def test_invalid_transition_raises(self):
        tunnel = Tunnel(FakeClient(), "wss://example")
        tunnel.state = TunnelState.CLOSED

        with pytest.raises(RuntimeError):
            tunnel._transition(TunnelState.OPEN)

    def test_open_cannot_skip_closing(self):
        tunnel = Tunnel(FakeClient(), "wss://example")
        tunnel.state = TunnelState.OPEN

        with pytest.raises(RuntimeError):
            tunnel._transition(TunnelState.CLOSED)

    @pytest.mark.asyncio
    async def test_reject_moves_straight_to_closed(self):
        client = FakeClient()
        tunnel = Tunnel(client, "wss://example")

        await tunnel.reject()

        assert tunnel.state is TunnelState.CLOSED
        assert tunnel.close_reason is CloseReason.UPSTREAM_UNAVAILABLE
        assert client.accepted is False
