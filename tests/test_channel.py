"""Tests for TransportChannel reconnect and heartbeat handling."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from livechat_core.backoff import BackoffPolicy
from livechat_core.errors import AuthRejected, ConnectionRefused
from livechat_core.token_store import Credential, TokenStore
from livechat_core.transport.channel import ChannelState, TransportChannel

from .conftest import (
    BASE_TIME,
    FakeWsFactory,
    RecordingSleep,
    chat_frame,
    message_item,
    wait_until,
)

ENDPOINT = "wss://stream.example/ws"


def make_channel(
    factory: FakeWsFactory,
    sleep: RecordingSleep,
    store: TokenStore | None = None,
    **kwargs: Any,
) -> tuple[TransportChannel, list[ChannelState]]:
    if store is None:
        store = TokenStore()
        store.set_credential(Credential(token="tok", endpoint=ENDPOINT))
    kwargs.setdefault("heartbeat_interval", None)
    channel = TransportChannel(
        store,
        backoff=BackoffPolicy(jitter=False),
        client_factory=factory,
        sleep=sleep,
        **kwargs,
    )
    states: list[ChannelState] = []
    channel.on_state_changed(states.append)
    return channel, states


class TestConnect:
    """Tests for the initial connect."""

    @pytest.mark.asyncio
    async def test_connect_subscribes(self, ws_factory, recording_sleep):
        """Test connecting opens the endpoint and sends the subscribe frame."""
        channel, states = make_channel(ws_factory, recording_sleep)

        result = await channel.connect()

        client = ws_factory.current
        assert client.url == ENDPOINT
        assert client.sent == [{"topic": "aws/subscribe", "content": {"topics": ["aws/chat"]}}]
        assert result.url == ENDPOINT
        assert states == [ChannelState.CONNECTING, ChannelState.OPEN]
        assert channel.is_open
        await channel.close()

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_idle(self, recording_sleep):
        factory = FakeWsFactory([AuthRejected("denied")])
        channel, _ = make_channel(factory, recording_sleep)

        with pytest.raises(AuthRejected):
            await channel.connect()

        assert channel.state is ChannelState.IDLE
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_connect_after_close_refused(self, ws_factory, recording_sleep):
        channel, _ = make_channel(ws_factory, recording_sleep)
        await channel.close()

        with pytest.raises(ConnectionRefused):
            await channel.connect()


class TestFrames:
    """Tests for inbound frame forwarding."""

    @pytest.mark.asyncio
    async def test_control_frames_not_forwarded(self, ws_factory, recording_sleep):
        """Test heartbeat and subscribe replies stay inside the channel."""
        channel, _ = make_channel(ws_factory, recording_sleep)
        received: list[dict[str, Any]] = []
        channel.on_frame(received.append)
        await channel.connect()

        chat = chat_frame(message_item("m1", 1))
        ws_factory.current.push({"topic": "aws/heartbeat"})
        ws_factory.current.push({"topic": "aws/subscribe", "content": {"status": "success"}})
        ws_factory.current.push(chat)
        await wait_until(lambda: received)

        assert received == [chat]
        await channel.close()

    @pytest.mark.asyncio
    async def test_frame_handler_error_does_not_stop_listener(self, ws_factory, recording_sleep):
        channel, _ = make_channel(ws_factory, recording_sleep)
        received: list[dict[str, Any]] = []

        def handler(frame: dict[str, Any]) -> None:
            received.append(frame)
            if len(received) == 1:
                raise RuntimeError("boom")

        channel.on_frame(handler)
        await channel.connect()
        ws_factory.current.push(chat_frame(message_item("m1", 1)))
        ws_factory.current.push(chat_frame(message_item("m2", 2)))
        await wait_until(lambda: len(received) == 2)

        assert channel.is_open
        await channel.close()


class TestReconnect:
    """Tests for reconnection with backoff."""

    @pytest.mark.asyncio
    async def test_backoff_delays_until_success(self, recording_sleep):
        """Test two refused attempts then success wait 1, 2 and 4 seconds."""
        refused = ConnectionRefused("unreachable")
        factory = FakeWsFactory([None, refused, refused, None])
        channel, states = make_channel(factory, recording_sleep)
        await channel.connect()

        factory.current.drop()
        await wait_until(lambda: len(factory.connected) == 2 and channel.is_open)

        assert recording_sleep.delays == [1.0, 2.0, 4.0]
        assert channel.reconnect_attempts == 0
        assert states[-2:] == [ChannelState.RECONNECTING, ChannelState.OPEN]
        assert factory.current.sent[0]["topic"] == "aws/subscribe"
        await channel.close()

    @pytest.mark.asyncio
    async def test_budget_exhaustion_closes(self, recording_sleep):
        refused = ConnectionRefused("unreachable")
        factory = FakeWsFactory([None, refused, refused])
        channel, states = make_channel(factory, recording_sleep, max_reconnect_attempts=2)
        await channel.connect()

        factory.current.drop()
        await wait_until(lambda: channel.state is ChannelState.CLOSED)

        assert recording_sleep.delays == [1.0, 2.0]
        assert states[-1] is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_close_stops_reconnection(self, ws_factory, recording_sleep):
        """Test close() during a backoff wait prevents further attempts."""
        recording_sleep.gate = asyncio.Event()
        channel, _ = make_channel(ws_factory, recording_sleep)
        await channel.connect()

        ws_factory.current.drop()
        await wait_until(lambda: recording_sleep.delays)
        await channel.close()
        recording_sleep.gate.set()
        await asyncio.sleep(0.01)

        assert channel.state is ChannelState.CLOSED
        assert len(ws_factory.clients) == 1

    @pytest.mark.asyncio
    async def test_rejected_credential_waits_for_auth(self, recording_sleep):
        factory = FakeWsFactory([None, AuthRejected("expired")])
        channel, _ = make_channel(factory, recording_sleep)
        await channel.connect()

        factory.current.drop()
        await wait_until(lambda: channel.state is ChannelState.RECONNECTING_PENDING_AUTH)

        assert len(factory.clients) == 2
        await channel.close()


class TestExpiringCredential:
    """Tests for deferring reconnects on an expiring credential."""

    @pytest.mark.asyncio
    async def test_pending_auth_then_resume(self, ws_factory, recording_sleep):
        """Test an expiring credential defers reconnect until resume()."""
        store = TokenStore(clock=lambda: BASE_TIME)
        store.set_credential(
            Credential(token="old", endpoint=ENDPOINT, expires_at=BASE_TIME + timedelta(seconds=30))
        )
        channel, states = make_channel(ws_factory, recording_sleep, store=store)
        await channel.connect()

        ws_factory.current.drop()
        await wait_until(lambda: channel.state is ChannelState.RECONNECTING_PENDING_AUTH)
        assert len(ws_factory.clients) == 1

        store.set_credential(Credential(token="new", endpoint=ENDPOINT + "?v=2"))
        await channel.resume()
        await wait_until(lambda: channel.is_open)

        assert ws_factory.current.url == ENDPOINT + "?v=2"
        assert recording_sleep.delays == [1.0]
        assert ChannelState.RECONNECTING_PENDING_AUTH in states
        await channel.close()

    @pytest.mark.asyncio
    async def test_resume_ignored_when_open(self, ws_factory, recording_sleep):
        channel, _ = make_channel(ws_factory, recording_sleep)
        await channel.connect()

        await channel.resume()

        assert len(ws_factory.clients) == 1
        await channel.close()


class TestHeartbeat:
    """Tests for application heartbeats."""

    @pytest.mark.asyncio
    async def test_heartbeat_sent(self, ws_factory, recording_sleep):
        channel, _ = make_channel(
            ws_factory, recording_sleep, heartbeat_interval=0.01, heartbeat_timeout=60.0
        )
        await channel.connect()

        await wait_until(lambda: {"topic": "aws/heartbeat"} in ws_factory.current.sent)

        assert channel.is_open
        await channel.close()

    @pytest.mark.asyncio
    async def test_silent_connection_is_replaced(self, ws_factory, recording_sleep):
        """Test a connection silent past the deadline triggers a reconnect."""
        channel, _ = make_channel(
            ws_factory, recording_sleep, heartbeat_interval=0.01, heartbeat_timeout=0.0
        )
        await channel.connect()
        first = ws_factory.current

        await wait_until(lambda: len(ws_factory.connected) >= 2)

        assert first.closed
        await channel.close()
