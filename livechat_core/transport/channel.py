"""Streaming channel with heartbeat and reconnect-with-backoff.

The channel owns one logical connection to the realtime endpoint and
re-establishes it across network faults. It handles:
- Connect and subscribe
- Application heartbeat and liveness deadline
- Reconnection with exponential backoff and full jitter
- Deferring reconnection while the credential is expiring

Frames lost while reconnecting are expected; the session backfills them.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..backoff import BackoffPolicy
from ..errors import (
    AuthRejected,
    ChatClientError,
    ChatTimeout,
    ConnectionRefused,
    NoActiveSession,
)
from ..protocol import (
    TOPIC_HEARTBEAT,
    TOPIC_SUBSCRIBE,
    build_heartbeat_frame,
    build_subscribe_frame,
)
from ..token_store import Credential, TokenStore
from .ws_client import ChatWsClient, ChatWsMessageType

_LOGGER = logging.getLogger(__name__)

FrameHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class ChannelState(Enum):
    """Connection state of the streaming channel."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    RECONNECTING_PENDING_AUTH = "reconnecting_pending_auth"
    CLOSED = "closed"


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of a successful connect."""

    url: str
    connected_at: float


class TransportChannel:
    """Single logical streaming connection.

    Usage:
        channel = TransportChannel(token_store)
        channel.on_frame(handle_frame)
        channel.on_state_changed(handle_state)
        await channel.connect()
        await channel.close()
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        backoff: BackoffPolicy | None = None,
        max_reconnect_attempts: int | None = None,
        connect_timeout: float = 15.0,
        ping_interval: int | None = 20,
        heartbeat_interval: float | None = 10.0,
        heartbeat_timeout: float = 30.0,
        expiry_lookahead: float = 60.0,
        client_factory: Callable[[], Any] = ChatWsClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "chat",
    ) -> None:
        """Initialize channel.

        Args:
            token_store: Shared credential holder
            backoff: Reconnect backoff policy
            max_reconnect_attempts: Reconnect budget (None for unbounded)
            connect_timeout: WebSocket open timeout (seconds)
            ping_interval: Protocol ping interval (seconds)
            heartbeat_interval: Application heartbeat interval (None disables)
            heartbeat_timeout: Silence after which the connection is dead
            expiry_lookahead: Defer reconnects when the credential expires
                within this many seconds
            client_factory: Builds the websocket client for each connection
            sleep: Awaitable used for backoff delays
            name: Label used in log messages
        """
        self._token_store = token_store
        self._backoff = backoff or BackoffPolicy()
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect_timeout = connect_timeout
        self._ping_interval = ping_interval
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_timeout = heartbeat_timeout
        self._expiry_lookahead = expiry_lookahead
        self._client_factory = client_factory
        self._sleep = sleep
        self._name = name

        self._state = ChannelState.IDLE
        self._ws: Any = None
        self._url: str | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0
        self._closed = False
        self._last_inbound = 0.0

        self._frame_callback: FrameHandler | None = None
        self._state_callback: Callable[[ChannelState], None] | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    @property
    def reconnect_attempts(self) -> int:
        """Attempts made since the connection was last lost."""
        return self._reconnect_attempts

    def on_frame(self, callback: FrameHandler) -> None:
        """Register the consumer of inbound frames."""
        self._frame_callback = callback

    def on_state_changed(self, callback: Callable[[ChannelState], None]) -> None:
        """Register callback for channel state changes."""
        self._state_callback = callback

    async def connect(self, credential: Credential | None = None) -> ConnectResult:
        """Open the channel.

        Raises:
            ConnectionRefused: Endpoint unreachable or channel already closed
            AuthRejected: Endpoint refused the credential
            ChatTimeout: Handshake timed out
        """
        if self._closed:
            raise ConnectionRefused("Channel is closed")
        if credential is None:
            credential = self._token_store.current_credential()

        self._set_state(ChannelState.CONNECTING)
        try:
            await self._open(credential)
        except ChatClientError:
            self._set_state(ChannelState.IDLE)
            raise

        self._reconnect_attempts = 0
        self._set_state(ChannelState.OPEN)
        return ConnectResult(url=credential.endpoint, connected_at=time.time())

    async def resume(self) -> None:
        """Restart reconnection after a fresh credential was supplied."""
        if self._closed or self._state is not ChannelState.RECONNECTING_PENDING_AUTH:
            return
        _LOGGER.info("[%s] Credential refreshed, resuming reconnection", self._name)
        self._reconnect_attempts = 0
        self._set_state(ChannelState.RECONNECTING)
        self._start_reconnect(immediate=True)

    async def close(self) -> None:
        """Close the channel and stop any reconnection immediately."""
        if self._closed and self._state is ChannelState.CLOSED:
            return
        _LOGGER.info("[%s] Closing channel", self._name)
        self._closed = True

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reconnect_task, self._heartbeat_task, self._listen_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._close_ws()
        self._set_state(ChannelState.CLOSED)

    # -------------------------------------------------------------------------
    # Internal: Connection
    # -------------------------------------------------------------------------

    def _set_state(self, state: ChannelState) -> None:
        """Update channel state and notify callback."""
        if self._state is not state:
            _LOGGER.debug(
                "[%s] Channel: %s → %s", self._name, self._state.value, state.value
            )
            self._state = state
            if self._state_callback:
                self._state_callback(state)

    async def _open(self, credential: Credential) -> None:
        await self._close_ws()

        _LOGGER.info("[%s] Connecting to %s", self._name, credential.endpoint)
        client = self._client_factory()
        await client.connect(
            credential.endpoint,
            ping_interval=self._ping_interval,
            timeout=self._connect_timeout,
        )
        self._ws = client
        self._url = credential.endpoint
        self._last_inbound = time.monotonic()

        try:
            await client.send_json(build_subscribe_frame())
        except ChatClientError:
            await self._close_ws()
            raise

        self._listen_task = asyncio.create_task(self._listen(client))
        if self._heartbeat_interval is not None:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(client, self._heartbeat_interval)
            )

    async def _close_ws(self) -> None:
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        try:
            await asyncio.wait_for(ws.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self._name)
        except ChatClientError as err:
            _LOGGER.debug("[%s] WebSocket close failed: %s", self._name, err)

    def _handle_unexpected_close(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        self._set_state(ChannelState.RECONNECTING)
        self._start_reconnect()

    def _start_reconnect(self, *, immediate: bool = False) -> None:
        if self._closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(immediate))

    async def _reconnect_loop(self, immediate: bool) -> None:
        """Reconnect with backoff until success, deferral or budget exhaustion."""
        first = True
        try:
            while not self._closed:
                limit = self._max_reconnect_attempts
                if limit is not None and self._reconnect_attempts >= limit:
                    _LOGGER.error(
                        "[%s] Giving up after %d reconnect attempts",
                        self._name,
                        self._reconnect_attempts,
                    )
                    self._closed = True
                    await self._close_ws()
                    self._set_state(ChannelState.CLOSED)
                    return

                if not (immediate and first):
                    delay = self._backoff.delay(self._reconnect_attempts)
                    _LOGGER.info(
                        "[%s] Reconnecting in %.2fs (attempt %d)",
                        self._name,
                        delay,
                        self._reconnect_attempts + 1,
                    )
                    await self._sleep(delay)
                first = False
                self._reconnect_attempts += 1

                if self._token_store.is_expiring(self._expiry_lookahead):
                    _LOGGER.info(
                        "[%s] Credential expiring, waiting for refresh", self._name
                    )
                    self._set_state(ChannelState.RECONNECTING_PENDING_AUTH)
                    return

                try:
                    await self._open(self._token_store.current_credential())
                except (AuthRejected, NoActiveSession) as err:
                    _LOGGER.error("[%s] Reconnect needs a new credential: %s", self._name, err)
                    self._set_state(ChannelState.RECONNECTING_PENDING_AUTH)
                    return
                except (ConnectionRefused, ChatTimeout) as err:
                    _LOGGER.warning("[%s] Reconnect attempt failed: %s", self._name, err)
                    continue

                _LOGGER.info(
                    "[%s] Reconnected after %d attempt(s)",
                    self._name,
                    self._reconnect_attempts,
                )
                self._reconnect_attempts = 0
                self._set_state(ChannelState.OPEN)
                return
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Reconnect cancelled", self._name)
        finally:
            self._reconnect_task = None

    # -------------------------------------------------------------------------
    # Internal: Listener
    # -------------------------------------------------------------------------

    async def _listen(self, client: Any) -> None:
        """Forward inbound frames until the connection ends."""
        message_count = 0
        reconnect_required = False

        try:
            async for msg in client:
                if msg.type is ChatWsMessageType.FRAME:
                    message_count += 1
                    self._last_inbound = time.monotonic()
                    topic = msg.frame.get("topic")
                    if topic in (TOPIC_HEARTBEAT, TOPIC_SUBSCRIBE):
                        _LOGGER.debug("[%s] Control frame: %s", self._name, topic)
                        continue
                    await self._emit_frame(msg.frame)

                elif msg.type is ChatWsMessageType.CLOSED:
                    _LOGGER.info(
                        "[%s] WebSocket closed by server (code %s)",
                        self._name,
                        msg.close_code,
                    )
                    reconnect_required = True
                    break

                elif msg.type is ChatWsMessageType.ERROR:
                    _LOGGER.error("[%s] WebSocket error: %s", self._name, msg.error)
                    reconnect_required = True
                    break

        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d frames)", self._name, message_count
            )
            raise
        except ChatClientError as err:
            _LOGGER.warning("[%s] Client error: %s", self._name, err)
            reconnect_required = True
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected error: %s", self._name, err)
            reconnect_required = True
        finally:
            if reconnect_required and not self._closed and client is self._ws:
                self._handle_unexpected_close()

    async def _emit_frame(self, frame: dict[str, Any]) -> None:
        if self._frame_callback is None:
            return
        try:
            result = self._frame_callback(frame)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as err:
            _LOGGER.exception("[%s] Frame handler error: %s", self._name, err)

    # -------------------------------------------------------------------------
    # Internal: Heartbeat
    # -------------------------------------------------------------------------

    async def _heartbeat_loop(self, client: Any, interval: float) -> None:
        """Send heartbeats and enforce the liveness deadline."""
        try:
            while not self._closed:
                await asyncio.sleep(interval)
                try:
                    await client.send_json(build_heartbeat_frame())
                except ChatClientError as err:
                    _LOGGER.debug("[%s] Heartbeat send failed: %s", self._name, err)

                since_inbound = time.monotonic() - self._last_inbound
                if since_inbound > self._heartbeat_timeout:
                    _LOGGER.error(
                        "[%s] Connection dead (%.1fs without a frame)",
                        self._name,
                        since_inbound,
                    )
                    await client.close()
                    break
        except asyncio.CancelledError:
            _LOGGER.debug("[%s] Heartbeat cancelled", self._name)
        except Exception as err:
            _LOGGER.exception("[%s] Heartbeat error: %s", self._name, err)
