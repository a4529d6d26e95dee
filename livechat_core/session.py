"""High-level session manager for a live chat conversation.

This module provides the public API a host application uses to take part in
one chat conversation. It handles:
- Session lifecycle state machine
- Connection and credential refresh
- Queueing outbound calls while the channel reconnects
- Transcript backfill after reconnects
- Observer notification

Lifecycle:
    INITIALIZING → CONNECTING → CONNECTED → RECONNECTING
    → (CONNECTED | RECONNECTING_PENDING_AUTH) → ENDED

ENDED is reachable from any state and absorbs every later transition.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

import aiohttp

from .config import OverflowPolicy, SessionConfig
from .dispatcher import EventDispatcher, Observer
from .errors import (
    AuthExpired,
    AuthRejected,
    Backpressure,
    ChatClientError,
    NoActiveSession,
    SessionEnded,
)
from .http import ChatRequestClient
from .models import (
    Ack,
    ChatDetails,
    ChatEvent,
    EventKind,
    ScanDirection,
    SortOrder,
    StartPosition,
    TranscriptPage,
)
from .protocol import CONTENT_TYPE_TEXT, CONTENT_TYPE_TYPING, event_from_entry
from .token_store import Credential, TokenStore
from .transcript import TranscriptReconciler
from .transport.channel import ChannelState, ConnectResult, TransportChannel
from .transport.ws_client import ChatWsClient

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

CredentialProvider = Callable[[], Awaitable[Credential]]


class SessionState(Enum):
    """Lifecycle state of a chat session."""

    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    RECONNECTING_PENDING_AUTH = "reconnecting_pending_auth"
    ENDED = "ended"


_QUEUEING_STATES = frozenset(
    {SessionState.RECONNECTING, SessionState.RECONNECTING_PENDING_AUTH}
)


@dataclass(slots=True)
class _QueuedCall:
    """Outbound call held until the session is connected again."""

    label: str
    call: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]


def _settle(item: _QueuedCall, request: asyncio.Future[Any]) -> None:
    """Hand the outcome of a flushed call to the caller waiting on it."""
    if item.future.done():
        return
    if request.cancelled():
        item.future.set_exception(SessionEnded(f"Cannot {item.label}: session has ended"))
    elif request.exception() is not None:
        item.future.set_exception(request.exception())
    else:
        item.future.set_result(request.result())


class ChatSession:
    """Session manager for one chat conversation.

    Usage:
        session = ChatSession.create(details, credential, http_session=http)
        session.on(EventKind.MESSAGE, handle_message)
        await session.connect()
        await session.send_message("Hello")
        await session.disconnect()
    """

    def __init__(
        self,
        chat_details: ChatDetails,
        credential: Credential,
        *,
        http_session: aiohttp.ClientSession | None = None,
        config: SessionConfig | None = None,
        credential_provider: CredentialProvider | None = None,
        request_client: ChatRequestClient | None = None,
        ws_client_factory: Callable[[], Any] = ChatWsClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize session.

        Args:
            chat_details: Identifiers from the chat start step
            credential: Initial connection credential
            http_session: aiohttp session for the request client
            config: Session configuration
            credential_provider: Coroutine factory returning a fresh credential
            request_client: Pre-built request client (http_session not needed)
            ws_client_factory: Builds the websocket client per connection
            sleep: Awaitable used for backoff delays
        """
        self.chat_details = chat_details
        self.config = config or SessionConfig()
        self._name = chat_details.contact_id

        self.token_store = TokenStore()
        self.token_store.set_credential(credential)

        if request_client is None:
            if http_session is None:
                raise ValueError("http_session is required without a request_client")
            request_client = ChatRequestClient(
                http_session,
                self.config.service_url,
                self.token_store,
                backoff=self.config.backoff,
                max_attempts=self.config.request_max_attempts,
                timeout=self.config.request_timeout,
                sleep=sleep,
            )
        self._request_client = request_client

        self._channel = TransportChannel(
            self.token_store,
            backoff=self.config.backoff,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            connect_timeout=self.config.connect_timeout,
            ping_interval=self.config.ping_interval,
            heartbeat_interval=self.config.heartbeat_interval,
            heartbeat_timeout=self.config.heartbeat_timeout,
            expiry_lookahead=self.config.expiry_lookahead,
            client_factory=ws_client_factory,
            sleep=sleep,
            name=self._name,
        )
        self._channel.on_frame(self._handle_frame)
        self._channel.on_state_changed(self._handle_channel_state)

        self.dispatcher = EventDispatcher(
            failure_limit=self.config.observer_failure_limit, name=self._name
        )
        self.transcript = TranscriptReconciler()

        if credential_provider is None and chat_details.participant_token:
            credential_provider = self._create_connection_credential
        self._credential_provider = credential_provider

        # Lifecycle state
        self._state = SessionState.INITIALIZING
        self._state_callback: Callable[[SessionState], None] | None = None
        self._waiters: list[tuple[SessionState, asyncio.Future[None]]] = []
        self._lifecycle_lock = asyncio.Lock()
        self._ending = False
        self._last_connect: ConnectResult | None = None
        # Set when the channel drops while connect() is still loading history
        self._lost_during_connect = False

        # Outbound queue
        self._queue: deque[_QueuedCall] = deque()
        self._flushing = False

        # Realtime events held while history is loading
        self._holding = False
        self._held: deque[ChatEvent] = deque()

        self._refresh_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        # Flushed calls left running after their flush was cancelled
        self._inflight: set[asyncio.Future[Any]] = set()

    @classmethod
    def create(
        cls, chat_details: ChatDetails, credential: Credential, **kwargs: Any
    ) -> ChatSession:
        """Create a session ready to connect."""
        session = cls(chat_details, credential, **kwargs)
        session._transition(SessionState.CONNECTING)
        return session

    @classmethod
    async def start(
        cls,
        chat_details: ChatDetails,
        *,
        http_session: aiohttp.ClientSession,
        config: SessionConfig | None = None,
        **kwargs: Any,
    ) -> ChatSession:
        """Create the connection credential, then create and connect a session.

        Raises:
            NoActiveSession: If the chat details carry no participant token
            AuthRejected: If the participant token is refused
        """
        if not chat_details.participant_token:
            raise NoActiveSession("Chat details carry no participant token")
        config = config or SessionConfig()
        bootstrap = ChatRequestClient(
            http_session,
            config.service_url,
            TokenStore(),
            backoff=config.backoff,
            max_attempts=config.request_max_attempts,
            timeout=config.request_timeout,
        )
        credential = await bootstrap.create_participant_connection(
            chat_details.participant_token
        )
        session = cls.create(
            chat_details, credential, http_session=http_session, config=config, **kwargs
        )
        await session.connect()
        return session

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def queued_count(self) -> int:
        """Calls waiting for the session to reconnect."""
        return len(self._queue)

    def on_state_changed(self, callback: Callable[[SessionState], None]) -> None:
        """Register callback for lifecycle state changes."""
        self._state_callback = callback

    def on(self, kind: EventKind, observer: Observer) -> Callable[[], None]:
        """Register an observer for one event kind.

        Returns:
            Callable that unregisters the observer
        """
        return self.dispatcher.register(kind, observer)

    async def wait_for_state(self, state: SessionState) -> None:
        """Wait until the session enters `state`.

        Raises:
            SessionEnded: If the session ends first
        """
        if self._state is state:
            return
        if self._state is SessionState.ENDED:
            raise SessionEnded("Session has ended")
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append((state, future))
        await future

    # -------------------------------------------------------------------------
    # Public API: Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> ConnectResult | None:
        """Open the streaming channel and load recent history.

        Idempotent once connected. While a reconnect is in progress this
        returns the last result without doing anything.

        Raises:
            SessionEnded: If the session has ended
            AuthRejected: If the credential is refused and no fresh one can be had
            ConnectionRefused: If the endpoint is unreachable
            ChatTimeout: If the handshake times out
        """
        async with self._lifecycle_lock:
            if self._state is SessionState.ENDED or self._ending:
                raise SessionEnded("Session has ended")
            if self._state is SessionState.CONNECTED or self._state in _QUEUEING_STATES:
                return self._last_connect
            if self._state is SessionState.INITIALIZING:
                self._transition(SessionState.CONNECTING)

            _LOGGER.info("[%s] Connecting session", self._name)
            self._holding = True
            self._lost_during_connect = False
            try:
                result = await self._connect_channel()
            except ChatClientError:
                self._holding = False
                self._held.clear()
                raise

            if self.config.load_history_on_connect:
                await self._load_history()

            self._last_connect = result
            if self._lost_during_connect:
                self._lost_during_connect = False
                self._connection_lost()
                channel_state = self._channel.state
                if channel_state is ChannelState.RECONNECTING_PENDING_AUTH:
                    self._await_credential()
                elif channel_state is ChannelState.OPEN:
                    # Already back; backfill once this lock is released
                    self._spawn(self._resume_after_reconnect())
            else:
                self._transition(SessionState.CONNECTED)
        # Observers may call back into the session while held events drain
        await self._release_held()
        return result

    async def disconnect(self) -> Ack | None:
        """End the session.

        Attempts a best-effort participant disconnect, then always releases the
        channel and credential. A failed disconnect call is re-raised after
        cleanup.

        Returns:
            Acknowledgement, or None if the session had already ended
        """
        if self._state is SessionState.ENDED:
            return None
        self._ending = True
        self._fail_queued(SessionEnded("Session disconnected"))
        # Stop reconnection before waiting for any in-flight transition
        await self._channel.close()
        self._cancel_tasks()

        async with self._lifecycle_lock:
            if self._state is SessionState.ENDED:
                return None
            _LOGGER.info("[%s] Disconnecting session", self._name)
            try:
                if (
                    self._state in (SessionState.INITIALIZING, SessionState.CONNECTING)
                    or not self.token_store.has_credential()
                ):
                    return None
                return await self._run_with_refresh(
                    self._request_client.disconnect_participant
                )
            finally:
                await self._release()

    async def update_credential(self, credential: Credential) -> None:
        """Install a caller-supplied credential and resume a pending reconnect."""
        if self._state is SessionState.ENDED:
            raise SessionEnded("Session has ended")
        self.token_store.set_credential(credential)
        await self._channel.resume()

    # -------------------------------------------------------------------------
    # Public API: Requests
    # -------------------------------------------------------------------------

    async def send_message(
        self, content: str, content_type: str = CONTENT_TYPE_TEXT
    ) -> Ack:
        """Send a chat message."""
        return await self._submit(
            "send message",
            lambda: self._request_client.send_message(content_type, content),
        )

    async def send_event(self, content_type: str, content: str | None = None) -> Ack:
        """Send a chat event."""
        return await self._submit(
            "send event",
            lambda: self._request_client.send_event(content_type, content),
        )

    async def send_typing(self) -> Ack:
        """Send a typing indicator."""
        return await self.send_event(CONTENT_TYPE_TYPING)

    async def fetch_transcript(
        self,
        cursor: str | None = None,
        page_size: int = 15,
        sort_order: SortOrder = SortOrder.ASCENDING,
        *,
        scan_direction: ScanDirection = ScanDirection.BACKWARD,
        start_position: StartPosition | None = None,
    ) -> TranscriptPage:
        """Fetch a transcript page and merge it into the transcript."""

        async def fetch() -> TranscriptPage:
            page = await self._request_client.fetch_transcript_page(
                cursor,
                page_size,
                sort_order,
                scan_direction=scan_direction,
                start_position=start_position,
            )
            self.transcript.ingest_page(page.entries)
            return page

        return await self._submit("fetch transcript", fetch)

    # -------------------------------------------------------------------------
    # Internal: State Machine
    # -------------------------------------------------------------------------

    def _transition(self, state: SessionState) -> None:
        """Update lifecycle state, notify callback and waiters."""
        if self._state is state:
            return
        if self._state is SessionState.ENDED:
            _LOGGER.debug("[%s] Ignoring %s after end", self._name, state.value)
            return

        _LOGGER.debug("[%s] State: %s → %s", self._name, self._state.value, state.value)
        self._state = state

        remaining = []
        for wanted, future in self._waiters:
            if future.done():
                continue
            if wanted is state:
                future.set_result(None)
            elif state is SessionState.ENDED:
                future.set_exception(SessionEnded("Session has ended"))
            else:
                remaining.append((wanted, future))
        self._waiters = remaining

        if self._state_callback:
            try:
                self._state_callback(state)
            except Exception as err:
                _LOGGER.warning(
                    "[%s] State callback failed on %s: %s",
                    self._name,
                    state.value,
                    err,
                    exc_info=err,
                )

    def _handle_channel_state(self, channel_state: ChannelState) -> None:
        """Map channel transitions onto the session lifecycle."""
        if self._state is SessionState.ENDED or self._ending:
            return

        if channel_state is ChannelState.RECONNECTING:
            if self._state is SessionState.CONNECTED:
                self._connection_lost()
            elif self._state is SessionState.CONNECTING:
                # connect() still holds the lock; it reconciles when history is done
                self._lost_during_connect = True
            elif self._state is SessionState.RECONNECTING_PENDING_AUTH:
                self._transition(SessionState.RECONNECTING)

        elif channel_state is ChannelState.RECONNECTING_PENDING_AUTH:
            if self._state in _QUEUEING_STATES:
                self._await_credential()

        elif channel_state is ChannelState.OPEN:
            if self._state in _QUEUEING_STATES:
                self._spawn(self._resume_after_reconnect())

        elif channel_state is ChannelState.CLOSED:
            self._spawn(self._terminate("streaming channel closed"))

    def _connection_lost(self) -> None:
        _LOGGER.warning("[%s] Connection lost, reconnecting", self._name)
        self._holding = True
        self._transition(SessionState.RECONNECTING)
        self._spawn(
            self.dispatcher.dispatch(
                ChatEvent(kind=EventKind.CONNECTION_BROKEN, content_type="")
            )
        )

    def _await_credential(self) -> None:
        self._transition(SessionState.RECONNECTING_PENDING_AUTH)
        if self._credential_provider is not None:
            self._spawn(self._refresh_and_resume())

    async def _connect_channel(self) -> ConnectResult:
        try:
            return await self._channel.connect(self.token_store.current_credential())
        except AuthRejected:
            if self._credential_provider is None:
                raise
            _LOGGER.warning("[%s] Credential rejected, requesting a new one", self._name)
            await self._refresh_credential()
            return await self._channel.connect(self.token_store.current_credential())

    async def _resume_after_reconnect(self) -> None:
        """Backfill the outage window, then resume delivery and flush the queue."""
        async with self._lifecycle_lock:
            if self._state not in _QUEUEING_STATES or self._ending:
                return
            await self._backfill_gap()
            if not self._channel.is_open:
                # Dropped again during backfill; the channel will report back
                return
            self._transition(SessionState.CONNECTED)
        await self._release_held()
        await self._flush_queue()

    async def _terminate(self, reason: str) -> None:
        """End the session without a participant disconnect."""
        if self._ending:
            return
        self._ending = True
        self._fail_queued(SessionEnded(f"Session ended: {reason}"))
        await self._channel.close()
        async with self._lifecycle_lock:
            if self._state is SessionState.ENDED:
                return
            _LOGGER.info("[%s] Session ended: %s", self._name, reason)
            await self._release()

    async def _release(self) -> None:
        """Release channel and credential and enter ENDED."""
        await self._channel.close()
        self.token_store.clear()
        self._holding = False
        self._held.clear()
        self._fail_queued(SessionEnded("Session has ended"))
        self._transition(SessionState.ENDED)
        self._cancel_tasks()

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -------------------------------------------------------------------------
    # Internal: Credentials
    # -------------------------------------------------------------------------

    async def _create_connection_credential(self) -> Credential:
        token = self.chat_details.participant_token
        if not token:
            raise NoActiveSession("Chat details carry no participant token")
        return await self._request_client.create_participant_connection(token)

    async def _refresh_credential(self) -> None:
        """Fetch and install a fresh credential, one fetch at a time."""
        if self._credential_provider is None:
            raise AuthRejected("No credential provider configured")
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(
                self._fetch_credential(self._credential_provider)
            )
        await self._refresh_task

    async def _fetch_credential(self, provider: CredentialProvider) -> None:
        _LOGGER.info("[%s] Refreshing credential", self._name)
        credential = await provider()
        if self._state is SessionState.ENDED:
            # The session was released while the provider ran
            raise SessionEnded("Session ended during credential refresh")
        self.token_store.set_credential(credential)

    async def _refresh_and_resume(self) -> None:
        try:
            await self._refresh_credential()
        except ChatClientError as err:
            _LOGGER.error(
                "[%s] Credential refresh failed, waiting for update_credential: %s",
                self._name,
                err,
            )
            return
        await self._channel.resume()

    # -------------------------------------------------------------------------
    # Internal: Outbound Calls
    # -------------------------------------------------------------------------

    async def _submit(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a call now, queue it while reconnecting, or reject it."""
        if self._state is SessionState.ENDED or self._ending:
            raise SessionEnded(f"Cannot {label}: session has ended")
        if self._state in (SessionState.INITIALIZING, SessionState.CONNECTING):
            raise NoActiveSession(f"Cannot {label}: session is not connected")
        if self._state in _QUEUEING_STATES or self._queue or self._flushing:
            return await self._enqueue(label, call)
        return await self._run_with_refresh(call)

    async def _enqueue(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        if len(self._queue) >= self.config.queue_limit:
            if self.config.overflow_policy is OverflowPolicy.REJECT_NEWEST:
                _LOGGER.warning("[%s] Queue full, rejecting %s", self._name, label)
                raise Backpressure(
                    f"Cannot {label}: {len(self._queue)} calls already queued"
                )
            oldest = self._queue.popleft()
            _LOGGER.warning("[%s] Queue full, dropping %s", self._name, oldest.label)
            if not oldest.future.done():
                oldest.future.set_exception(
                    Backpressure(f"{oldest.label} dropped from a full queue")
                )

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.append(_QueuedCall(label, call, future))
        _LOGGER.debug("[%s] Queued %s (%d waiting)", self._name, label, len(self._queue))

        if self._state is SessionState.CONNECTED and not self._flushing:
            self._spawn(self._flush_queue())
        return await future

    async def _flush_queue(self) -> None:
        """Send queued calls in FIFO order while connected."""
        if self._flushing:
            return
        self._flushing = True
        try:
            while (
                self._queue
                and self._state is SessionState.CONNECTED
                and not self._ending
            ):
                item = self._queue.popleft()
                if item.future.done():
                    continue
                request = asyncio.ensure_future(self._run_with_refresh(item.call))
                try:
                    # wait() leaves the request running if this flush is cancelled
                    await asyncio.wait({request})
                except asyncio.CancelledError:
                    # Already dispatched: never recalled, the caller gets its outcome
                    self._inflight.add(request)
                    request.add_done_callback(self._inflight.discard)
                    request.add_done_callback(lambda done, item=item: _settle(item, done))
                    raise
                _settle(item, request)
        finally:
            self._flushing = False

    def _fail_queued(self, error: ChatClientError) -> None:
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(error)

    async def _run_with_refresh(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run a call, refreshing the credential and retrying once on expiry."""
        try:
            return await call()
        except AuthExpired:
            if self._credential_provider is None:
                raise
            _LOGGER.info("[%s] Credential expired, refreshing once", self._name)
            await self._refresh_credential()
            return await call()

    # -------------------------------------------------------------------------
    # Internal: Inbound Events
    # -------------------------------------------------------------------------

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        event = self.dispatcher.classify(frame)
        if event is None:
            return
        if self._holding:
            self._held.append(event)
            return
        await self._deliver(event)

    async def _deliver(self, event: ChatEvent) -> None:
        if event.entry is not None and self.transcript.ingest_realtime(event) is None:
            return
        await self.dispatcher.dispatch(event)
        if event.kind is EventKind.CHAT_ENDED:
            self._spawn(self._terminate("chat ended by remote participant"))

    async def _release_held(self) -> None:
        """Deliver events held during history loading, then go live."""
        while self._held and self._state is SessionState.CONNECTED:
            await self._deliver(self._held.popleft())
        if self._state is SessionState.CONNECTED:
            self._holding = False

    async def _load_history(self) -> None:
        try:
            page = await self._run_with_refresh(
                lambda: self._request_client.fetch_transcript_page(
                    None,
                    self.config.history_page_size,
                    SortOrder.ASCENDING,
                    scan_direction=ScanDirection.BACKWARD,
                )
            )
        except ChatClientError as err:
            _LOGGER.warning("[%s] History load failed: %s", self._name, err)
            return
        added = self.transcript.ingest_page(page.entries)
        _LOGGER.debug("[%s] Loaded %d history entries", self._name, len(added))

    async def _backfill_gap(self) -> None:
        """Fetch entries missed while the channel was down."""
        last = self.transcript.last_entry
        start = None
        if last is not None:
            start = StartPosition(id=last.id, absolute_time=last.timestamp)
        try:
            page = await self._run_with_refresh(
                lambda: self._request_client.fetch_transcript_page(
                    None,
                    self.config.backfill_page_size,
                    SortOrder.ASCENDING,
                    scan_direction=ScanDirection.FORWARD,
                    start_position=start,
                )
            )
        except ChatClientError as err:
            _LOGGER.warning("[%s] Transcript backfill failed: %s", self._name, err)
            return

        added = self.transcript.ingest_page(page.entries)
        _LOGGER.info("[%s] Backfilled %d missed entries", self._name, len(added))
        for entry in added:
            await self.dispatcher.dispatch(event_from_entry(entry))
