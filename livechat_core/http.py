"""HTTP client for the chat request/response service."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

import aiohttp

from .backoff import BackoffPolicy
from .errors import (
    AuthExpired,
    AuthRejected,
    ChatClientError,
    ChatResponseError,
    ChatTimeout,
    ConnectionRefused,
    RequestFailed,
)
from .models import (
    Ack,
    DeliveryOrigin,
    ScanDirection,
    SortOrder,
    StartPosition,
    TranscriptPage,
)
from .protocol import (
    TRANSCRIPT_KINDS,
    classify_content_type,
    parse_timestamp,
    parse_transcript_entry,
)
from .token_store import Credential, TokenStore

_LOGGER = logging.getLogger(__name__)


class RequestState(Enum):
    """Lifecycle of an outbound request."""

    QUEUED = "queued"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


@dataclass(slots=True)
class PendingRequest:
    """Track an in-flight request and its retries."""

    correlation_id: str
    operation: str
    attempts: int = 0
    state: RequestState = RequestState.QUEUED


class ChatRequestClient:
    """HTTP client wrapper for chat participant endpoints.

    Every call carries a client-generated correlation id in its body as
    ``ClientToken``. Retries of the same call reuse it so the service can
    deduplicate.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        token_store: TokenStore,
        *,
        backoff: BackoffPolicy | None = None,
        max_attempts: int = 3,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._token_store = token_store
        self._backoff = backoff or BackoffPolicy()
        self._max_attempts = max_attempts
        self._timeout = timeout
        self._sleep = sleep
        self._pending: dict[str, PendingRequest] = {}

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    @staticmethod
    def _auth_headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @property
    def pending_requests(self) -> list[PendingRequest]:
        """Requests that have not reached a terminal state."""
        return list(self._pending.values())

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def send_message(
        self,
        content_type: str,
        content: str,
        *,
        correlation_id: str | None = None,
    ) -> Ack:
        """Send a chat message."""
        correlation_id = correlation_id or str(uuid4())
        data = await self._call(
            "send_message",
            "/participant/message",
            {"ContentType": content_type, "Content": content},
            correlation_id=correlation_id,
        )
        return self._ack(data, correlation_id)

    async def send_event(
        self,
        content_type: str,
        content: str | None = None,
        *,
        correlation_id: str | None = None,
    ) -> Ack:
        """Send a chat event such as a typing indicator."""
        payload: dict[str, Any] = {"ContentType": content_type}
        if content is not None:
            payload["Content"] = content
        correlation_id = correlation_id or str(uuid4())
        data = await self._call(
            "send_event",
            "/participant/event",
            payload,
            correlation_id=correlation_id,
        )
        return self._ack(data, correlation_id)

    async def fetch_transcript_page(
        self,
        cursor: str | None = None,
        page_size: int = 15,
        sort_order: SortOrder = SortOrder.ASCENDING,
        *,
        scan_direction: ScanDirection = ScanDirection.BACKWARD,
        start_position: StartPosition | None = None,
    ) -> TranscriptPage:
        """Fetch one page of transcript history.

        Items that never belong in a transcript (typing, receipts) are dropped.
        """
        payload: dict[str, Any] = {
            "MaxResults": page_size,
            "SortOrder": sort_order.value,
            "ScanDirection": scan_direction.value,
        }
        if cursor:
            payload["NextToken"] = cursor
        if start_position is not None:
            payload["StartPosition"] = start_position.to_wire()

        data = await self._call("fetch_transcript", "/participant/transcript", payload)

        entries = []
        for item in data.get("Transcript") or []:
            if classify_content_type(item.get("ContentType")) not in TRANSCRIPT_KINDS:
                continue
            try:
                entries.append(parse_transcript_entry(item, DeliveryOrigin.PAGINATED))
            except ValueError as err:
                _LOGGER.warning("Skipping malformed transcript item: %s", err)

        return TranscriptPage(
            entries=tuple(entries),
            next_cursor=data.get("NextToken"),
            initial_contact_id=data.get("InitialContactId"),
        )

    async def disconnect_participant(self) -> Ack:
        """Remove the participant from the chat."""
        correlation_id = str(uuid4())
        data = await self._call(
            "disconnect",
            "/participant/disconnect",
            {},
            correlation_id=correlation_id,
        )
        return self._ack(data, correlation_id)

    async def create_participant_connection(self, participant_token: str) -> Credential:
        """Exchange a participant token for a connection credential.

        Raises:
            AuthRejected: If the participant token is refused
        """
        data = await self._call(
            "create_connection",
            "/participant/connection",
            {"Type": ["WEBSOCKET", "CONNECTION_CREDENTIALS"], "ConnectParticipant": True},
            token=participant_token,
        )
        websocket = data.get("Websocket") or {}
        credentials = data.get("ConnectionCredentials") or {}
        url = websocket.get("Url")
        token = credentials.get("ConnectionToken")
        if not url or not token:
            raise ChatResponseError(200, "Connection response is missing Url or ConnectionToken")

        expiry = credentials.get("Expiry") or websocket.get("ConnectionExpiry")
        return Credential(
            token=token,
            endpoint=url,
            expires_at=parse_timestamp(expiry) if expiry else None,
        )

    # -------------------------------------------------------------------------
    # Internal: Retry
    # -------------------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        path: str,
        payload: dict[str, Any],
        *,
        correlation_id: str | None = None,
        token: str | None = None,
    ) -> dict[str, Any]:
        """POST with bounded retries on ambiguous failures.

        Timeouts, connection errors, 429 and 5xx are retried with backoff.
        Auth failures and other statuses surface immediately.
        """
        if token is None:
            # Fail fast before creating any request state
            self._token_store.current_credential()

        request = PendingRequest(
            correlation_id=correlation_id or str(uuid4()),
            operation=operation,
        )
        self._pending[request.correlation_id] = request
        body = {**payload, "ClientToken": request.correlation_id}
        last_error: ChatClientError | None = None

        try:
            for attempt in range(self._max_attempts):
                if attempt:
                    delay = self._backoff.delay(attempt - 1)
                    _LOGGER.info(
                        "Retrying %s in %.2fs (attempt %d/%d, id=%s)",
                        operation,
                        delay,
                        attempt + 1,
                        self._max_attempts,
                        request.correlation_id,
                    )
                    await self._sleep(delay)

                bearer = token if token is not None else self._token_store.current_credential().token
                request.attempts = attempt + 1
                request.state = RequestState.SENT
                try:
                    data = await self._post(path, body, bearer, rejected_is_fatal=token is not None)
                except (ChatTimeout, ConnectionRefused) as err:
                    last_error = err
                    _LOGGER.warning("%s attempt %d failed: %s", operation, attempt + 1, err)
                    continue
                except ChatResponseError as err:
                    if not err.retryable:
                        raise
                    last_error = err
                    _LOGGER.warning("%s attempt %d failed: %s", operation, attempt + 1, err)
                    continue

                request.state = RequestState.ACKNOWLEDGED
                return data

            raise RequestFailed(
                f"{operation} failed after {self._max_attempts} attempts",
                cause=last_error,
            ) from last_error
        except BaseException:
            request.state = RequestState.FAILED
            raise
        finally:
            self._pending.pop(request.correlation_id, None)

    async def _post(
        self,
        path: str,
        body: dict[str, Any],
        token: str,
        *,
        rejected_is_fatal: bool = False,
    ) -> dict[str, Any]:
        url = self._url(path)
        try:
            async with self._session.post(
                url,
                json=body,
                headers=self._auth_headers(token),
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status in (401, 403):
                    if rejected_is_fatal:
                        raise AuthRejected(f"Credential rejected by {path} ({resp.status})")
                    raise AuthExpired(resp.status, f"Credential expired for {path}")
                if resp.status >= 300:
                    raise ChatResponseError(
                        resp.status, f"{path} failed with status {resp.status}"
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as err:
                    raise ChatResponseError(
                        resp.status, f"{path} returned a body that is not JSON"
                    ) from err
                return data if isinstance(data, dict) else {}
        except TimeoutError as err:
            raise ChatTimeout(f"Request to {path} timed out") from err
        except aiohttp.ClientError as err:
            raise ConnectionRefused(f"Request to {path} failed") from err

    @staticmethod
    def _ack(data: dict[str, Any], correlation_id: str) -> Ack:
        timestamp = data.get("AbsoluteTime")
        return Ack(
            correlation_id=correlation_id,
            id=data.get("Id"),
            timestamp=parse_timestamp(timestamp) if timestamp else None,
        )
