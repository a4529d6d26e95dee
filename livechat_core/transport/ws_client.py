"""WebSocket client for the chat streaming channel.

Frames are decoded here, so consumers only ever see JSON objects, the close
code when the connection ends, or an error description.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..errors import ConnectionRefused
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_LOGGER = logging.getLogger(__name__)


class ChatWsMessageType(Enum):
    """Kinds of message produced by the client."""

    FRAME = "frame"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class ChatWsMessage:
    """One inbound message.

    Attributes:
        type: Message kind
        frame: Decoded JSON object (FRAME only)
        close_code: Close code sent by the peer, if known (CLOSED only)
        error: Description of the failure (ERROR only)
    """

    type: ChatWsMessageType
    frame: dict[str, Any] | None = None
    close_code: int | None = None
    error: str | None = None


def _close_code(err: ConnectionClosed) -> int | None:
    return err.rcvd.code if err.rcvd is not None else None


def decode_frame(raw: str) -> dict[str, Any] | None:
    """Decode a text frame, returning None for anything but a JSON object."""
    try:
        frame = json.loads(raw)
    except ValueError as err:
        _LOGGER.warning("Dropping frame that is not JSON: %s", err)
        return None
    if not isinstance(frame, dict):
        _LOGGER.warning("Dropping frame that is not a JSON object")
        return None
    return frame


class ChatWsClient:
    """One websocket connection to the streaming endpoint."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        ping_interval: int | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Open the connection.

        Raises:
            AuthRejected: If the endpoint refuses the credential
            ConnectionRefused: If the endpoint cannot be reached
            ChatTimeout: If the handshake times out
        """
        self._ws = await connect_websocket(
            url,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the connection; later sends fail with ConnectionRefused."""
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send a JSON object.

        Raises:
            ConnectionRefused: If the connection is not open
        """
        if self._ws is None:
            raise ConnectionRefused("WebSocket is not connected")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as err:
            raise ConnectionRefused(
                f"WebSocket closed while sending (code {_close_code(err)})"
            ) from err

    def __aiter__(self) -> AsyncIterator[ChatWsMessage]:
        if self._ws is None:
            raise ConnectionRefused("WebSocket is not connected")
        return self._iter_messages(self._ws)

    @staticmethod
    async def _iter_messages(ws: ClientConnection) -> AsyncIterator[ChatWsMessage]:
        """Yield decoded frames, ending with exactly one CLOSED or ERROR."""
        try:
            async for raw in ws:
                # Binary frames are not part of the chat protocol
                if isinstance(raw, bytes):
                    continue
                frame = decode_frame(raw)
                if frame is not None:
                    yield ChatWsMessage(ChatWsMessageType.FRAME, frame=frame)
        except ConnectionClosed as err:
            yield ChatWsMessage(ChatWsMessageType.CLOSED, close_code=_close_code(err))
        except Exception as err:
            yield ChatWsMessage(ChatWsMessageType.ERROR, error=str(err) or type(err).__name__)
        else:
            yield ChatWsMessage(ChatWsMessageType.CLOSED, close_code=ws.close_code)
