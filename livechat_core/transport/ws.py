"""WebSocket helpers for the chat streaming channel."""

from __future__ import annotations

import asyncio

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    AuthRejected,
    ChatTimeout,
    ConnectionRefused,
)

_AUTH_STATUSES = frozenset({401, 403})


async def connect_websocket(
    url: str,
    *,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to the streaming endpoint returned by the connection handshake.

    Uses the websockets library which properly implements RFC 6455 frame masking.

    Args:
        url: WebSocket URL carried by the credential
        ping_interval: Interval for protocol ping frames
        timeout: Connection timeout

    Raises:
        ChatTimeout: If the handshake does not finish in time
        AuthRejected: If the endpoint refuses the credential
        ConnectionRefused: For any other connection or handshake failure
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise ChatTimeout("WebSocket connection timed out") from err
    except InvalidStatus as err:
        if err.response.status_code in _AUTH_STATUSES:
            raise AuthRejected("WebSocket endpoint rejected the credential") from err
        raise ConnectionRefused(
            f"WebSocket handshake refused ({err.response.status_code})"
        ) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise ConnectionRefused("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise ConnectionRefused("WebSocket connection failed") from err
