"""Transport layer for the chat client.

This package contains the streaming channel IO.

Components:
- ws: WebSocket connection and error translation
- ws_client: WebSocket message iteration
- channel: Reconnecting channel with heartbeat
"""

from .channel import ChannelState, ConnectResult, TransportChannel
from .ws import connect_websocket
from .ws_client import ChatWsClient, ChatWsMessage, ChatWsMessageType

__all__ = [
    "ChannelState",
    "ChatWsClient",
    "ChatWsMessage",
    "ChatWsMessageType",
    "ConnectResult",
    "TransportChannel",
    "connect_websocket",
]
