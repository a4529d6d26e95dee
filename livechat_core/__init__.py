"""Realtime chat client core.

Session-oriented client for a live chat conversation: authenticated
streaming channel, request/response calls, and a reconciled transcript.
"""

__version__ = "0.1.0"

from .backoff import BackoffPolicy
from .config import OverflowPolicy, SessionConfig
from .dispatcher import EventDispatcher
from .errors import (
    AuthExpired,
    AuthRejected,
    Backpressure,
    ChatClientError,
    ChatResponseError,
    ChatTimeout,
    ConnectionRefused,
    NoActiveSession,
    ObserverFailure,
    RequestFailed,
    SessionEnded,
)
from .http import ChatRequestClient, PendingRequest, RequestState
from .models import (
    Ack,
    ChatDetails,
    ChatEvent,
    DeliveryOrigin,
    EventKind,
    ParticipantRole,
    ScanDirection,
    SortOrder,
    StartPosition,
    TranscriptEntry,
    TranscriptPage,
)
from .session import ChatSession, SessionState
from .token_store import Credential, CredentialState, TokenStore
from .transcript import TranscriptReconciler
from .transport import (
    ChannelState,
    ChatWsClient,
    ChatWsMessage,
    ChatWsMessageType,
    ConnectResult,
    TransportChannel,
    connect_websocket,
)

__all__ = [
    "Ack",
    "AuthExpired",
    "AuthRejected",
    "BackoffPolicy",
    "Backpressure",
    "ChannelState",
    "ChatClientError",
    "ChatDetails",
    "ChatEvent",
    "ChatRequestClient",
    "ChatResponseError",
    "ChatSession",
    "ChatTimeout",
    "ChatWsClient",
    "ChatWsMessage",
    "ChatWsMessageType",
    "ConnectResult",
    "ConnectionRefused",
    "Credential",
    "CredentialState",
    "DeliveryOrigin",
    "EventDispatcher",
    "EventKind",
    "NoActiveSession",
    "ObserverFailure",
    "OverflowPolicy",
    "ParticipantRole",
    "PendingRequest",
    "RequestFailed",
    "RequestState",
    "ScanDirection",
    "SessionConfig",
    "SessionEnded",
    "SessionState",
    "SortOrder",
    "StartPosition",
    "TokenStore",
    "TranscriptEntry",
    "TranscriptPage",
    "TranscriptReconciler",
    "TransportChannel",
    "__version__",
    "connect_websocket",
]
