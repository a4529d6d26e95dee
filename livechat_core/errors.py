"""Client error types for live chat session interactions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ChatEvent


class ChatClientError(Exception):
    """Base error for chat client failures."""


class NoActiveSession(ChatClientError):
    """No credential is available or the session is not connected yet."""


class AuthRejected(ChatClientError):
    """The credential was refused; a fresh one must be issued."""


class AuthExpired(ChatClientError):
    """The request service no longer accepts the current credential."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class ConnectionRefused(ChatClientError):
    """Network connection to the chat service failed or was refused."""


class ChatTimeout(ChatClientError):
    """Timeout while communicating with the chat service."""


class ChatResponseError(ChatClientError):
    """HTTP response error from the chat service."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        """Throttling and server-side failures may succeed on retry."""
        return self.status == 429 or self.status >= 500


class Backpressure(ChatClientError):
    """The session queue is full."""


class RequestFailed(ChatClientError):
    """A request exhausted its retry budget."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class SessionEnded(ChatClientError):
    """The session has ended; no further operations are possible."""


class ObserverFailure(ChatClientError):
    """An observer raised while handling an event.

    Recorded by the dispatcher and logged, never raised to callers.
    """

    def __init__(self, observer: Any, event: ChatEvent, cause: BaseException) -> None:
        super().__init__(f"Observer {observer!r} failed on {event.kind.value}: {cause}")
        self.observer = observer
        self.event = event
        self.cause = cause
