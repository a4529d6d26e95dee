"""Session configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .backoff import BackoffPolicy


class OverflowPolicy(Enum):
    """What happens when a call arrives while the session queue is full."""

    REJECT_NEWEST = "reject_newest"
    DROP_OLDEST = "drop_oldest"


@dataclass
class SessionConfig:
    """Configuration for a chat session.

    Attributes:
        service_url: Base URL of the request/response service
        backoff: Backoff policy for reconnects and request retries
        request_max_attempts: Attempts per request before RequestFailed
        request_timeout: Total timeout per HTTP request (seconds)
        max_reconnect_attempts: Reconnect budget (None for unbounded)
        connect_timeout: WebSocket open timeout (seconds)
        ping_interval: WebSocket protocol ping interval (None to disable)
        heartbeat_interval: Application heartbeat interval (None to disable)
        heartbeat_timeout: Max silence before the channel is considered dead
        expiry_lookahead: Window in which a credential counts as expiring
        queue_limit: Calls held while reconnecting
        overflow_policy: Behaviour when the queue is full
        history_page_size: Page size for the initial history load
        backfill_page_size: Page size for the post-reconnect gap fetch
        load_history_on_connect: Ingest one history page after first connect
        observer_failure_limit: Number of ObserverFailure records retained
    """

    service_url: str = "http://localhost:8080"
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    request_max_attempts: int = 3
    request_timeout: float = 10.0
    max_reconnect_attempts: int | None = None
    connect_timeout: float = 15.0
    ping_interval: int | None = 20
    heartbeat_interval: float | None = 10.0
    heartbeat_timeout: float = 30.0
    expiry_lookahead: float = 60.0
    queue_limit: int = 50
    overflow_policy: OverflowPolicy = OverflowPolicy.REJECT_NEWEST
    history_page_size: int = 15
    backfill_page_size: int = 100
    load_history_on_connect: bool = True
    observer_failure_limit: int = 100

    def __post_init__(self) -> None:
        if not self.service_url:
            raise ValueError("service_url is required")
        if self.request_max_attempts < 1:
            raise ValueError("request_max_attempts must be at least 1")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must not be negative")
        if self.queue_limit < 1:
            raise ValueError("queue_limit must be at least 1")
        if self.heartbeat_interval is not None and self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.heartbeat_timeout <= 0:
            raise ValueError("heartbeat_timeout must be positive")
        if self.history_page_size < 1 or self.backfill_page_size < 1:
            raise ValueError("Page sizes must be at least 1")
        self.service_url = self.service_url.rstrip("/")
