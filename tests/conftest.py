"""Pytest configuration and fixtures for livechat_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from livechat_core.errors import ConnectionRefused
from livechat_core.transport.ws_client import (
    ChatWsMessage,
    ChatWsMessageType,
)

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: dict[str, Any] | None = None,
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status
    response.json.return_value = json_data if json_data is not None else {}

    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


def at(seconds: float) -> datetime:
    """Timestamp `seconds` after the shared base time."""
    return BASE_TIME + timedelta(seconds=seconds)


def message_item(
    entry_id: str,
    seconds: float,
    content: str = "hello",
    *,
    role: str = "AGENT",
    content_type: str = "text/plain",
) -> dict[str, Any]:
    """Build a wire transcript item."""
    return {
        "Id": entry_id,
        "Type": "MESSAGE",
        "AbsoluteTime": at(seconds).isoformat(),
        "ContentType": content_type,
        "Content": content,
        "ParticipantRole": role,
        "ParticipantId": f"participant-{role.lower()}",
        "DisplayName": role.title(),
    }


def chat_frame(item: dict[str, Any]) -> dict[str, Any]:
    """Wrap a transcript item in a streaming frame."""
    return {"topic": "aws/chat", "contentType": "application/json", "content": json.dumps(item)}


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


class FakeWsClient:
    """Scripted stand-in for ChatWsClient."""

    def __init__(self, connect_error: Exception | None = None) -> None:
        self.connect_error = connect_error
        self.url: str | None = None
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbound: asyncio.Queue[ChatWsMessage | None] = asyncio.Queue()

    async def connect(
        self, url: str, *, ping_interval: int | None = None, timeout: float = 15.0
    ) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.url = url

    async def close(self) -> None:
        self.closed = True
        self._inbound.put_nowait(None)

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionRefused("WebSocket is not connected")
        self.sent.append(payload)

    def push(self, frame: dict[str, Any]) -> None:
        """Deliver a frame to the listener."""
        self._inbound.put_nowait(ChatWsMessage(ChatWsMessageType.FRAME, frame=dict(frame)))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbound.put_nowait(None)

    def __aiter__(self):
        return self._iter_messages()

    async def _iter_messages(self):
        while True:
            message = await self._inbound.get()
            if message is None:
                yield ChatWsMessage(ChatWsMessageType.CLOSED, close_code=1006)
                return
            yield message


class FakeWsFactory:
    """Client factory whose connects follow a script of errors."""

    def __init__(self, script: list[Exception | None] | None = None) -> None:
        self.script = list(script or [])
        self.clients: list[FakeWsClient] = []

    def __call__(self) -> FakeWsClient:
        error = self.script.pop(0) if self.script else None
        client = FakeWsClient(connect_error=error)
        self.clients.append(client)
        return client

    @property
    def connected(self) -> list[FakeWsClient]:
        return [client for client in self.clients if client.url is not None]

    @property
    def current(self) -> FakeWsClient:
        return self.connected[-1]


class RecordingSleep:
    """Backoff sleep that records delays and can be held behind a gate."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)


@pytest.fixture
def ws_factory() -> FakeWsFactory:
    return FakeWsFactory()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
