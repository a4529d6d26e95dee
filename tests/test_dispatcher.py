"""Tests for EventDispatcher."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from livechat_core.dispatcher import EventDispatcher
from livechat_core.errors import ObserverFailure
from livechat_core.models import ChatEvent, EventKind
from livechat_core.protocol import CONTENT_TYPE_TYPING

from .conftest import chat_frame, message_item


def message_event() -> ChatEvent:
    return ChatEvent(kind=EventKind.MESSAGE, content_type="text/plain", data={"Id": "m1"})


class TestEventDispatcher:
    """Tests for observer routing and isolation."""

    @pytest.mark.asyncio
    async def test_observers_called_in_registration_order(self):
        """Test observers for a kind run in the order registered."""
        dispatcher = EventDispatcher()
        calls: list[str] = []
        dispatcher.register(EventKind.MESSAGE, lambda event: calls.append("first"))

        async def second(event: ChatEvent) -> None:
            calls.append("second")

        dispatcher.register(EventKind.MESSAGE, second)
        dispatcher.register(EventKind.MESSAGE, lambda event: calls.append("third"))

        delivered = await dispatcher.dispatch(message_event())

        assert calls == ["first", "second", "third"]
        assert delivered == 3

    @pytest.mark.asyncio
    async def test_only_matching_kind_notified(self):
        """Test observers of other kinds are not called."""
        dispatcher = EventDispatcher()
        typing_observer = MagicMock()
        dispatcher.register(EventKind.TYPING, typing_observer)

        await dispatcher.dispatch(message_event())

        typing_observer.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_observer_is_isolated(self, caplog):
        """Test one failing observer does not stop delivery to the next."""
        dispatcher = EventDispatcher()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        dispatcher.register(EventKind.MESSAGE, failing)
        dispatcher.register(EventKind.MESSAGE, healthy)
        event = message_event()

        with caplog.at_level(logging.WARNING, logger="livechat_core.dispatcher"):
            delivered = await dispatcher.dispatch(event)

        healthy.assert_awaited_once_with(event)
        assert delivered == 1
        assert len(dispatcher.failures) == 1
        failure = dispatcher.failures[0]
        assert isinstance(failure, ObserverFailure)
        assert failure.event is event
        assert isinstance(failure.cause, RuntimeError)
        assert "Observer failure" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_records_are_bounded(self):
        dispatcher = EventDispatcher(failure_limit=2)
        dispatcher.register(EventKind.MESSAGE, MagicMock(side_effect=ValueError("x")))

        for _ in range(5):
            await dispatcher.dispatch(message_event())

        assert len(dispatcher.failures) == 2

    @pytest.mark.asyncio
    async def test_unregister(self):
        """Test the returned callable removes the observer."""
        dispatcher = EventDispatcher()
        observer = MagicMock()
        unregister = dispatcher.register(EventKind.MESSAGE, observer)

        unregister()
        await dispatcher.dispatch(message_event())

        observer.assert_not_called()
        assert dispatcher.observer_count(EventKind.MESSAGE) == 0


class TestClassify:
    """Tests for frame classification."""

    def test_message_frame(self):
        event = EventDispatcher().classify(chat_frame(message_item("m1", 1)))
        assert event.kind is EventKind.MESSAGE
        assert event.entry.id == "m1"

    def test_typing_frame(self):
        frame = chat_frame({"Id": "t1", "ContentType": CONTENT_TYPE_TYPING})
        event = EventDispatcher().classify(frame)
        assert event.kind is EventKind.TYPING
        assert event.entry is None

    def test_malformed_frame_dropped(self):
        frame = {"topic": "aws/chat", "content": "{not json"}
        assert EventDispatcher().classify(frame) is None

    def test_other_topic_dropped(self):
        assert EventDispatcher().classify({"topic": "aws/other"}) is None
