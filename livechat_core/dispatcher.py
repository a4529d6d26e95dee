"""Fan-out of classified inbound events to registered observers."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import ObserverFailure
from .models import ChatEvent, DeliveryOrigin, EventKind
from .protocol import parse_chat_event, parse_chat_frame

_LOGGER = logging.getLogger(__name__)

Observer = Callable[[ChatEvent], Awaitable[None] | None]


class EventDispatcher:
    """Route events to observers by kind, in registration order.

    A failing observer is isolated: the failure is logged and recorded as an
    ObserverFailure, and delivery continues with the next observer.
    """

    def __init__(self, *, failure_limit: int = 100, name: str = "chat") -> None:
        self._observers: defaultdict[EventKind, list[Observer]] = defaultdict(list)
        self._failures: deque[ObserverFailure] = deque(maxlen=failure_limit)
        self._name = name

    def register(self, kind: EventKind, observer: Observer) -> Callable[[], None]:
        """Register an observer for one event kind.

        Returns:
            Callable that unregisters the observer
        """
        self._observers[kind].append(observer)
        return lambda: self.unregister(kind, observer)

    def unregister(self, kind: EventKind, observer: Observer) -> None:
        """Remove an observer; unknown observers are ignored."""
        observers = self._observers.get(kind)
        if observers and observer in observers:
            observers.remove(observer)

    def classify(self, frame: dict[str, Any]) -> ChatEvent | None:
        """Classify a raw streaming frame.

        Returns:
            The event, or None for non-chat or malformed frames
        """
        try:
            item = parse_chat_frame(frame)
            if item is None:
                _LOGGER.debug("[%s] Ignoring frame on topic %s", self._name, frame.get("topic"))
                return None
            return parse_chat_event(item, DeliveryOrigin.REALTIME)
        except (ValueError, KeyError, TypeError) as err:
            _LOGGER.warning("[%s] Invalid chat frame: %s", self._name, err)
            return None

    async def dispatch(self, event: ChatEvent) -> int:
        """Deliver an event to every observer registered for its kind.

        Returns:
            Number of observers that handled the event without failing
        """
        delivered = 0
        for observer in list(self._observers.get(event.kind, ())):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as err:
                failure = ObserverFailure(observer, event, err)
                self._failures.append(failure)
                _LOGGER.warning(
                    "[%s] Observer failure on %s event: %s",
                    self._name,
                    event.kind.value,
                    err,
                    exc_info=err,
                )
            else:
                delivered += 1
        return delivered

    @property
    def failures(self) -> list[ObserverFailure]:
        """Recorded observer failures, oldest first."""
        return list(self._failures)

    def observer_count(self, kind: EventKind) -> int:
        return len(self._observers.get(kind, ()))
