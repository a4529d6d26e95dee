"""Data types shared across the chat client core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventKind(Enum):
    """Classes of inbound events observers can register for."""

    MESSAGE = "message"
    TYPING = "typing"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    CONNECTION_BROKEN = "connection_broken"
    CHAT_ENDED = "chat_ended"
    OTHER = "other"


class ParticipantRole(Enum):
    """Sender role of a transcript entry."""

    CUSTOMER = "CUSTOMER"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


class DeliveryOrigin(Enum):
    """How an entry reached the client."""

    REALTIME = "realtime"
    PAGINATED = "paginated"


class SortOrder(Enum):
    """Transcript page ordering."""

    ASCENDING = "ASCENDING"
    DESCENDING = "DESCENDING"


class ScanDirection(Enum):
    """Direction a transcript page is read from its start position."""

    FORWARD = "FORWARD"
    BACKWARD = "BACKWARD"


@dataclass(frozen=True, slots=True)
class TranscriptEntry:
    """One immutable, uniquely identified chat item."""

    id: str
    timestamp: datetime
    content_type: str
    role: ParticipantRole
    content: str | bytes | None
    origin: DeliveryOrigin
    participant_id: str | None = None
    display_name: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Transcript ordering: timestamp, then identifier."""
        return (self.timestamp, self.id)


@dataclass(frozen=True)
class ChatEvent:
    """A classified inbound event.

    Attributes:
        kind: Event class used for observer routing
        content_type: Content-type tag of the underlying item
        data: Decoded item payload as received
        entry: Transcript entry when the item belongs in the transcript
    """

    kind: EventKind
    content_type: str
    data: dict[str, Any] = field(default_factory=lambda: {})
    entry: TranscriptEntry | None = None


@dataclass(frozen=True)
class ChatDetails:
    """Identifiers returned by the external chat start step."""

    contact_id: str
    participant_id: str
    participant_token: str | None = None
    continued_from_contact_id: str | None = None

    @classmethod
    def from_auth_response(cls, payload: dict[str, Any]) -> ChatDetails:
        """Build from the auth issuance payload.

        Accepts camelCase or PascalCase keys, optionally wrapped in
        ``{"data": {"startChatResult": {...}}}``.

        Raises:
            ValueError: If contact or participant id is missing
        """
        body = payload
        if isinstance(body.get("data"), dict):
            body = body["data"]
        for wrapper in ("startChatResult", "StartChatResult"):
            if isinstance(body.get(wrapper), dict):
                body = body[wrapper]
                break

        def pick(name: str) -> Any:
            value = body.get(name)
            if value is None:
                value = body.get(name[:1].upper() + name[1:])
            return value

        contact_id = pick("contactId")
        participant_id = pick("participantId")
        if not contact_id or not participant_id:
            raise ValueError("Auth response is missing contactId or participantId")
        return cls(
            contact_id=contact_id,
            participant_id=participant_id,
            participant_token=pick("participantToken"),
            continued_from_contact_id=pick("continuedFromContactId"),
        )


@dataclass(frozen=True)
class Ack:
    """Acknowledgement of an outbound request."""

    correlation_id: str
    id: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class StartPosition:
    """Anchor for a transcript page."""

    id: str | None = None
    absolute_time: datetime | None = None
    most_recent: int | None = None

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.id is not None:
            body["Id"] = self.id
        if self.absolute_time is not None:
            body["AbsoluteTime"] = self.absolute_time.isoformat()
        if self.most_recent is not None:
            body["MostRecent"] = self.most_recent
        return body


@dataclass(frozen=True)
class TranscriptPage:
    """One page of transcript history."""

    entries: tuple[TranscriptEntry, ...]
    next_cursor: str | None = None
    initial_contact_id: str | None = None
