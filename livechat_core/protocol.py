"""Protocol helpers for chat transport frames and transcript items.

This module provides frame builders for the streaming channel and parsers for
the items carried by both the streaming channel and transcript pages.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from .models import (
    ChatEvent,
    DeliveryOrigin,
    EventKind,
    ParticipantRole,
    TranscriptEntry,
)

_LOGGER = logging.getLogger(__name__)

TOPIC_SUBSCRIBE = "aws/subscribe"
TOPIC_HEARTBEAT = "aws/heartbeat"
TOPIC_CHAT = "aws/chat"

CONTENT_TYPE_TEXT = "text/plain"
CONTENT_TYPE_MARKDOWN = "text/markdown"
CONTENT_TYPE_TYPING = "application/vnd.amazonaws.connect.event.typing"
CONTENT_TYPE_PARTICIPANT_JOINED = (
    "application/vnd.amazonaws.connect.event.participant.joined"
)
CONTENT_TYPE_PARTICIPANT_LEFT = "application/vnd.amazonaws.connect.event.participant.left"
CONTENT_TYPE_CHAT_ENDED = "application/vnd.amazonaws.connect.event.chat.ended"
CONTENT_TYPE_CONNECTION_ACKNOWLEDGED = (
    "application/vnd.amazonaws.connect.event.connection.acknowledged"
)

# Matched against the end of vendor content types
_EVENT_SUFFIXES: tuple[tuple[str, EventKind], ...] = (
    (".event.typing", EventKind.TYPING),
    (".event.participant.joined", EventKind.PARTICIPANT_JOINED),
    (".event.participant.left", EventKind.PARTICIPANT_LEFT),
    (".event.chat.ended", EventKind.CHAT_ENDED),
)

TRANSCRIPT_KINDS = frozenset(
    {
        EventKind.MESSAGE,
        EventKind.PARTICIPANT_JOINED,
        EventKind.PARTICIPANT_LEFT,
        EventKind.CHAT_ENDED,
    }
)


def build_subscribe_frame() -> dict[str, Any]:
    """Build the frame subscribing the channel to chat items."""
    return {"topic": TOPIC_SUBSCRIBE, "content": {"topics": [TOPIC_CHAT]}}


def build_heartbeat_frame() -> dict[str, Any]:
    """Build an application-level liveness frame."""
    return {"topic": TOPIC_HEARTBEAT}


def classify_content_type(content_type: str | None) -> EventKind:
    """Map a content-type tag to its event class."""
    if not content_type:
        return EventKind.OTHER
    normalized = content_type.strip().lower()
    if normalized.startswith("text/") or ".message." in normalized:
        return EventKind.MESSAGE
    for suffix, kind in _EVENT_SUFFIXES:
        if normalized.endswith(suffix):
            return kind
    return EventKind.OTHER


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, bool):
        raise ValueError("Timestamp must not be bool")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_role(value: Any) -> ParticipantRole:
    """Map a participant role string, defaulting unknown roles to SYSTEM."""
    if isinstance(value, str):
        try:
            return ParticipantRole(value.upper())
        except ValueError:
            _LOGGER.debug("Unknown participant role %s treated as SYSTEM", value)
    return ParticipantRole.SYSTEM


def parse_transcript_entry(
    item: dict[str, Any], origin: DeliveryOrigin
) -> TranscriptEntry:
    """Build a transcript entry from a wire item.

    Raises:
        ValueError: If the item lacks an identifier or timestamp
    """
    entry_id = item.get("Id")
    if not entry_id:
        raise ValueError("Transcript item has no Id")
    if "AbsoluteTime" not in item:
        raise ValueError(f"Transcript item {entry_id} has no AbsoluteTime")
    return TranscriptEntry(
        id=str(entry_id),
        timestamp=parse_timestamp(item["AbsoluteTime"]),
        content_type=item.get("ContentType", ""),
        role=parse_role(item.get("ParticipantRole")),
        content=item.get("Content"),
        origin=origin,
        participant_id=item.get("ParticipantId"),
        display_name=item.get("DisplayName"),
    )


def parse_chat_event(
    item: dict[str, Any], origin: DeliveryOrigin = DeliveryOrigin.REALTIME
) -> ChatEvent:
    """Classify a wire item and attach its transcript entry where it has one.

    Raises:
        ValueError: If a transcript-bearing item is malformed
    """
    content_type = item.get("ContentType", "")
    kind = classify_content_type(content_type)
    entry = None
    if kind in TRANSCRIPT_KINDS:
        entry = parse_transcript_entry(item, origin)
    return ChatEvent(kind=kind, content_type=content_type, data=item, entry=entry)


def event_from_entry(entry: TranscriptEntry) -> ChatEvent:
    """Wrap a stored entry as an event for observer delivery."""
    data: dict[str, Any] = {
        "Id": entry.id,
        "AbsoluteTime": entry.timestamp.isoformat(),
        "ContentType": entry.content_type,
        "ParticipantRole": entry.role.value,
        "Content": entry.content,
    }
    return ChatEvent(
        kind=classify_content_type(entry.content_type),
        content_type=entry.content_type,
        data=data,
        entry=entry,
    )


def parse_chat_frame(frame: dict[str, Any]) -> dict[str, Any] | None:
    """Extract the chat item carried by a streaming frame.

    Returns:
        The decoded item, or None for frames on other topics

    Raises:
        ValueError: If the frame content is not a JSON object
    """
    if frame.get("topic") != TOPIC_CHAT:
        return None
    content = frame.get("content")
    if isinstance(content, str):
        content = json.loads(content)
    if not isinstance(content, dict):
        raise ValueError("Chat frame content must be a JSON object")
    return content
