"""Transcript reconciliation across realtime and paginated delivery.

Entries arrive from two overlapping, unordered sources: the streaming channel
and transcript pages. The reconciler keeps one sorted, duplicate-free view.

Invariants:
- Entries are ordered by (timestamp, id)
- An id appears at most once, whichever source delivered it first wins
- Entries are never removed

Insertion has no suspension point, so on the owning event loop it is atomic
with respect to every other coroutine.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Iterator

from .models import ChatEvent, TranscriptEntry

_LOGGER = logging.getLogger(__name__)


def _sort_key(entry: TranscriptEntry) -> tuple:
    return entry.sort_key


class TranscriptReconciler:
    """Ordered, deduplicated transcript."""

    def __init__(self) -> None:
        self._entries: list[TranscriptEntry] = []
        self._ids: set[str] = set()

    def ingest_entry(self, entry: TranscriptEntry) -> bool:
        """Insert an entry at its sorted position.

        Returns:
            True if inserted, False if the id was already present
        """
        if entry.id in self._ids:
            return False
        bisect.insort(self._entries, entry, key=_sort_key)
        self._ids.add(entry.id)
        return True

    def ingest_realtime(self, event: ChatEvent) -> TranscriptEntry | None:
        """Insert the entry carried by a realtime event.

        Returns:
            The inserted entry, or None for non-transcript events and duplicates
        """
        if event.entry is None:
            return None
        if not self.ingest_entry(event.entry):
            _LOGGER.debug("Duplicate realtime entry %s ignored", event.entry.id)
            return None
        return event.entry

    def ingest_page(self, entries: Iterable[TranscriptEntry]) -> list[TranscriptEntry]:
        """Insert every entry of a page.

        Returns:
            Newly inserted entries in transcript order
        """
        added = [entry for entry in entries if self.ingest_entry(entry)]
        added.sort(key=_sort_key)
        return added

    @property
    def entries(self) -> tuple[TranscriptEntry, ...]:
        """Snapshot of the transcript."""
        return tuple(self._entries)

    @property
    def last_entry(self) -> TranscriptEntry | None:
        """Most recent entry, if any."""
        return self._entries[-1] if self._entries else None

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._ids

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
