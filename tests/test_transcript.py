"""Tests for TranscriptReconciler."""

from __future__ import annotations

import random

from livechat_core.models import ChatEvent, DeliveryOrigin, EventKind
from livechat_core.protocol import parse_chat_event, parse_transcript_entry
from livechat_core.transcript import TranscriptReconciler

from .conftest import message_item


def realtime(entry_id: str, seconds: float) -> ChatEvent:
    return parse_chat_event(message_item(entry_id, seconds), DeliveryOrigin.REALTIME)


def paged(entry_id: str, seconds: float):
    return parse_transcript_entry(message_item(entry_id, seconds), DeliveryOrigin.PAGINATED)


def assert_well_formed(transcript: TranscriptReconciler) -> None:
    entries = transcript.entries
    keys = [entry.sort_key for entry in entries]
    assert keys == sorted(keys)
    assert len({entry.id for entry in entries}) == len(entries)


class TestTranscriptReconciler:
    """Tests for ordering and deduplication."""

    def test_realtime_inserted_in_sorted_position(self):
        """Test out-of-order realtime events are sorted by timestamp."""
        transcript = TranscriptReconciler()
        transcript.ingest_realtime(realtime("c", 3))
        transcript.ingest_realtime(realtime("a", 1))
        transcript.ingest_realtime(realtime("b", 2))

        assert [entry.id for entry in transcript] == ["a", "b", "c"]

    def test_equal_timestamps_tie_break_on_id(self):
        """Test identical timestamps are ordered by identifier."""
        transcript = TranscriptReconciler()
        transcript.ingest_realtime(realtime("m-2", 5))
        transcript.ingest_realtime(realtime("m-1", 5))

        assert [entry.id for entry in transcript] == ["m-1", "m-2"]

    def test_duplicate_realtime_is_noop(self):
        """Test re-ingesting the same id leaves the transcript unchanged."""
        transcript = TranscriptReconciler()
        first = transcript.ingest_realtime(realtime("a", 1))
        before = transcript.entries

        again = transcript.ingest_realtime(realtime("a", 1))

        assert first is not None
        assert again is None
        assert transcript.entries == before

    def test_page_overlapping_realtime_keeps_first_delivery(self):
        """Test a page repeating realtime ids does not duplicate them."""
        transcript = TranscriptReconciler()
        transcript.ingest_realtime(realtime("b", 2))

        added = transcript.ingest_page([paged("a", 1), paged("b", 2), paged("c", 3)])

        assert [entry.id for entry in added] == ["a", "c"]
        assert [entry.id for entry in transcript] == ["a", "b", "c"]
        assert transcript.entries[1].origin is DeliveryOrigin.REALTIME

    def test_backfill_inserts_older_entries(self):
        """Test backfilled entries land before newer live entries."""
        transcript = TranscriptReconciler()
        transcript.ingest_realtime(realtime("live", 10))
        transcript.ingest_page([paged("old-1", 1), paged("old-2", 2)])

        assert [entry.id for entry in transcript] == ["old-1", "old-2", "live"]
        assert transcript.last_entry.id == "live"

    def test_non_transcript_event_ignored(self):
        """Test typing events never enter the transcript."""
        transcript = TranscriptReconciler()
        typing = ChatEvent(kind=EventKind.TYPING, content_type="application/x.event.typing")

        assert transcript.ingest_realtime(typing) is None
        assert len(transcript) == 0
        assert transcript.last_entry is None

    def test_contains(self):
        transcript = TranscriptReconciler()
        transcript.ingest_page([paged("a", 1)])
        assert "a" in transcript
        assert "b" not in transcript

    def test_random_interleavings_stay_sorted_and_unique(self):
        """Test arbitrary overlapping realtime/page sequences stay well formed."""
        for seed in range(25):
            rng = random.Random(seed)
            ids = [f"m{n:02d}" for n in range(30)]
            times = {entry_id: rng.randint(0, 10) for entry_id in ids}
            transcript = TranscriptReconciler()

            for _ in range(40):
                chosen = rng.sample(ids, rng.randint(1, 6))
                if rng.random() < 0.5:
                    for entry_id in chosen:
                        transcript.ingest_realtime(realtime(entry_id, times[entry_id]))
                else:
                    transcript.ingest_page([paged(i, times[i]) for i in chosen])
                assert_well_formed(transcript)

            snapshot = transcript.entries
            transcript.ingest_page([paged(entry.id, times[entry.id]) for entry in snapshot])
            assert transcript.entries == snapshot
