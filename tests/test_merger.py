"""Tests for overlap-aware transcript merging and fragment sequencing."""

from __future__ import annotations

import pytest

from streamscribe.merger import FragmentSequencer, TranscriptMerger
from streamscribe.models import TranscriptFragment


def _fragment(index: int, text: str = "") -> TranscriptFragment:
    return TranscriptFragment(sequence_index=index, text=text or f"text {index}")


class TestTranscriptMerger:
    """Merging of boundary-overlapping fragments."""

    def test_overlapping_word_is_removed(self) -> None:
        """A word repeated across a segment boundary appears once."""
        merger = TranscriptMerger()
        assert merger.add_fragment(0, "the quick brown") == "the quick brown"
        assert merger.add_fragment(1, "brown fox jumps") == " fox jumps"
        assert merger.transcript == "the quick brown fox jumps"

    def test_fragments_without_overlap_are_joined_with_space(self) -> None:
        """Unrelated fragments are appended whole."""
        merger = TranscriptMerger()
        merger.add_fragment(0, "hello world")
        assert merger.add_fragment(1, "completely different") == " completely different"
        assert merger.transcript == "hello world completely different"

    def test_longest_overlap_wins(self) -> None:
        """Multi-word overlaps take precedence over shorter matches."""
        merger = TranscriptMerger()
        merger.add_fragment(0, "we said that it was that it was fine")
        increment = merger.add_fragment(1, "that it was fine and then we left")
        assert increment == " and then we left"

    def test_overlap_ignores_case_and_punctuation(self) -> None:
        """Capitalisation and trailing punctuation do not hide an overlap."""
        merger = TranscriptMerger()
        merger.add_fragment(0, "Meet me at the station.")
        assert merger.add_fragment(1, "The station, then the bus.") == " then the bus."

    def test_fully_repeated_fragment_adds_nothing(self) -> None:
        """A fragment entirely contained in the transcript tail is a no-op."""
        merger = TranscriptMerger()
        merger.add_fragment(0, "one two three")
        assert merger.add_fragment(1, "two three") == ""
        assert merger.transcript == "one two three"
        assert merger.last_index == 1

    def test_blank_fragment_is_noop(self) -> None:
        """Empty or whitespace-only text leaves the transcript untouched."""
        merger = TranscriptMerger()
        merger.add_fragment(0, "alpha")
        assert merger.add_fragment(1, "") == ""
        assert merger.add_fragment(2, "   \n") == ""
        assert merger.add_fragment(3, "beta") == " beta"
        assert merger.transcript == "alpha beta"

    def test_first_fragment_has_no_leading_space(self) -> None:
        """Whitespace around a fragment is trimmed before merging."""
        merger = TranscriptMerger()
        assert merger.add_fragment(0, "  hello  ") == "hello"

    def test_out_of_order_fragment_rejected(self) -> None:
        """Sequence indices must strictly increase."""
        merger = TranscriptMerger()
        merger.add_fragment(1, "first")
        with pytest.raises(ValueError):
            merger.add_fragment(1, "again")
        with pytest.raises(ValueError):
            merger.add_fragment(0, "earlier")
        assert merger.transcript == "first"

    def test_overlap_bounded_by_window(self) -> None:
        """Overlaps longer than the configured window are not detected."""
        merger = TranscriptMerger(max_overlap_words=2)
        merger.add_fragment(0, "a b c")
        assert merger.add_fragment(1, "a b c d") == " a b c d"

    def test_invalid_window_rejected(self) -> None:
        """The overlap window must admit at least one word."""
        with pytest.raises(ValueError):
            TranscriptMerger(max_overlap_words=0)

    def test_transcript_is_append_only(self) -> None:
        """Every intermediate transcript is a prefix of the final one."""
        merger = TranscriptMerger()
        snapshots: list[str] = []
        for index, text in enumerate(["so it begins", "begins again", "and again", "again."]):
            merger.add_fragment(index, text)
            snapshots.append(merger.transcript)
        for snapshot in snapshots:
            assert merger.transcript.startswith(snapshot)


class TestFragmentSequencer:
    """Ordering of fragments that complete out of order."""

    def test_releases_in_order(self) -> None:
        """A later fragment waits until every earlier one arrives."""
        sequencer = FragmentSequencer()
        assert sequencer.offer(_fragment(1)) == []
        assert sequencer.offer(_fragment(2)) == []
        assert sequencer.pending_count == 2
        released = sequencer.offer(_fragment(0))
        assert [fragment.sequence_index for fragment in released] == [0, 1, 2]
        assert sequencer.next_index == 3
        assert sequencer.pending_count == 0

    def test_duplicate_and_stale_offers_rejected(self) -> None:
        """Each index may be offered once."""
        sequencer = FragmentSequencer()
        sequencer.offer(_fragment(0))
        sequencer.offer(_fragment(2))
        with pytest.raises(ValueError):
            sequencer.offer(_fragment(0))
        with pytest.raises(ValueError):
            sequencer.offer(_fragment(2))

    def test_drain_skips_gaps(self) -> None:
        """Draining releases buffered fragments past missing indices."""
        sequencer = FragmentSequencer()
        sequencer.offer(_fragment(3))
        sequencer.offer(_fragment(1))
        released = sequencer.drain()
        assert [fragment.sequence_index for fragment in released] == [1, 3]
        assert sequencer.next_index == 4
        assert sequencer.drain() == []

    def test_clear_drops_buffered_fragments(self) -> None:
        """Cleared fragments are never released."""
        sequencer = FragmentSequencer(start_index=5)
        sequencer.offer(_fragment(6))
        sequencer.offer(_fragment(7))
        assert sequencer.clear() == 2
        assert sequencer.pending_count == 0
        assert sequencer.drain() == []
