"""Ordered, overlap-aware merging of per-segment transcript fragments."""

from __future__ import annotations

import heapq
import logging
import re
import string
from typing import Final

from .models import TranscriptFragment

logger = logging.getLogger(__name__)

_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\S+")


def _normalize_token(token: str) -> str:
    """Return the comparison key for *token* (case-folded, edge punctuation removed)."""
    stripped = token.strip(string.punctuation)
    return (stripped or token).casefold()


class TranscriptMerger:
    """Append-only transcript built from fragments that may overlap at their edges.

    Segment boundaries are time based, so speech straddling a boundary can be
    transcribed at the tail of one segment and again at the head of the next. Each
    incoming fragment is compared token by token against the tail of the merged
    transcript; the longest run of leading tokens that repeats the tail is dropped
    and only the remainder is appended. Once appended, text is never rewritten.
    """

    def __init__(self, *, max_overlap_words: int = 32) -> None:
        """Create an empty merger considering overlaps up to *max_overlap_words*."""
        if max_overlap_words < 1:
            raise ValueError("max_overlap_words must be at least 1")
        self._max_overlap = max_overlap_words
        self._transcript = ""
        self._tail: list[str] = []
        self._last_index = -1

    @property
    def transcript(self) -> str:
        """Return the full merged transcript."""
        return self._transcript

    @property
    def last_index(self) -> int:
        """Return the sequence index of the most recently merged fragment."""
        return self._last_index

    def add_fragment(self, sequence_index: int, text: str) -> str:
        """Merge *text* for *sequence_index* and return the newly appended suffix.

        Raises:
            ValueError: If *sequence_index* does not increase.
        """
        if sequence_index <= self._last_index:
            raise ValueError(
                f"Fragment {sequence_index} arrived after fragment {self._last_index}"
            )
        self._last_index = sequence_index
        cleaned = text.strip()
        if not cleaned:
            return ""

        matches = list(_TOKEN_PATTERN.finditer(cleaned))
        overlap = self._overlap_length([_normalize_token(m.group(0)) for m in matches])
        if overlap:
            remainder = cleaned[matches[overlap - 1].end() :].lstrip()
            logger.debug(
                "Fragment %d overlaps transcript by %d word(s)", sequence_index, overlap
            )
        else:
            remainder = cleaned
        if not remainder:
            return ""

        increment = f" {remainder}" if self._transcript else remainder
        self._transcript += increment
        new_tokens = [_normalize_token(token) for token in _TOKEN_PATTERN.findall(remainder)]
        self._tail = (self._tail + new_tokens)[-self._max_overlap :]
        return increment

    def _overlap_length(self, incoming: list[str]) -> int:
        """Return the longest k where the transcript's last k tokens open *incoming*."""
        limit = min(len(self._tail), len(incoming), self._max_overlap)
        for size in range(limit, 0, -1):
            if self._tail[-size:] == incoming[:size]:
                return size
        return 0


class FragmentSequencer:
    """Releases fragments strictly in sequence-index order.

    Fragments completing out of order are held in a min-heap keyed by index until
    every lower index has been released.
    """

    def __init__(self, *, start_index: int = 0) -> None:
        """Create a sequencer expecting *start_index* first."""
        self._next_index = start_index
        self._heap: list[tuple[int, TranscriptFragment]] = []
        self._pending: set[int] = set()

    @property
    def next_index(self) -> int:
        """Return the index the sequencer is waiting for."""
        return self._next_index

    @property
    def pending_count(self) -> int:
        """Return how many fragments are buffered awaiting earlier indices."""
        return len(self._heap)

    def offer(self, fragment: TranscriptFragment) -> list[TranscriptFragment]:
        """Buffer *fragment* and return all fragments now releasable, in order."""
        index = fragment.sequence_index
        if index < self._next_index or index in self._pending:
            raise ValueError(f"Fragment {index} was already offered")
        heapq.heappush(self._heap, (index, fragment))
        self._pending.add(index)
        released: list[TranscriptFragment] = []
        while self._heap and self._heap[0][0] == self._next_index:
            _, ready = heapq.heappop(self._heap)
            self._pending.discard(ready.sequence_index)
            released.append(ready)
            self._next_index += 1
        return released

    def drain(self) -> list[TranscriptFragment]:
        """Release every buffered fragment in index order, skipping any gaps."""
        released: list[TranscriptFragment] = []
        while self._heap:
            _, ready = heapq.heappop(self._heap)
            released.append(ready)
            self._next_index = ready.sequence_index + 1
        self._pending.clear()
        if released:
            logger.warning(
                "Released %d fragment(s) past missing segment indices", len(released)
            )
        return released

    def clear(self) -> int:
        """Discard all buffered fragments and return how many were dropped."""
        dropped = len(self._heap)
        self._heap.clear()
        self._pending.clear()
        return dropped
