"""Parsers turning encoder diagnostic lines into typed events.

The encoder never announces that a segment file has been closed; the only
observable signal is the line it logs when it opens the next one. Parsing is kept
behind :class:`DiagnosticParser` so the watcher only ever sees
:class:`SegmentOpened` events and the text heuristics can be swapped for another
encoder or container.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Protocol

_OPENING_PATTERN: Final[re.Pattern[str]] = re.compile(r"Opening '(?P<path>[^']+)' for writing")
_INDEX_PATTERN: Final[re.Pattern[str]] = re.compile(r"(\d+)$")


@dataclass(frozen=True, slots=True)
class SegmentOpened:
    """The encoder started writing segment ``index`` at ``path``."""

    index: int
    path: Path


DiagnosticEvent = SegmentOpened


class DiagnosticParser(Protocol):
    """Protocol implemented by encoder diagnostic line parsers."""

    def parse(self, line: str) -> DiagnosticEvent | None:  # pragma: no cover - protocol
        """Return the event described by *line*, or ``None`` when it carries none."""
        ...


class FFmpegSegmentParser:
    """Recognise ffmpeg segment muxer ``Opening '<file>' for writing`` lines.

    The sequence index is taken from the trailing digits of the file stem, which
    ffmpeg fills from the ``%03d`` output pattern. Lines for files outside
    ``output_suffix`` (playlists, for example) are ignored when a suffix is set.
    """

    def __init__(self, *, output_suffix: str | None = None) -> None:
        """Optionally restrict matches to files ending in *output_suffix*."""
        if output_suffix and not output_suffix.startswith("."):
            output_suffix = f".{output_suffix}"
        self._suffix = output_suffix

    def parse(self, line: str) -> SegmentOpened | None:
        """Return a :class:`SegmentOpened` event for matching lines."""
        match = _OPENING_PATTERN.search(line)
        if match is None:
            return None
        path = Path(match.group("path"))
        if self._suffix is not None and path.suffix != self._suffix:
            return None
        index_match = _INDEX_PATTERN.search(path.stem)
        if index_match is None:
            return None
        return SegmentOpened(index=int(index_match.group(1)), path=path)
