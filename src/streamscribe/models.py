"""Typed data models for segments, fragments, sessions and emitted events."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


def _utcnow() -> datetime:
    """Return the current UTC time."""

    return datetime.now(UTC)


class SegmentState(str, Enum):
    """Transcription state of a single segment."""

    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    EMPTY = "empty"
    FAILED = "failed"


class SessionState(str, Enum):
    """Lifecycle state of a recording session."""

    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Session-level failure categories surfaced to callers."""

    CONFIGURATION = "configuration"
    ENCODER_PROCESS = "encoder_process"


@dataclass(frozen=True, slots=True)
class SegmentReady:
    """Signal that a segment file has been closed by the encoder.

    ``detected_at`` is :func:`time.monotonic` time, used to apply the settle delay before the
    file is handed to a reader.
    """

    sequence_index: int
    path: Path
    detected_at: float


@dataclass(slots=True)
class SegmentDescriptor:
    """One time-boxed audio unit written by the encoder."""

    sequence_index: int
    path: Path
    size_bytes: int | None = None
    state: SegmentState = SegmentState.PENDING


@dataclass(frozen=True, slots=True)
class TranscriptFragment:
    """Transcription text produced for exactly one segment."""

    sequence_index: int
    text: str
    received_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class Session:
    """State of one recording and transcription run."""

    session_id: str
    state: SessionState = SessionState.IDLE
    segments: list[SegmentDescriptor] = field(default_factory=list)
    transcript: str = ""
    started_at: datetime = field(default_factory=_utcnow)

    def failed_segments(self) -> list[int]:
        """Return indices of segments that contributed no text due to errors."""

        return [
            segment.sequence_index
            for segment in self.segments
            if segment.state is SegmentState.FAILED
        ]


@dataclass(frozen=True, slots=True)
class TranscriptionOptions:
    """Per-call overrides for transcription requests."""

    language: str | None = None
    model: str | None = None
    response_format: str | None = None


@dataclass(frozen=True, slots=True)
class TranscriptionSegment:
    """Timed span of text reported by the backend for ``verbose_json`` responses."""

    start: float
    end: float
    text: str


@dataclass(frozen=True, slots=True)
class TranscriptionResult:
    """Completed transcription of a single segment file."""

    path: Path
    text: str
    language: str | None = None
    duration: float | None = None
    segments: Sequence[TranscriptionSegment] = ()


@dataclass(frozen=True, slots=True)
class ChunkReady:
    """Event published when a segment file is ready for transcription."""

    session_id: str
    sequence_index: int
    path: Path


@dataclass(frozen=True, slots=True)
class ProgressiveUpdate:
    """Event carrying newly merged transcript text."""

    session_id: str
    sequence_index: int
    increment: str
    transcript: str


@dataclass(frozen=True, slots=True)
class SessionFinished:
    """Event published once a session has stopped and all segments resolved."""

    session_id: str
    transcript: str
    segment_count: int
    failed_segments: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class SessionFailed:
    """Terminal failure event for a session."""

    session_id: str | None
    error_kind: ErrorKind
    message: str
