"""Telemetry hook interfaces for structured logging and metrics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol


@dataclass(frozen=True, slots=True)
class TelemetrySignal:
    """Base class for telemetry signals."""

    emitted_at: datetime = field(init=False)

    def __post_init__(self) -> None:
        """Stamp the signal with the UTC time it was emitted."""
        object.__setattr__(self, "emitted_at", datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TelemetryEvent(TelemetrySignal):
    """Represents a discrete telemetry event."""


@dataclass(frozen=True, slots=True)
class TelemetryMetric(TelemetrySignal):
    """Represents a telemetry metric sample."""


@dataclass(frozen=True, slots=True)
class TranscriptionLatencyMetric(TelemetryMetric):
    """Metric describing how long a single segment upload took."""

    segment_name: str
    seconds: float
    size_bytes: int


@dataclass(frozen=True, slots=True)
class SegmentErrorEvent(TelemetryEvent):
    """Event emitted when a segment contributes no text because of an error."""

    session_id: str
    sequence_index: int
    error_type: str
    message: str | None = None


@dataclass(frozen=True, slots=True)
class DiagnosticAnomalyEvent(TelemetryEvent):
    """Event emitted when the encoder reports a non-contiguous segment index."""

    expected_index: int
    observed_index: int
    line: str


@dataclass(frozen=True, slots=True)
class EncoderExitEvent(TelemetryEvent):
    """Event emitted when the encoder process exits while a session is recording."""

    session_id: str
    returncode: int | None


class TelemetrySink(Protocol):
    """Protocol for emitting structured telemetry signals."""

    def record_event(self, event: TelemetryEvent) -> None:  # pragma: no cover - protocol
        """Record a structured event for diagnostics."""
        ...

    def record_metric(self, metric: TelemetryMetric) -> None:  # pragma: no cover - protocol
        """Record a metric sample."""
        ...


class NullTelemetrySink(TelemetrySink):
    """Telemetry sink that drops all signals."""

    def record_event(self, event: TelemetryEvent) -> None:
        """Drop the event without side effects."""

    def record_metric(self, metric: TelemetryMetric) -> None:
        """Drop the metric without side effects."""
