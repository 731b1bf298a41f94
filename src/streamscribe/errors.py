"""Exception hierarchy for the streamscribe transcription pipeline."""

from __future__ import annotations


class StreamscribeError(Exception):
    """Base exception for all streamscribe errors."""


class ConfigurationError(StreamscribeError):
    """Raised when no usable transcription backend credential can be resolved."""


class SegmentUnavailableError(StreamscribeError):
    """Raised when a segment file cannot be found or inspected."""


class UploadError(StreamscribeError):
    """Raised when uploading a segment to the transcription backend fails."""


class BackendEmptyResultError(UploadError):
    """Raised when the backend returns no text for a non-empty segment."""


class EncoderProcessError(StreamscribeError):
    """Raised when the external encoder cannot be spawned or exits unexpectedly."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        """Store the encoder *returncode* alongside the *message*."""
        super().__init__(message)
        self.returncode = returncode
