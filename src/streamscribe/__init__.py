"""Near-real-time segmented speech-to-text transcription."""

from __future__ import annotations

from .config import EncoderConfig, SessionConfig, TranscriptionConfig
from .diagnostics import DiagnosticParser, FFmpegSegmentParser, SegmentOpened
from .encoder import EncoderHandle, EncoderProcess
from .errors import (
    BackendEmptyResultError,
    ConfigurationError,
    EncoderProcessError,
    SegmentUnavailableError,
    StreamscribeError,
    UploadError,
)
from .eventbus import (
    TOPIC_CHUNK_READY,
    TOPIC_FAILED,
    TOPIC_FINISHED,
    TOPIC_PROGRESS,
    SESSION_TOPICS,
    ConsumerCallback,
    EventBus,
)
from .merger import FragmentSequencer, TranscriptMerger
from .models import (
    ChunkReady,
    ErrorKind,
    ProgressiveUpdate,
    SegmentDescriptor,
    SegmentReady,
    SegmentState,
    Session,
    SessionFailed,
    SessionFinished,
    SessionState,
    TranscriptFragment,
    TranscriptionOptions,
    TranscriptionResult,
    TranscriptionSegment,
)
from .providers import (
    AnthropicProfile,
    BackendCredentials,
    InMemoryProviderSettingsStore,
    JsonProviderSettingsStore,
    MoonshotProfile,
    OpenAINativeProfile,
    OpenAIProfile,
    ProviderProfile,
    ProviderProfileSummary,
    ProviderSettingsStore,
    resolve_backend_credentials,
)
from .session import SessionOrchestrator
from .transcriber import SegmentTranscriber
from .watcher import SegmentWatcher

__all__ = [
    "SESSION_TOPICS",
    "TOPIC_CHUNK_READY",
    "TOPIC_FAILED",
    "TOPIC_FINISHED",
    "TOPIC_PROGRESS",
    "AnthropicProfile",
    "BackendCredentials",
    "BackendEmptyResultError",
    "ChunkReady",
    "ConfigurationError",
    "ConsumerCallback",
    "DiagnosticParser",
    "EncoderConfig",
    "EncoderHandle",
    "EncoderProcess",
    "EncoderProcessError",
    "ErrorKind",
    "EventBus",
    "FFmpegSegmentParser",
    "FragmentSequencer",
    "InMemoryProviderSettingsStore",
    "JsonProviderSettingsStore",
    "MoonshotProfile",
    "OpenAINativeProfile",
    "OpenAIProfile",
    "ProgressiveUpdate",
    "ProviderProfile",
    "ProviderProfileSummary",
    "ProviderSettingsStore",
    "SegmentDescriptor",
    "SegmentOpened",
    "SegmentReady",
    "SegmentState",
    "SegmentTranscriber",
    "SegmentUnavailableError",
    "SegmentWatcher",
    "Session",
    "SessionConfig",
    "SessionFailed",
    "SessionFinished",
    "SessionOrchestrator",
    "SessionState",
    "StreamscribeError",
    "TranscriptFragment",
    "TranscriptMerger",
    "TranscriptionConfig",
    "TranscriptionOptions",
    "TranscriptionResult",
    "TranscriptionSegment",
    "UploadError",
    "resolve_backend_credentials",
]
