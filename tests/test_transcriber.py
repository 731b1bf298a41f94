"""Tests for segment validation and upload in the segment transcriber."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace

import pytest

from streamscribe.config import TranscriptionConfig
from streamscribe.errors import (
    BackendEmptyResultError,
    ConfigurationError,
    SegmentUnavailableError,
    UploadError,
)
from streamscribe.models import TranscriptionOptions
from streamscribe.providers import InMemoryProviderSettingsStore, OpenAIProfile
from streamscribe.telemetry import TelemetryEvent, TelemetryMetric, TranscriptionLatencyMetric
from streamscribe.transcriber import SegmentTranscriber


class DummyTranscriptions:
    """Stub transcription namespace recording each request."""

    def __init__(self) -> None:
        """Initialise request storage and the canned response."""
        self.requests: list[dict[str, object]] = []
        self.response: object = "hello world"
        self.error: Exception | None = None

    async def create(self, **kwargs: object) -> object:
        """Record *kwargs* and return the configured response."""
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


class DummyAudio:
    """Container exposing the dummy transcription API."""

    def __init__(self, transcriptions: DummyTranscriptions) -> None:
        """Expose *transcriptions*."""
        self.transcriptions = transcriptions


@dataclass(slots=True)
class ClientFactory:
    """Builds dummy clients and remembers the credentials each was given."""

    transcriptions: DummyTranscriptions = field(default_factory=DummyTranscriptions)
    api_keys: list[str] = field(default_factory=list)
    base_urls: list[str] = field(default_factory=list)

    def __call__(self, **kwargs: object) -> SimpleNamespace:
        """Mimic ``AsyncOpenAI(**kwargs)``."""
        self.api_keys.append(str(kwargs["api_key"]))
        self.base_urls.append(str(kwargs["base_url"]))
        assert kwargs["max_retries"] == 0
        return SimpleNamespace(audio=DummyAudio(self.transcriptions))


@dataclass(slots=True)
class VerboseResponse:
    """Response shaped like a ``verbose_json`` transcription object."""

    text: str
    language: str | None = None
    duration: float | None = None
    segments: list[dict[str, object]] = field(default_factory=list)


@pytest.fixture(name="factory")
def factory_fixture(monkeypatch: pytest.MonkeyPatch) -> ClientFactory:
    """Replace the transcriber's ``AsyncOpenAI`` with a dummy client factory."""
    factory = ClientFactory()
    monkeypatch.setattr("streamscribe.transcriber.AsyncOpenAI", factory)
    return factory


def _store(
    api_key: str | None = "sk-test", base_url: str | None = None
) -> InMemoryProviderSettingsStore:
    return InMemoryProviderSettingsStore(
        [OpenAIProfile(id="p1", name="primary", openai_api_key=api_key, openai_base_url=base_url)]
    )


def _segment(directory: Path, index: int, size: int) -> Path:
    path = directory / f"segment_{index:03d}.webm"
    path.write_bytes(b"\x1a" * size)
    return path


@pytest.mark.asyncio
async def test_empty_segment_skips_upload(tmp_path: Path, factory: ClientFactory) -> None:
    """Zero-byte segments produce empty text without contacting the backend."""
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    assert await transcriber.transcribe(_segment(tmp_path, 0, 0)) == ""
    assert factory.transcriptions.requests == []
    assert factory.api_keys == []


@pytest.mark.asyncio
async def test_tiny_segment_skips_upload(tmp_path: Path, factory: ClientFactory) -> None:
    """Segments below the size threshold are treated as silence."""
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    assert await transcriber.transcribe(_segment(tmp_path, 0, 512)) == ""
    assert factory.transcriptions.requests == []


@pytest.mark.asyncio
async def test_upload_preserves_filename(tmp_path: Path, factory: ClientFactory) -> None:
    """The segment is uploaded under its own name with a matching content type."""
    transcriber = SegmentTranscriber(TranscriptionConfig(language="en"), _store())
    text = await transcriber.transcribe(_segment(tmp_path, 0, 2048))
    await transcriber.aclose()

    assert text == "hello world"
    (request,) = factory.transcriptions.requests
    filename, data, content_type = request["file"]  # type: ignore[misc]
    assert filename == "segment_000.webm"
    assert content_type == "audio/webm"
    assert isinstance(data, bytes) and len(data) == 2048
    assert request["model"] == "whisper-1"
    assert request["response_format"] == "verbose_json"
    assert request["language"] == "en"


@pytest.mark.asyncio
async def test_upload_latency_recorded(tmp_path: Path, factory: ClientFactory) -> None:
    """Each upload records a latency sample naming the segment file."""

    class Sink:
        def __init__(self) -> None:
            self.metrics: list[TelemetryMetric] = []

        def record_event(self, event: TelemetryEvent) -> None:
            return None

        def record_metric(self, metric: TelemetryMetric) -> None:
            self.metrics.append(metric)

    sink = Sink()
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store(), telemetry=sink)
    await transcriber.transcribe(_segment(tmp_path, 0, 2048))
    await transcriber.transcribe(_segment(tmp_path, 1, 0))
    await transcriber.aclose()

    (metric,) = sink.metrics
    assert isinstance(metric, TranscriptionLatencyMetric)
    assert metric.segment_name == "segment_000.webm"
    assert metric.size_bytes == 2048
    assert metric.seconds >= 0.0


@pytest.mark.asyncio
async def test_options_override_config(tmp_path: Path, factory: ClientFactory) -> None:
    """Per-call options take precedence and an unset language is omitted."""
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    options = TranscriptionOptions(model="whisper-large", response_format="text")
    await transcriber.transcribe(_segment(tmp_path, 0, 2048), options)
    await transcriber.aclose()

    (request,) = factory.transcriptions.requests
    assert request["model"] == "whisper-large"
    assert request["response_format"] == "text"
    assert "language" not in request


@pytest.mark.asyncio
async def test_verbose_response_parsed(tmp_path: Path, factory: ClientFactory) -> None:
    """Language, duration and timed segments are carried into the result."""
    factory.transcriptions.response = VerboseResponse(
        text="  good morning  ",
        language="english",
        duration=4.5,
        segments=[
            {"start": 0.0, "end": 2.0, "text": " good"},
            {"start": 2.0, "end": 4.5, "text": " morning"},
            {"start": "bad", "end": 1.0, "text": "skipped"},
        ],
    )
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    result = await transcriber.transcribe_result(_segment(tmp_path, 0, 2048))
    await transcriber.aclose()

    assert result.text == "good morning"
    assert result.language == "english"
    assert result.duration == 4.5
    assert [(s.start, s.end, s.text) for s in result.segments] == [
        (0.0, 2.0, "good"),
        (2.0, 4.5, "morning"),
    ]


@pytest.mark.asyncio
async def test_missing_segment_raises(tmp_path: Path, factory: ClientFactory) -> None:
    """A path that does not exist is reported as unavailable."""
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    with pytest.raises(SegmentUnavailableError):
        await transcriber.transcribe(tmp_path / "segment_009.webm")
    assert factory.transcriptions.requests == []


@pytest.mark.asyncio
async def test_blank_backend_text_raises(tmp_path: Path, factory: ClientFactory) -> None:
    """Whitespace-only backend output is an error distinct from silence."""
    factory.transcriptions.response = "   "
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    with pytest.raises(BackendEmptyResultError):
        await transcriber.transcribe(_segment(tmp_path, 0, 2048))
    await transcriber.aclose()


@pytest.mark.asyncio
async def test_response_without_text_raises(tmp_path: Path, factory: ClientFactory) -> None:
    """Responses lacking a text field are rejected."""
    factory.transcriptions.response = SimpleNamespace(language="en")
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    with pytest.raises(BackendEmptyResultError):
        await transcriber.transcribe(_segment(tmp_path, 0, 2048))
    await transcriber.aclose()


@pytest.mark.asyncio
async def test_provider_failure_raises_upload_error(
    tmp_path: Path, factory: ClientFactory
) -> None:
    """Transport and HTTP failures surface as upload errors."""
    factory.transcriptions.error = RuntimeError("503 Service Unavailable")
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    with pytest.raises(UploadError) as excinfo:
        await transcriber.transcribe(_segment(tmp_path, 0, 2048))
    await transcriber.aclose()
    assert not isinstance(excinfo.value, BackendEmptyResultError)
    assert "segment_000.webm" in str(excinfo.value)


@pytest.mark.asyncio
async def test_batch_preserves_input_order(tmp_path: Path, factory: ClientFactory) -> None:
    """Batch results line up with the input paths regardless of completion order."""
    delays = {"segment_000.webm": 0.03, "segment_001.webm": 0.0, "segment_002.webm": 0.01}

    class SlowTranscriptions(DummyTranscriptions):
        async def create(self, **kwargs: object) -> object:
            file_field = kwargs["file"]
            assert isinstance(file_field, tuple)
            name = str(file_field[0])
            await asyncio.sleep(delays[name])
            self.requests.append(kwargs)
            return f"text for {name}"

    factory.transcriptions = SlowTranscriptions()
    paths = [_segment(tmp_path, 0, 2048), _segment(tmp_path, 1, 2048), _segment(tmp_path, 2, 10)]
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store())
    texts = await transcriber.transcribe_batch(paths)
    await transcriber.aclose()

    assert texts == ["text for segment_000.webm", "text for segment_001.webm", ""]
    assert len(factory.transcriptions.requests) == 2


@pytest.mark.asyncio
async def test_missing_credentials_fail_before_upload(
    tmp_path: Path, factory: ClientFactory
) -> None:
    """Without a usable key no upload is attempted."""
    transcriber = SegmentTranscriber(TranscriptionConfig(), _store(api_key=None))
    with pytest.raises(ConfigurationError):
        await transcriber.transcribe(_segment(tmp_path, 0, 2048))
    with pytest.raises(ConfigurationError):
        await transcriber.prepare()
    assert factory.api_keys == []
    assert factory.transcriptions.requests == []


@pytest.mark.asyncio
async def test_client_cached_until_reset(tmp_path: Path, factory: ClientFactory) -> None:
    """Credentials are resolved once and re-resolved after a reset."""
    transcriber = SegmentTranscriber(
        TranscriptionConfig(), _store(base_url="https://proxy.example/v1")
    )
    credentials = await transcriber.prepare()
    assert credentials.profile_name == "primary"
    assert credentials.base_url == "https://proxy.example/v1"
    assert "sk-test" not in repr(credentials)

    segment = _segment(tmp_path, 0, 2048)
    await transcriber.transcribe(segment)
    await transcriber.transcribe(segment)
    assert factory.api_keys == ["sk-test"]

    await transcriber.reset()
    assert transcriber.credentials is None
    await transcriber.transcribe(segment)
    await transcriber.aclose()
    assert factory.api_keys == ["sk-test", "sk-test"]
    assert factory.base_urls == ["https://proxy.example/v1", "https://proxy.example/v1"]
