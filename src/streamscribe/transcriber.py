"""Segment transcriber backed by an OpenAI-compatible transcription endpoint.

Each segment file is validated before upload: missing files are errors, while
empty or tiny files (a session stopped mid-segment) yield empty text without
contacting the backend. Files are uploaded under their original name so the
provider can infer the container from the extension.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Protocol, cast, runtime_checkable

import httpx
from openai import AsyncOpenAI

from .config import TranscriptionConfig
from .errors import (
    BackendEmptyResultError,
    ConfigurationError,
    SegmentUnavailableError,
    UploadError,
)
from .models import TranscriptionOptions, TranscriptionResult, TranscriptionSegment
from .providers import BackendCredentials, ProviderSettingsStore, resolve_backend_credentials
from .telemetry import NullTelemetrySink, TelemetrySink, TranscriptionLatencyMetric

logger = logging.getLogger(__name__)

_CONTENT_TYPES: dict[str, str] = {
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".opus": "audio/ogg",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".flac": "audio/flac",
}


@runtime_checkable
class _TranscriptionsAPI(Protocol):
    async def create(self, **kwargs: Any) -> object:  # pragma: no cover - protocol
        ...


@runtime_checkable
class _AudioAPI(Protocol):
    @property
    def transcriptions(self) -> _TranscriptionsAPI:  # pragma: no cover - protocol
        ...


@runtime_checkable
class OpenAIClientLike(Protocol):
    """Minimal protocol for the OpenAI async client used by the transcriber."""

    @property
    def audio(self) -> _AudioAPI:  # pragma: no cover - protocol
        """Return the audio API namespace exposing transcriptions.create()."""
        ...


class SegmentTranscriber:
    """Turns segment files into text using the configured transcription backend."""

    def __init__(
        self,
        config: TranscriptionConfig,
        store: ProviderSettingsStore,
        *,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create a transcriber resolving credentials from *store* on first use."""
        self._config = config
        self._store = store
        self._telemetry = telemetry or NullTelemetrySink()
        self._client: OpenAIClientLike | None = None
        self._http_client: httpx.AsyncClient | None = None
        self._credentials: BackendCredentials | None = None
        self._client_lock = asyncio.Lock()
        self._upload_slots = asyncio.Semaphore(config.max_concurrency)

    @property
    def credentials(self) -> BackendCredentials | None:
        """Return the resolved credentials, if the client has been built."""
        return self._credentials

    async def prepare(self) -> BackendCredentials:
        """Resolve credentials and build the client now instead of on first upload.

        Raises:
            ConfigurationError: If no usable credential is configured.
        """
        await self._get_client()
        assert self._credentials is not None
        return self._credentials

    async def transcribe(
        self, path: Path | str, options: TranscriptionOptions | None = None
    ) -> str:
        """Return the transcript text for the segment at *path* (``""`` when empty)."""
        result = await self.transcribe_result(path, options)
        return result.text

    async def transcribe_batch(
        self, paths: Iterable[Path | str], options: TranscriptionOptions | None = None
    ) -> list[str]:
        """Transcribe *paths* concurrently, returning texts in input order."""
        return list(await asyncio.gather(*(self.transcribe(path, options) for path in paths)))

    async def transcribe_result(
        self, path: Path | str, options: TranscriptionOptions | None = None
    ) -> TranscriptionResult:
        """Validate, upload and transcribe the segment at *path*.

        Raises:
            SegmentUnavailableError: If the file cannot be inspected or read.
            ConfigurationError: If no backend credential can be resolved.
            UploadError: If the backend call fails.
            BackendEmptyResultError: If the backend returns no text.
        """
        segment_path = Path(path)
        try:
            stat = await asyncio.to_thread(segment_path.stat)
        except OSError as exc:
            raise SegmentUnavailableError(f"Cannot stat segment {segment_path}: {exc}") from exc

        size = stat.st_size
        logger.debug("Segment %s is %d bytes", segment_path, size)
        if size == 0:
            logger.info("Skipping empty segment %s", segment_path)
            return TranscriptionResult(path=segment_path, text="")
        if size < self._config.min_segment_bytes:
            logger.info(
                "Skipping segment %s: %d bytes below threshold=%d",
                segment_path,
                size,
                self._config.min_segment_bytes,
            )
            return TranscriptionResult(path=segment_path, text="")

        client = await self._get_client()
        try:
            data = await asyncio.to_thread(segment_path.read_bytes)
        except OSError as exc:
            raise SegmentUnavailableError(f"Cannot read segment {segment_path}: {exc}") from exc

        request = self._build_request(segment_path, data, options)
        create = cast(Any, client.audio.transcriptions.create)
        async with self._upload_slots:
            logger.debug("Uploading %s (%d bytes)", segment_path.name, len(data))
            started = time.monotonic()
            try:
                response = await create(**request)
            except Exception as exc:
                raise UploadError(f"Upload of {segment_path.name} failed: {exc}") from exc
            elapsed = time.monotonic() - started

        self._telemetry.record_metric(
            TranscriptionLatencyMetric(
                segment_name=segment_path.name, seconds=elapsed, size_bytes=len(data)
            )
        )
        result = _parse_response(segment_path, response)
        logger.info(
            "Transcribed %s in %.2fs (%d chars)", segment_path.name, elapsed, len(result.text)
        )
        return result

    async def reset(self) -> None:
        """Drop the cached client so the next call re-resolves credentials."""
        async with self._client_lock:
            http_client = self._http_client
            self._client = None
            self._http_client = None
            self._credentials = None
        if http_client is not None:
            await http_client.aclose()
            logger.debug("Transcription HTTP client closed")

    async def aclose(self) -> None:
        """Release the underlying HTTP client."""
        await self.reset()

    def _build_request(
        self, path: Path, data: bytes, options: TranscriptionOptions | None
    ) -> dict[str, object]:
        options = options or TranscriptionOptions()
        content_type = _CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
        request: dict[str, object] = {
            "model": options.model or self._config.model,
            "file": (path.name, data, content_type),
            "response_format": options.response_format or self._config.response_format,
        }
        language = options.language or self._config.language
        if language:
            request["language"] = language
        return request

    async def _get_client(self) -> OpenAIClientLike:
        async with self._client_lock:
            if self._client is not None:
                return self._client

            credentials = await resolve_backend_credentials(
                self._store,
                families=self._config.provider_families,
                default_base_url=str(self._config.default_base_url),
            )
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout),
                limits=httpx.Limits(max_connections=self._config.max_connections),
            )
            client = AsyncOpenAI(
                api_key=credentials.api_key,
                base_url=credentials.base_url,
                http_client=http_client,
                max_retries=0,
            )
            if not _supports_transcriptions_api(client):
                await http_client.aclose()
                raise ConfigurationError("OpenAI client does not expose expected API surface")

            self._client = cast(OpenAIClientLike, client)
            self._http_client = http_client
            self._credentials = credentials
            logger.debug("Transcription client ready for %s", credentials.base_url)
            return self._client


def _parse_response(path: Path, response: object) -> TranscriptionResult:
    """Convert a provider response (object or plain text) into a result."""
    text = response if isinstance(response, str) else getattr(response, "text", None)
    if not isinstance(text, str):
        raise BackendEmptyResultError("Transcription provider response missing text")
    cleaned = text.strip()
    if not cleaned:
        raise BackendEmptyResultError(
            f"Transcription provider returned empty text for {path.name}"
        )

    language = getattr(response, "language", None)
    duration = getattr(response, "duration", None)
    return TranscriptionResult(
        path=path,
        text=cleaned,
        language=language if isinstance(language, str) else None,
        duration=float(duration) if isinstance(duration, int | float) else None,
        segments=_parse_segments(getattr(response, "segments", None)),
    )


def _parse_segments(raw: object) -> Sequence[TranscriptionSegment]:
    if not isinstance(raw, list | tuple):
        return ()
    parsed: list[TranscriptionSegment] = []
    for item in cast(Sequence[object], raw):
        fields = item if isinstance(item, dict) else None
        start = fields.get("start") if fields is not None else getattr(item, "start", None)
        end = fields.get("end") if fields is not None else getattr(item, "end", None)
        text = fields.get("text") if fields is not None else getattr(item, "text", None)
        if not isinstance(start, int | float) or not isinstance(end, int | float):
            continue
        if not isinstance(text, str):
            continue
        parsed.append(TranscriptionSegment(start=float(start), end=float(end), text=text.strip()))
    return tuple(parsed)


def _supports_transcriptions_api(candidate: object) -> bool:
    """Return ``True`` when *candidate* satisfies :class:`OpenAIClientLike`."""
    if candidate is None:
        return False

    audio_ns = getattr(candidate, "audio", None)
    if audio_ns is None:
        return False

    transcriptions = getattr(audio_ns, "transcriptions", None)
    if transcriptions is None:
        return False

    create = getattr(transcriptions, "create", None)
    return callable(create)
