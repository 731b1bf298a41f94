"""Configuration schemas for the streamscribe pipeline."""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
)

ResponseFormat = Literal["json", "text", "verbose_json"]

DEFAULT_BASE_URL = "https://api.openai.com/v1"


def _default_input_format() -> str:
    """Return the ffmpeg capture format for the running platform."""
    if sys.platform == "darwin":
        return "avfoundation"
    if sys.platform == "win32":
        return "dshow"
    return "pulse"


def _default_device() -> str:
    """Return the default capture device identifier for the running platform."""
    if sys.platform == "darwin":
        return ":0"
    if sys.platform == "win32":
        return "audio=default"
    return "default"


def _default_output_dir() -> Path:
    return Path.cwd() / "segments"


class EncoderConfig(BaseModel):
    """Settings for the external ffmpeg encoder producing segment files."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    executable: str = Field(default="ffmpeg", description="Encoder executable name or path")
    input_format: str = Field(
        default_factory=_default_input_format,
        description="ffmpeg capture format (e.g. 'pulse', 'alsa', 'avfoundation', 'dshow')",
    )
    device: str = Field(
        default_factory=_default_device,
        description="Capture device identifier passed to ffmpeg's -i option",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Directory receiving segment files",
    )
    filename_prefix: str = Field(
        default="segment", min_length=1, description="Prefix for segment filenames"
    )
    container: str = Field(
        default="webm",
        min_length=1,
        description="Segment container; also the file extension the backend sees",
    )
    codec: str = Field(default="libopus", description="Audio codec for segment files")
    bitrate: str = Field(default="32k", description="Target audio bitrate")
    sample_rate: PositiveInt = Field(default=16000, description="Output sample rate in Hz")
    channels: PositiveInt = Field(default=1, description="Output channel count")
    segment_seconds: PositiveFloat = Field(
        default=5.0, description="Fixed duration of each segment in seconds"
    )
    terminate_timeout: PositiveFloat = Field(
        default=5.0,
        description="Seconds to wait for a graceful encoder exit before killing it",
    )

    @property
    def segment_pattern(self) -> Path:
        """Return the ffmpeg output pattern for segment files."""
        return self.output_dir / f"{self.filename_prefix}_%03d.{self.container}"

    def build_command(self) -> list[str]:
        """Return the argv used to spawn the encoder."""
        return [
            self.executable,
            "-hide_banner",
            "-nostdin",
            "-nostats",
            "-loglevel",
            "verbose",
            "-f",
            self.input_format,
            "-i",
            self.device,
            "-ac",
            str(self.channels),
            "-ar",
            str(self.sample_rate),
            "-c:a",
            self.codec,
            "-b:a",
            self.bitrate,
            "-f",
            "segment",
            "-segment_time",
            f"{self.segment_seconds:g}",
            "-segment_format",
            self.container,
            "-reset_timestamps",
            "1",
            str(self.segment_pattern),
        ]

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> EncoderConfig:
        """Build an encoder configuration from environment variables.

        Recognised variables:
            - ``STREAMSCRIBE_FFMPEG`` → ``executable``
            - ``STREAMSCRIBE_INPUT_FORMAT`` → ``input_format``
            - ``STREAMSCRIBE_DEVICE`` → ``device``
            - ``STREAMSCRIBE_SEGMENT_SECONDS`` → ``segment_seconds`` (float)
            - ``STREAMSCRIBE_OUTPUT_DIR`` → ``output_dir``
        """
        source = dict(os.environ if env is None else env)
        updates: dict[str, object] = {}
        string_overrides = {
            "STREAMSCRIBE_FFMPEG": "executable",
            "STREAMSCRIBE_INPUT_FORMAT": "input_format",
            "STREAMSCRIBE_DEVICE": "device",
        }
        for env_key, field in string_overrides.items():
            raw = source.get(env_key)
            if raw:
                updates[field] = raw
        seconds_raw = source.get("STREAMSCRIBE_SEGMENT_SECONDS")
        if seconds_raw is not None:
            try:
                updates["segment_seconds"] = float(seconds_raw)
            except ValueError as exc:
                raise ValueError(
                    "STREAMSCRIBE_SEGMENT_SECONDS must be a floating point value"
                ) from exc
        output_dir = source.get("STREAMSCRIBE_OUTPUT_DIR")
        if output_dir:
            updates["output_dir"] = Path(output_dir).expanduser()
        return cls.model_validate(updates)


class TranscriptionConfig(BaseModel):
    """Settings for the OpenAI-compatible transcription backend."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str = Field(default="whisper-1", description="Speech-to-text model identifier")
    language: str | None = Field(
        default=None, description="Optional language hint (ISO-639-1) passed to the provider"
    )
    response_format: ResponseFormat = Field(
        default="verbose_json", description="Response shape requested from the provider"
    )
    min_segment_bytes: NonNegativeInt = Field(
        default=1024,
        description="Segments smaller than this are assumed to hold no usable audio",
    )
    request_timeout: PositiveFloat = Field(
        default=60.0, description="HTTP timeout (seconds) for a single upload"
    )
    max_concurrency: PositiveInt = Field(
        default=4, description="Maximum concurrent uploads to the provider"
    )
    max_connections: PositiveInt = Field(
        default=10, description="Connection pool size for the HTTP client"
    )
    provider_families: tuple[str, ...] = Field(
        default=("openai", "openai-native"),
        min_length=1,
        description="Provider profile families whose credentials can reach the backend",
    )
    default_base_url: HttpUrl = Field(
        default=HttpUrl(DEFAULT_BASE_URL),
        description="Backend URL used when the matching profile does not set one",
    )

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> TranscriptionConfig:
        """Build a configuration from environment variables with safe defaults.

        Recognised variables:
            - ``OPENAI_WHISPER_MODEL`` → ``model`` (defaults to ``whisper-1``)
            - ``STREAMSCRIBE_LANGUAGE`` → ``language``
            - ``STREAMSCRIBE_RESPONSE_FORMAT`` → ``response_format``
            - ``STREAMSCRIBE_REQUEST_TIMEOUT`` → ``request_timeout`` (float)
        """
        source = dict(os.environ if env is None else env)
        updates: dict[str, object] = {"model": source.get("OPENAI_WHISPER_MODEL", "whisper-1")}
        language = source.get("STREAMSCRIBE_LANGUAGE")
        if language:
            updates["language"] = language
        response_format = source.get("STREAMSCRIBE_RESPONSE_FORMAT")
        if response_format:
            updates["response_format"] = response_format
        timeout_raw = source.get("STREAMSCRIBE_REQUEST_TIMEOUT")
        if timeout_raw is not None:
            try:
                updates["request_timeout"] = float(timeout_raw)
            except ValueError as exc:
                raise ValueError(
                    "STREAMSCRIBE_REQUEST_TIMEOUT must be a floating point value"
                ) from exc
        return cls.model_validate(updates)


class SessionConfig(BaseModel):
    """Runtime tuning for a recording session."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    settle_delay: NonNegativeFloat = Field(
        default=0.3,
        description="Seconds to wait after a segment closes before reading its file",
    )
    transcription_timeout: PositiveFloat = Field(
        default=90.0,
        description="Upper bound (seconds) on a single segment's transcription",
    )
    max_overlap_words: PositiveInt = Field(
        default=32,
        description="Largest boundary overlap (in words) considered during merging",
    )

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> SessionConfig:
        """Construct a configuration from environment variables.

        Recognised variables:
            - ``STREAMSCRIBE_SETTLE_DELAY`` overrides the settle delay (float)
            - ``STREAMSCRIBE_TRANSCRIPTION_TIMEOUT`` overrides the per-segment timeout (float)
            - ``STREAMSCRIBE_MAX_OVERLAP_WORDS`` overrides the merge window (integer)
        """
        source = dict(os.environ if env is None else env)
        updates: dict[str, object] = {}

        float_overrides: dict[str, tuple[str, str]] = {
            "STREAMSCRIBE_SETTLE_DELAY": (
                "settle_delay",
                "STREAMSCRIBE_SETTLE_DELAY must be a floating point value",
            ),
            "STREAMSCRIBE_TRANSCRIPTION_TIMEOUT": (
                "transcription_timeout",
                "STREAMSCRIBE_TRANSCRIPTION_TIMEOUT must be a floating point value",
            ),
        }
        for env_key, (field, error_message) in float_overrides.items():
            raw = source.get(env_key)
            if raw is None:
                continue
            try:
                updates[field] = float(raw)
            except ValueError as exc:
                raise ValueError(error_message) from exc

        overlap_raw = source.get("STREAMSCRIBE_MAX_OVERLAP_WORDS")
        if overlap_raw is not None:
            try:
                updates["max_overlap_words"] = int(overlap_raw)
            except ValueError as exc:
                raise ValueError("STREAMSCRIBE_MAX_OVERLAP_WORDS must be an integer") from exc

        return cls.model_validate(updates)
