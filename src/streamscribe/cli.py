"""Command-line interface for live, segmented speech-to-text transcription."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import traceback
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from dotenv import find_dotenv, load_dotenv
from pydantic import ValidationError

from .config import EncoderConfig, SessionConfig, TranscriptionConfig
from .errors import StreamscribeError
from .eventbus import TOPIC_FAILED, TOPIC_FINISHED, TOPIC_PROGRESS
from .models import ProgressiveUpdate, SessionFailed, SessionFinished
from .providers import (
    InMemoryProviderSettingsStore,
    JsonProviderSettingsStore,
    ProviderSettingsStore,
)
from .session import SessionOrchestrator
from .transcriber import SegmentTranscriber

LOG_LEVELS: Final[dict[str, int]] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


@dataclass(frozen=True, slots=True)
class CliOptions:
    """Parsed command-line options for the streamscribe CLI.

    ``None`` values defer to the environment-derived configuration.
    """

    device: str | None
    input_format: str | None
    segment_seconds: float | None
    output_dir: Path | None
    language: str | None
    model: str | None
    providers_path: Path | None
    dotenv_path: Path | None
    log_level: int


async def run_async(options: CliOptions) -> int:
    """Record and transcribe until interrupted, returning the process exit code."""
    logger = _setup_logging(options.log_level)

    dotenv_file = (
        str(options.dotenv_path) if options.dotenv_path is not None else find_dotenv(usecwd=True)
    )
    if dotenv_file:
        load_dotenv(dotenv_file, override=True)
        logger.info("Loaded environment from %s (override=True)", dotenv_file)
    else:
        logger.debug("No .env file found; relying on process environment only")

    try:
        encoder_cfg, transcription_cfg, session_cfg = resolve_configs(options)
    except (ValueError, ValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    store = _build_provider_store(options)
    transcriber = SegmentTranscriber(transcription_cfg, store)
    orchestrator = SessionOrchestrator.from_config(
        transcriber, encoder_cfg, config=session_cfg
    )
    done = asyncio.Event()
    failures: list[SessionFailed] = []

    async def _print_progress(event: object) -> None:
        if isinstance(event, ProgressiveUpdate):
            print(event.increment, end="", flush=True)

    async def _print_final(event: object) -> None:
        if isinstance(event, SessionFinished):
            print(flush=True)
            print(f"--> {event.transcript}", flush=True)

    async def _record_failure(event: object) -> None:
        if isinstance(event, SessionFailed):
            failures.append(event)
            done.set()

    bus = orchestrator.event_bus
    await bus.subscribe(TOPIC_PROGRESS, _print_progress)
    await bus.subscribe(TOPIC_FINISHED, _print_final)
    await bus.subscribe(TOPIC_FAILED, _record_failure)

    try:
        await orchestrator.start()
        logger.info(
            "Recording from %s (%s) in %gs segments; press Ctrl+C to stop",
            encoder_cfg.device,
            encoder_cfg.input_format,
            encoder_cfg.segment_seconds,
        )
        await _wait_for_shutdown_signal(done)
    except StreamscribeError as exc:
        logger.error("Transcription session error: %s", exc)
        print(f"streamscribe error: {exc}", file=sys.stderr)
        return 1
    finally:
        await orchestrator.stop()
        await transcriber.aclose()

    if failures:
        failure = failures[-1]
        print(f"Session failed ({failure.error_kind.value}): {failure.message}", file=sys.stderr)
        return 1
    return 0


def resolve_configs(
    options: CliOptions,
) -> tuple[EncoderConfig, TranscriptionConfig, SessionConfig]:
    """Merge CLI overrides onto the environment-derived configurations."""
    encoder_cfg = EncoderConfig.from_environment()
    encoder_updates: dict[str, object] = {}
    if options.device is not None:
        encoder_updates["device"] = options.device
    if options.input_format is not None:
        encoder_updates["input_format"] = options.input_format
    if options.segment_seconds is not None:
        encoder_updates["segment_seconds"] = options.segment_seconds
    if options.output_dir is not None:
        encoder_updates["output_dir"] = options.output_dir
    if encoder_updates:
        encoder_cfg = EncoderConfig.model_validate(
            encoder_cfg.model_dump() | encoder_updates
        )

    transcription_cfg = TranscriptionConfig.from_environment()
    transcription_updates: dict[str, object] = {}
    if options.language is not None:
        transcription_updates["language"] = options.language
    if options.model is not None:
        transcription_updates["model"] = options.model
    if transcription_updates:
        transcription_cfg = TranscriptionConfig.model_validate(
            transcription_cfg.model_dump() | transcription_updates
        )

    return encoder_cfg, transcription_cfg, SessionConfig.from_environment()


def _build_provider_store(options: CliOptions) -> ProviderSettingsStore:
    if options.providers_path is not None:
        return JsonProviderSettingsStore(options.providers_path)
    return InMemoryProviderSettingsStore.from_environment()


def _setup_logging(log_level: int) -> logging.Logger:
    """Configure logging and return the CLI logger.

    Reduces noise from network libraries at non-DEBUG levels.
    """
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("openai").setLevel(logging.WARNING)
    return logging.getLogger("streamscribe.cli")


def parse_cli_args(argv: Sequence[str] | None = None) -> CliOptions:
    """Parse command-line arguments into :class:`CliOptions`."""
    parser = argparse.ArgumentParser(
        prog="streamscribe",
        description="Record audio in short segments and print a live transcript.",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Capture device passed to ffmpeg -i (default depends on platform)",
    )
    parser.add_argument(
        "--input-format",
        type=str,
        default=None,
        help="ffmpeg capture format such as pulse, alsa, avfoundation or dshow",
    )
    parser.add_argument(
        "--segment-seconds",
        type=float,
        default=None,
        help="Duration of each recorded segment in seconds (default: 5)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for segment files (default: ./segments)",
    )
    parser.add_argument(
        "--language",
        type=str,
        default=None,
        help="Optional language hint for the transcription backend (e.g. 'en')",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Transcription model identifier (default: whisper-1)",
    )
    parser.add_argument(
        "--providers",
        dest="providers_path",
        type=Path,
        default=None,
        help=(
            "JSON file listing provider profiles; without it OPENAI_API_KEY and "
            "OPENAI_BASE_URL are used"
        ),
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file",
    )
    parser.add_argument(
        "--log-level",
        choices=tuple(LOG_LEVELS.keys()),
        default="INFO",
        help="Log level for diagnostic output",
    )

    namespace = parser.parse_args(argv)
    if namespace.segment_seconds is not None and namespace.segment_seconds <= 0:
        parser.error("--segment-seconds must be greater than zero")

    output_dir: Path | None = namespace.output_dir
    return CliOptions(
        device=namespace.device,
        input_format=namespace.input_format,
        segment_seconds=namespace.segment_seconds,
        output_dir=output_dir.expanduser().resolve() if output_dir is not None else None,
        language=namespace.language,
        model=namespace.model,
        providers_path=namespace.providers_path,
        dotenv_path=namespace.dotenv,
        log_level=LOG_LEVELS[namespace.log_level],
    )


async def _wait_for_shutdown_signal(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    registered: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            continue
        registered.append(signum)
    try:
        await stop_event.wait()
    finally:
        for signum in registered:
            loop.remove_signal_handler(signum)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for the ``streamscribe`` console script."""
    options = parse_cli_args(argv)
    try:
        exit_code = asyncio.run(run_async(options))
    except KeyboardInterrupt:
        exit_code = 130
    except Exception:  # noqa: BLE001
        traceback.print_exc(limit=1)
        exit_code = 1
    raise SystemExit(exit_code)
