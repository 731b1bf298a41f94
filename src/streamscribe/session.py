"""Session orchestration: encoder lifecycle, segment dispatch and ordered merging."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from contextvars import ContextVar
from pathlib import Path
from typing import NamedTuple, Protocol
from uuid import uuid4

from .config import EncoderConfig, SessionConfig
from .diagnostics import DiagnosticParser, FFmpegSegmentParser
from .encoder import EncoderHandle, EncoderProcess
from .errors import ConfigurationError, EncoderProcessError, StreamscribeError
from .eventbus import TOPIC_CHUNK_READY, TOPIC_FAILED, TOPIC_FINISHED, TOPIC_PROGRESS, EventBus
from .merger import FragmentSequencer, TranscriptMerger
from .models import (
    ChunkReady,
    ErrorKind,
    ProgressiveUpdate,
    SegmentDescriptor,
    SegmentState,
    Session,
    SessionFailed,
    SessionFinished,
    SessionState,
    TranscriptFragment,
    TranscriptionOptions,
)
from .telemetry import EncoderExitEvent, NullTelemetrySink, SegmentErrorEvent, TelemetrySink
from .watcher import SegmentWatcher

logger = logging.getLogger(__name__)

EncoderFactory = Callable[[], EncoderHandle]


class _QueuedEvent(NamedTuple):
    topic: str
    event: object


_DIAGNOSTIC_DRAIN_TIMEOUT = 2.0

# Set inside the publisher task, and so visible to the consumer tasks it spawns.
_DELIVERING: ContextVar[bool] = ContextVar("streamscribe_delivering", default=False)


class SegmentTranscriberLike(Protocol):
    """Protocol for the transcriber used by the orchestrator."""

    async def prepare(self) -> object:  # pragma: no cover - protocol
        """Resolve backend credentials ahead of the first upload."""
        ...

    async def transcribe(
        self, path: Path, options: TranscriptionOptions | None = None
    ) -> str:  # pragma: no cover - protocol
        """Return transcript text for the segment at *path*."""
        ...


class SessionOrchestrator:
    """Owns one recording session at a time and publishes its events.

    States move ``idle → recording → stopping → idle`` on the normal path and
    ``recording → failed → idle`` when the encoder dies. Segments are transcribed
    concurrently but merged strictly in sequence order.

    Session events are queued and delivered by a single publisher task, so
    consumers see them in the order they were produced and may call
    :meth:`stop` from inside a callback.
    """

    def __init__(
        self,
        transcriber: SegmentTranscriberLike,
        encoder_factory: EncoderFactory,
        *,
        config: SessionConfig | None = None,
        event_bus: EventBus | None = None,
        parser: DiagnosticParser | None = None,
        options: TranscriptionOptions | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create an idle orchestrator."""
        self._transcriber = transcriber
        self._encoder_factory = encoder_factory
        self._config = config or SessionConfig()
        self._bus = event_bus or EventBus()
        self._parser = parser or FFmpegSegmentParser()
        self._options = options
        self._telemetry = telemetry or NullTelemetrySink()

        self._state = SessionState.IDLE
        self._starting = False
        self._session: Session | None = None
        self._encoder: EncoderHandle | None = None
        self._watcher: SegmentWatcher | None = None
        self._merger = TranscriptMerger(max_overlap_words=self._config.max_overlap_words)
        self._sequencer = FragmentSequencer()
        self._merge_lock = asyncio.Lock()
        self._dispatch_task: asyncio.Task[None] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._transcriptions: set[asyncio.Task[None]] = set()
        self._events: asyncio.Queue[_QueuedEvent | None] | None = None
        self._publisher_task: asyncio.Task[None] | None = None
        self._last_error: StreamscribeError | None = None

    @classmethod
    def from_config(
        cls,
        transcriber: SegmentTranscriberLike,
        encoder_config: EncoderConfig,
        *,
        config: SessionConfig | None = None,
        event_bus: EventBus | None = None,
        options: TranscriptionOptions | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> SessionOrchestrator:
        """Create an orchestrator spawning ffmpeg as described by *encoder_config*."""
        return cls(
            transcriber,
            lambda: EncoderProcess(encoder_config),
            config=config,
            event_bus=event_bus,
            parser=FFmpegSegmentParser(output_suffix=encoder_config.container),
            options=options,
            telemetry=telemetry,
        )

    @property
    def state(self) -> SessionState:
        """Return the current lifecycle state."""
        return self._state

    @property
    def session(self) -> Session | None:
        """Return the active session, or the most recent one once idle."""
        return self._session

    @property
    def event_bus(self) -> EventBus:
        """Return the bus on which session events are published."""
        return self._bus

    @property
    def last_error(self) -> StreamscribeError | None:
        """Return the error that ended the most recent failed session."""
        return self._last_error

    async def start(self) -> Session | None:
        """Start recording; a no-op returning ``None`` unless idle.

        Raises:
            ConfigurationError: If no transcription credential is configured.
            EncoderProcessError: If the encoder cannot be spawned.
        """
        if self._state is not SessionState.IDLE or self._starting:
            logger.debug("start() ignored while session is %s", self._state.value)
            return None
        self._starting = True
        try:
            return await self._start()
        finally:
            self._starting = False

    async def _start(self) -> Session:
        try:
            await self._transcriber.prepare()
        except ConfigurationError as exc:
            logger.error("Cannot start session: %s", exc)
            self._last_error = exc
            await self._publish(
                TOPIC_FAILED,
                SessionFailed(
                    session_id=None, error_kind=ErrorKind.CONFIGURATION, message=str(exc)
                ),
            )
            raise

        session = Session(session_id=uuid4().hex)
        encoder = self._encoder_factory()
        try:
            await encoder.start()
        except EncoderProcessError as exc:
            logger.error("Cannot start encoder for session %s: %s", session.session_id, exc)
            self._last_error = exc
            await self._publish(
                TOPIC_FAILED,
                SessionFailed(
                    session_id=session.session_id,
                    error_kind=ErrorKind.ENCODER_PROCESS,
                    message=str(exc),
                ),
            )
            raise

        watcher = SegmentWatcher(
            self._parser, settle_delay=self._config.settle_delay, telemetry=self._telemetry
        )
        watcher.start_watching(encoder.stderr)

        self._session = session
        self._encoder = encoder
        self._watcher = watcher
        self._merger = TranscriptMerger(max_overlap_words=self._config.max_overlap_words)
        self._sequencer = FragmentSequencer()
        self._last_error = None
        self._set_state(SessionState.RECORDING)
        events: asyncio.Queue[_QueuedEvent | None] = asyncio.Queue()
        self._events = events
        self._publisher_task = asyncio.create_task(
            self._deliver(events), name=f"session-events-{session.session_id}"
        )
        self._dispatch_task = asyncio.create_task(
            self._dispatch(session, watcher), name=f"session-dispatch-{session.session_id}"
        )
        self._monitor_task = asyncio.create_task(
            self._monitor(session, encoder), name=f"session-monitor-{session.session_id}"
        )
        logger.info("Session %s recording", session.session_id)
        return session

    async def stop(self) -> str | None:
        """Stop recording and return the final transcript; a no-op unless recording."""
        if self._state is not SessionState.RECORDING:
            logger.debug("stop() ignored while session is %s", self._state.value)
            return None
        session = self._session
        encoder = self._encoder
        watcher = self._watcher
        assert session is not None and encoder is not None and watcher is not None

        self._set_state(SessionState.STOPPING)
        logger.info("Stopping session %s", session.session_id)
        try:
            returncode = await encoder.terminate()
            logger.debug("Encoder exited with code %s", returncode)
            await watcher.drain(_DIAGNOSTIC_DRAIN_TIMEOUT)
            watcher.finalize()
            current = asyncio.current_task()
            dispatch = self._dispatch_task
            if dispatch is not None and dispatch is not current:
                await dispatch
            pending = [task for task in self._transcriptions if task is not current]
            if pending:
                logger.info("Waiting for %d in-flight transcription(s)", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
            async with self._merge_lock:
                for fragment in self._sequencer.drain():
                    self._merge(session, fragment)
            failed = tuple(session.failed_segments())
            logger.info(
                "Session %s finished: %d segment(s), %d failed, %d chars",
                session.session_id,
                len(session.segments),
                len(failed),
                len(session.transcript),
            )
            self._enqueue(
                TOPIC_FINISHED,
                SessionFinished(
                    session_id=session.session_id,
                    transcript=session.transcript,
                    segment_count=len(session.segments),
                    failed_segments=failed,
                ),
            )
        finally:
            await watcher.aclose()
            await self._close_events()
            await self._release()
        return session.transcript

    async def _dispatch(self, session: Session, watcher: SegmentWatcher) -> None:
        try:
            async for ready in watcher.ready_signals():
                descriptor = SegmentDescriptor(
                    sequence_index=ready.sequence_index,
                    path=ready.path,
                    size_bytes=await asyncio.to_thread(_file_size, ready.path),
                )
                session.segments.append(descriptor)
                self._enqueue(
                    TOPIC_CHUNK_READY,
                    ChunkReady(
                        session_id=session.session_id,
                        sequence_index=ready.sequence_index,
                        path=ready.path,
                    ),
                )
                task = asyncio.create_task(
                    self._transcribe_segment(session, descriptor),
                    name=f"transcribe-segment-{ready.sequence_index}",
                )
                self._transcriptions.add(task)
                task.add_done_callback(self._transcriptions.discard)
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - defensive path
            logger.exception("Segment dispatch failed for session %s", session.session_id)

    async def _transcribe_segment(self, session: Session, descriptor: SegmentDescriptor) -> None:
        descriptor.state = SegmentState.TRANSCRIBING
        text = ""
        try:
            text = await asyncio.wait_for(
                self._transcriber.transcribe(descriptor.path, self._options),
                timeout=self._config.transcription_timeout,
            )
        except TimeoutError:
            self._segment_failed(
                session,
                descriptor,
                "TimeoutError",
                f"no result within {self._config.transcription_timeout:g}s",
            )
        except StreamscribeError as exc:
            self._segment_failed(session, descriptor, exc.__class__.__name__, str(exc))
        except Exception as exc:  # pragma: no cover - defensive path
            logger.exception(
                "Unexpected failure transcribing segment %d", descriptor.sequence_index
            )
            self._segment_failed(session, descriptor, exc.__class__.__name__, str(exc))
        else:
            descriptor.state = SegmentState.TRANSCRIBED if text else SegmentState.EMPTY
        await self._accept(session, TranscriptFragment(descriptor.sequence_index, text))

    def _segment_failed(
        self, session: Session, descriptor: SegmentDescriptor, error_type: str, message: str
    ) -> None:
        descriptor.state = SegmentState.FAILED
        logger.warning(
            "Segment %d (%s) contributes no text: %s: %s",
            descriptor.sequence_index,
            descriptor.path.name,
            error_type,
            message,
        )
        self._telemetry.record_event(
            SegmentErrorEvent(
                session_id=session.session_id,
                sequence_index=descriptor.sequence_index,
                error_type=error_type,
                message=message,
            )
        )

    async def _accept(self, session: Session, fragment: TranscriptFragment) -> None:
        async with self._merge_lock:
            if self._session is not session or self._state not in (
                SessionState.RECORDING,
                SessionState.STOPPING,
            ):
                logger.debug(
                    "Discarding fragment %d from inactive session", fragment.sequence_index
                )
                return
            for ready in self._sequencer.offer(fragment):
                self._merge(session, ready)

    def _merge(self, session: Session, fragment: TranscriptFragment) -> None:
        increment = self._merger.add_fragment(fragment.sequence_index, fragment.text)
        session.transcript = self._merger.transcript
        if not increment:
            return
        self._enqueue(
            TOPIC_PROGRESS,
            ProgressiveUpdate(
                session_id=session.session_id,
                sequence_index=fragment.sequence_index,
                increment=increment,
                transcript=session.transcript,
            ),
        )

    async def _monitor(self, session: Session, encoder: EncoderHandle) -> None:
        returncode = await encoder.wait()
        if self._session is not session or self._state is not SessionState.RECORDING:
            logger.debug("Encoder exited with code %s after stop", returncode)
            return
        self._telemetry.record_event(
            EncoderExitEvent(session_id=session.session_id, returncode=returncode)
        )
        await self._fail(
            session,
            EncoderProcessError(
                f"Encoder exited unexpectedly with code {returncode}", returncode=returncode
            ),
        )

    async def _fail(self, session: Session, error: StreamscribeError) -> None:
        self._set_state(SessionState.FAILED)
        self._last_error = error
        logger.error("Session %s failed: %s", session.session_id, error)
        tasks = list(self._transcriptions)
        if self._dispatch_task is not None:
            tasks.append(self._dispatch_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        async with self._merge_lock:
            dropped = self._sequencer.clear()
        if dropped:
            logger.info("Discarded %d buffered fragment(s)", dropped)
        try:
            if self._watcher is not None:
                await self._watcher.aclose()
            if self._encoder is not None:
                await self._encoder.terminate()
            self._enqueue(
                TOPIC_FAILED,
                SessionFailed(
                    session_id=session.session_id,
                    error_kind=ErrorKind.ENCODER_PROCESS,
                    message=str(error),
                ),
            )
        finally:
            await self._close_events()
            await self._release()

    async def _release(self) -> None:
        monitor = self._monitor_task
        current = asyncio.current_task()
        if monitor is not None and monitor is not current and not monitor.done():
            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor
        self._encoder = None
        self._watcher = None
        self._dispatch_task = None
        self._monitor_task = None
        self._transcriptions.clear()
        self._set_state(SessionState.IDLE)

    def _enqueue(self, topic: str, event: object) -> None:
        if self._events is None:
            logger.debug("Dropping %s event outside an active session", topic)
            return
        self._events.put_nowait(_QueuedEvent(topic, event))

    async def _deliver(self, events: asyncio.Queue[_QueuedEvent | None]) -> None:
        _DELIVERING.set(True)
        while True:
            queued = await events.get()
            if queued is None:
                return
            await self._publish(queued.topic, queued.event)

    async def _close_events(self) -> None:
        """Flush queued events; returns at once when called from a consumer."""
        events = self._events
        publisher = self._publisher_task
        self._events = None
        self._publisher_task = None
        if events is None or publisher is None:
            return
        events.put_nowait(None)
        if _DELIVERING.get():
            return
        await publisher

    async def _publish(self, topic: str, event: object) -> None:
        failures = await self._bus.publish(topic, event)
        if failures:
            logger.debug("%d consumer(s) of %s raised", failures, topic)

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        if self._session is not None:
            self._session.state = state


def _file_size(path: Path) -> int | None:
    try:
        return path.stat().st_size
    except OSError:
        return None
