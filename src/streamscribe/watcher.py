"""Segment watcher inferring segment closure from encoder diagnostics."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol

from .diagnostics import DiagnosticParser, FFmpegSegmentParser
from .models import SegmentReady
from .telemetry import DiagnosticAnomalyEvent, NullTelemetrySink, TelemetrySink

logger = logging.getLogger(__name__)


class LineSource(Protocol):
    """Protocol for line-oriented byte streams such as :class:`asyncio.StreamReader`."""

    async def readline(self) -> bytes:  # pragma: no cover - protocol
        """Return the next line including its terminator, or ``b""`` at EOF."""
        ...


class SegmentWatcher:
    """Emits ready-signals for segments whose files the encoder has closed.

    A segment is considered closed once the encoder opens the segment that follows
    it; the last segment is closed by :meth:`finalize`. Signals are queued as they
    are detected and released by :meth:`ready_signals` in index order, each held
    back until ``settle_delay`` seconds after detection so the file has been
    flushed before anyone reads it.
    """

    def __init__(
        self,
        parser: DiagnosticParser | None = None,
        *,
        settle_delay: float = 0.3,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create a watcher using *parser* to interpret diagnostic lines."""
        self._parser = parser or FFmpegSegmentParser()
        self._settle_delay = max(0.0, settle_delay)
        self._telemetry = telemetry or NullTelemetrySink()
        self._last_opened_index = -1
        self._last_opened_path: Path | None = None
        self._finalized = False
        self._signals: asyncio.Queue[SegmentReady | None] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def last_opened_index(self) -> int:
        """Return the most recently opened segment index (``-1`` before the first)."""
        return self._last_opened_index

    @property
    def finalized(self) -> bool:
        """Return ``True`` once :meth:`finalize` has been called."""
        return self._finalized

    def start_watching(self, stream: LineSource) -> None:
        """Begin consuming *stream* in the background and return immediately."""
        if self._reader_task is not None:
            raise RuntimeError("SegmentWatcher is already watching a stream")
        self._reader_task = asyncio.create_task(self._consume(stream), name="segment-watcher")

    async def _consume(self, stream: LineSource) -> None:
        while not self._finalized:
            try:
                raw = await stream.readline()
            except ValueError as exc:
                # StreamReader raises when a line exceeds its buffer limit.
                logger.warning("Discarding oversized diagnostic line: %s", exc)
                continue
            if not raw:
                logger.debug("Encoder diagnostic stream reached EOF")
                return
            self.feed_line(raw.decode("utf-8", errors="replace"))

    def feed_line(self, line: str) -> SegmentReady | None:
        """Process one diagnostic *line*, returning the ready-signal it produced."""
        if self._finalized:
            logger.debug("Ignoring diagnostic line after finalize: %s", line.rstrip())
            return None
        event = self._parser.parse(line)
        if event is None:
            return None

        expected = self._last_opened_index + 1
        if event.index != expected:
            logger.warning(
                "Encoder opened segment %d but segment %d was expected; ignoring marker",
                event.index,
                expected,
            )
            self._telemetry.record_event(
                DiagnosticAnomalyEvent(
                    expected_index=expected,
                    observed_index=event.index,
                    line=line.rstrip(),
                )
            )
            return None

        ready: SegmentReady | None = None
        if self._last_opened_path is not None:
            ready = self._emit(self._last_opened_index, self._last_opened_path)
        self._last_opened_index = event.index
        self._last_opened_path = event.path
        logger.debug("Encoder opened segment %d at %s", event.index, event.path)
        return ready

    def finalize(self) -> SegmentReady | None:
        """Emit the last open segment and close the signal stream (idempotent)."""
        if self._finalized:
            return None
        self._finalized = True
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        ready: SegmentReady | None = None
        if self._last_opened_path is not None:
            ready = self._emit(self._last_opened_index, self._last_opened_path)
        self._signals.put_nowait(None)
        logger.debug("Segment watcher finalized at index %d", self._last_opened_index)
        return ready

    async def ready_signals(self) -> AsyncIterator[SegmentReady]:
        """Yield ready-signals in order until the watcher is finalized."""
        while True:
            ready = await self._signals.get()
            if ready is None:
                return
            remaining = ready.detected_at + self._settle_delay - time.monotonic()
            if remaining > 0:
                await asyncio.sleep(remaining)
            yield ready

    async def drain(self, timeout: float) -> None:
        """Wait up to *timeout* seconds for the reader to consume the stream to EOF."""
        task = self._reader_task
        if task is None or task.done():
            return
        _, pending = await asyncio.wait({task}, timeout=timeout)
        if pending:
            logger.warning("Encoder diagnostics still open %.1fs after exit", timeout)

    async def aclose(self) -> None:
        """Stop the background reader if it is still running."""
        task = self._reader_task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _emit(self, index: int, path: Path) -> SegmentReady:
        ready = SegmentReady(sequence_index=index, path=path, detected_at=time.monotonic())
        self._signals.put_nowait(ready)
        logger.info("Segment %d closed: %s", index, path)
        return ready
