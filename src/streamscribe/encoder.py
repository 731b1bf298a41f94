"""External ffmpeg encoder process writing fixed-duration segment files."""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
import sys
from types import TracebackType
from typing import Protocol

from .config import EncoderConfig
from .errors import EncoderProcessError
from .watcher import LineSource

logger = logging.getLogger(__name__)


class EncoderHandle(Protocol):
    """Protocol for a running encoder whose diagnostics feed the segment watcher."""

    @property
    def stderr(self) -> LineSource:  # pragma: no cover - protocol
        """Return the encoder's diagnostic stream."""
        ...

    @property
    def returncode(self) -> int | None:  # pragma: no cover - protocol
        """Return the exit code, or ``None`` while running."""
        ...

    async def start(self) -> None:  # pragma: no cover - protocol
        """Spawn the encoder."""
        ...

    async def wait(self) -> int:  # pragma: no cover - protocol
        """Wait for the encoder to exit and return its exit code."""
        ...

    async def terminate(self) -> int | None:  # pragma: no cover - protocol
        """Stop the encoder, returning its exit code."""
        ...


class EncoderProcess(EncoderHandle):
    """Owns an ffmpeg subprocess and its stderr pipe for one session."""

    def __init__(self, config: EncoderConfig) -> None:
        """Prepare an encoder for *config* without spawning it."""
        self._config = config
        self._process: asyncio.subprocess.Process | None = None

    @property
    def stderr(self) -> LineSource:
        """Return the encoder's stderr reader."""
        if self._process is None or self._process.stderr is None:
            raise RuntimeError("Encoder process has not been started")
        return self._process.stderr

    @property
    def returncode(self) -> int | None:
        """Return the exit code, or ``None`` while running or before start."""
        return None if self._process is None else self._process.returncode

    @property
    def pid(self) -> int | None:
        """Return the OS process id once started."""
        return None if self._process is None else self._process.pid

    async def start(self) -> None:
        """Create the output directory and spawn ffmpeg.

        Raises:
            EncoderProcessError: If the executable cannot be launched.
        """
        if self._process is not None:
            raise RuntimeError("Encoder process already started")
        await asyncio.to_thread(self._config.output_dir.mkdir, parents=True, exist_ok=True)
        command = self._config.build_command()
        logger.info("Starting encoder: %s", shlex.join(command))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EncoderProcessError(
                f"Cannot start encoder '{self._config.executable}': {exc}"
            ) from exc
        logger.debug("Encoder started with pid %s", self._process.pid)

    async def wait(self) -> int:
        """Wait for the encoder to exit and return its exit code."""
        if self._process is None:
            raise RuntimeError("Encoder process has not been started")
        return await self._process.wait()

    async def terminate(self) -> int | None:
        """Ask ffmpeg to finish its current segment and exit, killing it on timeout."""
        process = self._process
        if process is None:
            return None
        if process.returncode is not None:
            return process.returncode
        try:
            if sys.platform == "win32":
                process.terminate()
            else:
                # SIGINT lets ffmpeg write the container trailer of the open segment.
                process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return await process.wait()
        try:
            return await asyncio.wait_for(process.wait(), self._config.terminate_timeout)
        except TimeoutError:
            logger.warning(
                "Encoder did not exit within %.1fs; killing pid %s",
                self._config.terminate_timeout,
                process.pid,
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            return await process.wait()

    async def __aenter__(self) -> EncoderProcess:
        """Start the encoder on context entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Terminate the encoder on context exit."""
        await self.terminate()
