"""FFmpeg process adapter: spawn, observe and stop one mux process."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import asyncio
import collections
import contextlib
import enum
import logging
import pathlib

from errors import ProcessFailure
from ffmpeg_command import build_mux_hls_cmd, get_user_agent


log = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20
_KILL_GRACE_SEC = 2.0  # SIGTERM -> SIGKILL escalation


class ProcessEvent(enum.Enum):
    STARTED = "started"
    ERRORED = "errored"
    ENDED = "ended"


EventCallback = Callable[["TranscodeProcess", ProcessEvent, str], None]


class TranscodeProcess:
    """Handle to a running ffmpeg process.

    Lifecycle notifications are delivered to ``on_event`` callbacks on the
    event loop: STARTED once after spawn, then exactly one of ERRORED (non-zero
    exit, message carries the stderr tail) or ENDED (clean exit or stop()).
    """

    def __init__(self, stream_id: str, process: Any, cmd: list[str]) -> None:
        self.stream_id = stream_id
        self.cmd = cmd
        self._process = process
        self._loop = asyncio.get_running_loop()
        self._callbacks: list[EventCallback] = []
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._stopping = False
        self._kill_handle: asyncio.TimerHandle | None = None
        self._monitor: asyncio.Task[None] | None = None

    @classmethod
    def attach(cls, stream_id: str, process: Any, cmd: list[str]) -> TranscodeProcess:
        """Wrap a spawned process and start observing it."""
        handle = cls(stream_id, process, cmd)
        handle._monitor = asyncio.create_task(handle._watch())
        handle._emit(ProcessEvent.STARTED, f"pid {process.pid}")
        return handle

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_alive(self) -> bool:
        return self._process.returncode is None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    def on_event(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def _emit(self, event: ProcessEvent, message: str = "") -> None:
        self._loop.call_soon(self._dispatch, event, message)

    def _dispatch(self, event: ProcessEvent, message: str) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self, event, message)
            except Exception:
                log.exception("ffmpeg:%s %s callback failed", self.stream_id, event.value)

    async def _watch(self) -> None:
        stderr = self._process.stderr
        if stderr is not None:
            while True:
                line = await stderr.readline()
                if not line:
                    break
                text = line.decode(errors="replace").rstrip()
                if not text:
                    continue
                self._stderr_tail.append(text)
                is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
                level = logging.WARNING if is_fatal else logging.DEBUG
                log.log(level, "ffmpeg:%s %s", self.stream_id, text)

        returncode = await self._process.wait()
        if self._kill_handle is not None:
            self._kill_handle.cancel()

        if self._stopping:
            self._emit(ProcessEvent.ENDED, "stopped")
        elif returncode == 0:
            self._emit(ProcessEvent.ENDED, "exit 0")
        else:
            detail = "\n".join(self._stderr_tail) or "no output"
            self._emit(ProcessEvent.ERRORED, f"exit {returncode}: {detail}")

    def stop(self) -> None:
        """Request graceful termination. Idempotent, safe on a dead process."""
        if self._stopping:
            return
        self._stopping = True
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return
        self._kill_handle = self._loop.call_later(_KILL_GRACE_SEC, self.kill)

    def kill(self) -> None:
        """Force kill if still running."""
        if self._process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self._process.kill()
            log.info("ffmpeg:%s did not exit after SIGTERM, killed", self.stream_id)

    async def wait(self) -> int | None:
        """Wait for exit and for the final event to be queued."""
        if self._monitor is not None:
            await asyncio.shield(self._monitor)
        return self._process.returncode


async def start_transcode(
    stream_id: str,
    video_url: str,
    radio_url: str,
    output_dir: pathlib.Path,
) -> TranscodeProcess:
    """Spawn ffmpeg for a stream. Returns immediately, without waiting for output."""
    cmd = build_mux_hls_cmd(video_url, radio_url, output_dir, user_agent=get_user_agent())
    log.info("Starting ffmpeg for stream %s: %s", stream_id, " ".join(cmd))
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessFailure(stream_id, f"could not start ffmpeg: {e}") from e
    return TranscodeProcess.attach(stream_id, process, cmd)
