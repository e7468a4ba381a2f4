"""Test utilities: pytest runner and fake ffmpeg processes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import asyncio
import pathlib
import sys
import time

from ffmpeg_command import MANIFEST_NAME
from ffmpeg_process import ProcessEvent


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeTranscodeProcess:
    """Stands in for ffmpeg_process.TranscodeProcess."""

    _next_pid = 1000

    def __init__(self, stream_id: str, video_url: str, radio_url: str, output_dir: pathlib.Path):
        FakeTranscodeProcess._next_pid += 1
        self.pid = FakeTranscodeProcess._next_pid
        self.stream_id = stream_id
        self.video_url = video_url
        self.radio_url = radio_url
        self.output_dir = output_dir
        self.returncode: int | None = None
        self.stop_calls = 0
        self.killed = False
        self.stderr_tail: list[str] = []
        self._callbacks: list[Callable[..., None]] = []

    @property
    def is_alive(self) -> bool:
        return self.returncode is None

    def on_event(self, callback: Callable[..., None]) -> None:
        self._callbacks.append(callback)

    def emit(self, event: ProcessEvent, message: str = "") -> None:
        """Deliver an event on the loop, as the real adapter does."""
        if event is not ProcessEvent.STARTED and self.returncode is None:
            self.returncode = 0 if event is ProcessEvent.ENDED else 1
        loop = asyncio.get_running_loop()
        for callback in list(self._callbacks):
            loop.call_soon(callback, self, event, message)

    def write_manifest(self) -> None:
        (self.output_dir / MANIFEST_NAME).write_text("#EXTM3U\n#EXT-X-VERSION:3\n")

    def stop(self) -> None:
        self.stop_calls += 1
        if self.returncode is None:
            self.returncode = -15

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int | None:
        return self.returncode


class FakeTranscoder:
    """Replacement for ffmpeg_process.start_transcode.

    By default each spawned fake writes its manifest after ``manifest_delay``
    seconds. Set ``manifest_delay`` to None to simulate ffmpeg never producing
    output.
    """

    def __init__(self, manifest_delay: float | None = 0.05, fail_with: Exception | None = None):
        self.manifest_delay = manifest_delay
        self.fail_with = fail_with
        self.processes: list[FakeTranscodeProcess] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def start_count(self) -> int:
        return len(self.processes)

    async def __call__(
        self,
        stream_id: str,
        video_url: str,
        radio_url: str,
        output_dir: pathlib.Path,
    ) -> FakeTranscodeProcess:
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        proc = FakeTranscodeProcess(stream_id, video_url, radio_url, output_dir)
        self.processes.append(proc)
        if self.manifest_delay is not None:
            task = asyncio.create_task(self._produce(proc, self.manifest_delay))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return proc

    async def _produce(self, proc: FakeTranscodeProcess, delay: float) -> None:
        await asyncio.sleep(delay)
        if proc.is_alive and proc.output_dir.exists():
            proc.write_manifest()
