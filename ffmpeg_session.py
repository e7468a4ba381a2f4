"""FFmpeg session lifecycle management."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

import asyncio
import contextlib
import functools
import heapq
import itertools
import logging
import pathlib
import re
import shutil
import time

from errors import (
    NotFound,
    ProcessFailure,
    SessionInvalidated,
    StartupTimeout,
    StreamError,
    TeardownFailure,
)
from ffmpeg_command import MANIFEST_NAME, get_settings, get_stream_root
from ffmpeg_process import ProcessEvent, TranscodeProcess, start_transcode
from session_store import Session, SessionState, SessionStore
from streams import StreamMetadata


__all__ = [
    "NotFound",
    "ProcessFailure",
    "SessionInvalidated",
    "SessionManager",
    "StartupTimeout",
    "StreamError",
    "TeardownFailure",
    "await_manifest",
]

log = logging.getLogger(__name__)

# Timing constants
_POLL_INTERVAL_SEC = 0.2
_STARTUP_TIMEOUT_SEC = 10.0
_IDLE_TIMEOUT_SEC = 300.0  # 5 min without a manifest request = expired
_SHUTDOWN_GRACE_SEC = 3.0

_STREAM_ID_RE = re.compile(r"[A-Za-z0-9_-]+")

StreamLookup = Callable[[str], "StreamMetadata | None"]
ProcessStarter = Callable[[str, str, str, pathlib.Path], Awaitable[TranscodeProcess]]


# ===========================================================================
# Manifest Readiness
# ===========================================================================


async def _wait_event(event: asyncio.Event, timeout: float | None) -> bool:
    """Wait for event up to timeout. Cancellation of the caller always propagates."""
    waiter = asyncio.ensure_future(event.wait())
    try:
        await asyncio.wait({waiter}, timeout=timeout)
    finally:
        waiter.cancel()
    return event.is_set()


def _manifest_exists(manifest_path: pathlib.Path) -> bool:
    try:
        return manifest_path.stat().st_size > 0
    except OSError:
        return False


async def await_manifest(
    manifest_path: pathlib.Path,
    timeout: float,
    aborted: asyncio.Event | None = None,
    poll_interval: float = _POLL_INTERVAL_SEC,
) -> bool:
    """Wait for ffmpeg to write its first playlist.

    Returns False when the timeout elapses, or as soon as ``aborted`` is set.
    """
    deadline = time.monotonic() + timeout
    while True:
        if aborted is not None and aborted.is_set():
            return False
        if _manifest_exists(manifest_path):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        delay = min(poll_interval, remaining)
        if aborted is None:
            await asyncio.sleep(delay)
        else:
            await _wait_event(aborted, delay)


# ===========================================================================
# Output Directories
# ===========================================================================


def _prepare_output_dir(output_dir: pathlib.Path) -> None:
    """Create a clean output dir, tolerating leftovers from a failed teardown."""
    if output_dir.exists():
        shutil.rmtree(output_dir, ignore_errors=True)
    output_dir.mkdir(parents=True, exist_ok=True)
    # A stale playlist would pass the readiness check immediately
    (output_dir / MANIFEST_NAME).unlink(missing_ok=True)


def _remove_output_dir(stream_id: str, output_dir: pathlib.Path) -> None:
    try:
        shutil.rmtree(output_dir)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise TeardownFailure(stream_id, f"could not remove {output_dir}: {e}") from e


# ===========================================================================
# Session Manager
# ===========================================================================


class SessionManager:
    """Runs at most one ffmpeg session per stream id.

    ``ensure_ready`` starts a session on first demand and shares it with every
    later viewer. Sessions are torn down after ``idle_timeout`` seconds
    without a manifest request, on ``invalidate`` (metadata changed or
    deleted), or when ffmpeg errors or exits. All of those go through
    ``_teardown_locked`` under the stream's lock.
    """

    def __init__(
        self,
        lookup: StreamLookup,
        start_process: ProcessStarter = start_transcode,
        stream_root: pathlib.Path | str | None = None,
        startup_timeout: float | None = None,
        idle_timeout: float | None = None,
        poll_interval: float = _POLL_INTERVAL_SEC,
    ) -> None:
        settings = get_settings()
        self._lookup = lookup
        self._start_process = start_process
        self._stream_root = pathlib.Path(stream_root) if stream_root else None
        self.startup_timeout = (
            startup_timeout
            if startup_timeout is not None
            else float(settings.get("startup_timeout_secs", _STARTUP_TIMEOUT_SEC))
        )
        self.idle_timeout = (
            idle_timeout
            if idle_timeout is not None
            else float(settings.get("idle_timeout_secs", _IDLE_TIMEOUT_SEC))
        )
        self._poll_interval = poll_interval
        self._store = SessionStore()
        # (deadline, tiebreak, session); entries for replaced sessions are dropped on pop
        self._expiry_heap: list[tuple[float, int, Session]] = []
        self._expiry_seq = itertools.count()
        self._expiry_wakeup = asyncio.Event()
        self._reaper: asyncio.Task[None] | None = None
        self._closing = False
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def stream_root(self) -> pathlib.Path:
        if self._stream_root is None:
            self._stream_root = get_stream_root()
        return self._stream_root

    def output_dir_for(self, stream_id: str) -> pathlib.Path:
        if not _STREAM_ID_RE.fullmatch(stream_id):
            raise ValueError(f"Invalid stream id: {stream_id!r}")
        return self.stream_root / stream_id

    # -----------------------------------------------------------------------
    # Startup / Shutdown
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """Remove output left behind by a previous run and start expiring sessions."""
        removed = await asyncio.to_thread(self._remove_orphaned_dirs)
        if removed:
            log.info("Startup cleanup: removed %d orphaned stream dirs", removed)
        if self._reaper is None:
            self._closing = False
            self._reaper = asyncio.create_task(self._reap_expired())

    def _remove_orphaned_dirs(self) -> int:
        root = self.stream_root
        root.mkdir(parents=True, exist_ok=True)
        removed = 0
        for d in root.iterdir():
            if d.is_dir() and d.name not in self._store:
                shutil.rmtree(d, ignore_errors=True)
                removed += 1
        return removed

    async def close(self) -> None:
        """Stop every session and remove all output. Pending teardowns run to completion."""
        # The reaper exits on its own so an expiry in progress finishes its teardown
        self._closing = True
        if self._reaper is not None:
            self._expiry_wakeup.set()
            await self._reaper
            self._reaper = None

        processes = [s.process for _, s in self._store.items() if s.process is not None]
        for stream_id, _ in self._store.items():
            await self.invalidate(stream_id)
        if processes:
            await asyncio.gather(*(self._await_exit(p) for p in processes))

        # Startup and discard tasks may be mid-teardown; let them remove their output
        if self._background_tasks:
            _, pending = await asyncio.wait(
                set(self._background_tasks), timeout=_SHUTDOWN_GRACE_SEC
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        removed = await asyncio.to_thread(self._remove_orphaned_dirs)
        if removed:
            log.warning("Shutdown cleanup: removed %d leftover stream dirs", removed)
        log.info("Session manager closed (%d ffmpeg processes stopped)", len(processes))

    async def _await_exit(self, process: TranscodeProcess) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=_SHUTDOWN_GRACE_SEC)
        except TimeoutError:
            process.kill()

    def _spawn_background_task(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # -----------------------------------------------------------------------
    # Resolve
    # -----------------------------------------------------------------------

    async def ensure_ready(self, stream_id: str) -> pathlib.Path:
        """Return the path of a written manifest for stream_id, starting ffmpeg if needed.

        Raises NotFound, StartupTimeout, ProcessFailure or SessionInvalidated.
        """
        meta = self._lookup(stream_id)
        if meta is None:
            raise NotFound(stream_id, "no such stream")

        while True:
            session, created = await self._store.get_or_create(
                stream_id, functools.partial(self._create_session, stream_id)
            )
            if created:
                break
            # Metadata may have changed while this call waited on the lock
            meta = self._lookup(stream_id)
            if meta is None:
                raise NotFound(stream_id, "no such stream")
            if not session.matches(meta.video_url, meta.radio_url):
                reason = "sources changed"
            elif session.state is SessionState.READY and not _manifest_exists(
                session.manifest_path
            ):
                reason = "manifest missing"
            else:
                break
            log.info("Discarding session for stream %s: %s", stream_id, reason)
            await self._discard(session, SessionInvalidated(stream_id, reason), reason)

        if session.state is SessionState.READY:
            self._renew(session)
            return session.manifest_path
        return await asyncio.shield(session.ready)

    def touch(self, stream_id: str) -> bool:
        """Renew a ready session's expiry. Returns False if not live."""
        session = self._store.get(stream_id)
        if session is None or session.state is not SessionState.READY:
            return False
        self._renew(session)
        return True

    def get_session(self, stream_id: str) -> Session | None:
        return self._store.get(stream_id)

    def active_sessions(self) -> list[dict[str, Any]]:
        """Summaries of live sessions, oldest first."""
        now = time.monotonic()
        sessions = sorted(self._store.items(), key=lambda x: x[1].created_at)
        return [
            {
                "stream_id": stream_id,
                "state": s.state.value,
                "pid": s.process.pid if s.process is not None else None,
                "expires_in": (
                    round(max(0.0, s.expires_at - now), 1)
                    if s.state is SessionState.READY
                    else None
                ),
            }
            for stream_id, s in sessions
        ]

    # -----------------------------------------------------------------------
    # Session Start
    # -----------------------------------------------------------------------

    async def _create_session(self, stream_id: str) -> Session:
        """Spawn ffmpeg for stream_id. Runs under the stream's lock.

        Metadata is read here, after any update or delete holding the lock
        has committed, so a session is never built from stale sources.
        """
        meta = self._lookup(stream_id)
        if meta is None:
            raise NotFound(stream_id, "deleted")
        output_dir = self.output_dir_for(meta.id)
        try:
            await asyncio.to_thread(_prepare_output_dir, output_dir)
        except OSError as e:
            raise ProcessFailure(meta.id, f"could not prepare {output_dir}: {e}") from e

        session = Session(
            stream_id=meta.id,
            video_url=meta.video_url,
            radio_url=meta.radio_url,
            output_dir=output_dir,
        )
        try:
            session.process = await self._start_process(
                meta.id, meta.video_url, meta.radio_url, output_dir
            )
        except ProcessFailure:
            with contextlib.suppress(TeardownFailure):
                await asyncio.to_thread(_remove_output_dir, meta.id, output_dir)
            raise

        session.process.on_event(functools.partial(self._on_process_event, session))
        self._spawn_background_task(self._run_startup(session))
        log.info("Starting session for stream %s in %s", meta.id, output_dir)
        return session

    async def _run_startup(self, session: Session) -> None:
        ready = await await_manifest(
            session.manifest_path,
            self.startup_timeout,
            session.aborted,
            self._poll_interval,
        )
        if session.aborted.is_set():
            # Torn down while starting; teardown already failed session.ready
            return
        if not ready:
            tail = session.process.stderr_tail if session.process is not None else []
            log.error(
                "ffmpeg:%s no playlist after %.1fs: %s",
                session.stream_id,
                self.startup_timeout,
                "\n".join(tail[-10:]) or "no output",
            )
            await self._discard(
                session,
                StartupTimeout(session.stream_id, f"no playlist after {self.startup_timeout:.1f}s"),
                "startup timeout",
            )
            return

        session.state = SessionState.READY
        self._arm_expiry(session)
        session.ready.set_result(session.manifest_path)
        log.info("Stream %s ready: %s", session.stream_id, session.manifest_path)

    def _on_process_event(
        self,
        session: Session,
        process: TranscodeProcess,
        event: ProcessEvent,
        message: str,
    ) -> None:
        if event is ProcessEvent.STARTED:
            log.info("ffmpeg:%s started (%s)", session.stream_id, message)
            return
        if self._store.get(session.stream_id) is not session:
            return  # already torn down
        if event is ProcessEvent.ERRORED:
            log.error("ffmpeg:%s failed: %s", session.stream_id, message)
        else:
            log.info("ffmpeg:%s ended: %s", session.stream_id, message)
        error = ProcessFailure(session.stream_id, f"ffmpeg {event.value}: {message}")
        # Fail waiters now rather than after the lock is acquired
        session.fail(error)
        self._spawn_background_task(self._discard(session, error, f"ffmpeg {event.value}"))

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    async def invalidate(self, stream_id: str) -> None:
        """Tear down any session for stream_id and remove its output.

        Called when stream metadata is updated or deleted. Safe when no
        session exists.
        """
        async with self._store.lock(stream_id):
            await self._teardown_locked(
                stream_id, SessionInvalidated(stream_id, "invalidated"), "invalidated"
            )

    async def _discard(self, session: Session, error: StreamError, reason: str) -> bool:
        """Tear down session only if it is still the current one for its id."""
        async with self._store.lock(session.stream_id):
            if self._store.get(session.stream_id) is not session:
                session.fail(error)
                return False
            await self._teardown_locked(session.stream_id, error, reason)
            return True

    async def _teardown_locked(self, stream_id: str, error: StreamError, reason: str) -> None:
        """The single teardown path. Caller holds the stream's lock."""
        session = self._store.remove(stream_id)
        if session is not None:
            session.state = SessionState.TERMINATING
            session.fail(error)
            if session.process is not None:
                session.process.stop()
            log.info("Stopped session for stream %s (%s)", stream_id, reason)
        try:
            await asyncio.to_thread(_remove_output_dir, stream_id, self.output_dir_for(stream_id))
        except TeardownFailure as e:
            log.warning("Teardown failure: %s", e)

    # -----------------------------------------------------------------------
    # Expiry
    # -----------------------------------------------------------------------

    def _push_expiry(self, session: Session) -> None:
        heapq.heappush(
            self._expiry_heap, (session.expires_at, next(self._expiry_seq), session)
        )

    def _arm_expiry(self, session: Session) -> None:
        session.expires_at = time.monotonic() + self.idle_timeout
        self._push_expiry(session)
        self._expiry_wakeup.set()

    def _renew(self, session: Session) -> None:
        self._store.renew_expiry(session.stream_id, time.monotonic() + self.idle_timeout)

    def _pop_due(self) -> list[Session]:
        """Pop heap entries that are due. Renewed sessions are rescheduled."""
        now = time.monotonic()
        due: list[Session] = []
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            _, _, session = heapq.heappop(self._expiry_heap)
            if self._store.get(session.stream_id) is not session:
                continue  # torn down or replaced
            if session.state is not SessionState.READY:
                continue
            if session.expires_at > now:
                self._push_expiry(session)
            elif session not in due:
                due.append(session)
        return due

    async def _expire(self, session: Session) -> None:
        async with self._store.lock(session.stream_id):
            if self._store.get(session.stream_id) is not session:
                return
            if session.expires_at > time.monotonic():
                # Renewed while waiting for the lock
                self._push_expiry(session)
                return
            log.info(
                "Stream %s idle for %.0fs, stopping", session.stream_id, self.idle_timeout
            )
            await self._teardown_locked(
                session.stream_id, SessionInvalidated(session.stream_id, "expired"), "expired"
            )

    async def _reap_expired(self) -> None:
        while not self._closing:
            self._expiry_wakeup.clear()
            for session in self._pop_due():
                try:
                    await self._expire(session)
                except Exception:
                    log.exception("Failed to expire stream %s", session.stream_id)
            if self._closing:
                break
            timeout = (
                max(0.0, self._expiry_heap[0][0] - time.monotonic())
                if self._expiry_heap
                else None
            )
            await _wait_event(self._expiry_wakeup, timeout)
