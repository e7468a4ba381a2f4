"""In-memory session store keyed by stream id."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import asyncio
import contextlib
import enum
import pathlib
import time

from errors import StreamError
from ffmpeg_command import MANIFEST_NAME


class SessionState(enum.Enum):
    STARTING = "starting"
    READY = "ready"
    TERMINATING = "terminating"


def _new_future() -> asyncio.Future[pathlib.Path]:
    return asyncio.get_running_loop().create_future()


@dataclass(slots=True, eq=False)
class Session:
    """One live ffmpeg process plus its output directory.

    ``ready`` resolves to the manifest path once ffmpeg has written it, or
    fails with the StreamError that ended the session. ``aborted`` is set on
    teardown so a pending readiness wait returns early.
    """

    stream_id: str
    video_url: str
    radio_url: str
    output_dir: pathlib.Path
    process: Any = None
    state: SessionState = SessionState.STARTING
    expires_at: float = 0.0
    created_at: float = field(default_factory=time.time)
    ready: asyncio.Future[pathlib.Path] = field(default_factory=_new_future)
    aborted: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def manifest_path(self) -> pathlib.Path:
        return self.output_dir / MANIFEST_NAME

    def matches(self, video_url: str, radio_url: str) -> bool:
        """True if the session was built from these source URLs."""
        return self.video_url == video_url and self.radio_url == radio_url

    def fail(self, error: StreamError) -> None:
        """Abort pending waiters with error. No-op if already resolved."""
        self.aborted.set()
        if not self.ready.done():
            self.ready.set_exception(error)
            # Mark retrieved; nobody may be waiting on it
            self.ready.exception()


class SessionStore:
    """Sessions keyed by stream id.

    Structural changes (insert/remove) happen under the per-id lock from
    ``lock()``. Different ids never contend. Expiry renewal is a plain field
    update and needs no lock.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def lock(self, stream_id: str) -> AsyncIterator[None]:
        """Hold exclusivity for one stream id. Not reentrant."""
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = self._locks[stream_id] = asyncio.Lock()
        self._lock_refs[stream_id] = self._lock_refs.get(stream_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[stream_id] -= 1
            if not self._lock_refs[stream_id]:
                del self._lock_refs[stream_id]
                del self._locks[stream_id]

    async def get_or_create(
        self,
        stream_id: str,
        factory: Callable[[], Awaitable[Session]],
    ) -> tuple[Session, bool]:
        """Return (session, created). factory runs at most once per absent id.

        Concurrent callers for the same absent id wait on the lock and get the
        session the first caller inserted. If factory raises, nothing is
        inserted.
        """
        session = self._sessions.get(stream_id)
        if session is not None:
            return session, False
        async with self.lock(stream_id):
            session = self._sessions.get(stream_id)
            if session is not None:
                return session, False
            session = await factory()
            self._sessions[stream_id] = session
            return session, True

    def get(self, stream_id: str) -> Session | None:
        return self._sessions.get(stream_id)

    def remove(self, stream_id: str) -> Session | None:
        """Remove and return the entry. Caller holds lock(stream_id)."""
        return self._sessions.pop(stream_id, None)

    def renew_expiry(self, stream_id: str, deadline: float) -> bool:
        """Push the expiry deadline forward. Returns False if no session."""
        session = self._sessions.get(stream_id)
        if session is None:
            return False
        session.expires_at = max(session.expires_at, deadline)
        return True

    def items(self) -> list[tuple[str, Session]]:
        """Snapshot of (stream_id, session) pairs."""
        return list(self._sessions.items())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, stream_id: object) -> bool:
        return stream_id in self._sessions
