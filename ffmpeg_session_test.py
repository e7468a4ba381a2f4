"""Tests for ffmpeg session management."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import asyncio
import time

import pytest

from ffmpeg_process import ProcessEvent
from ffmpeg_session import (
    NotFound,
    ProcessFailure,
    SessionInvalidated,
    SessionManager,
    StartupTimeout,
    await_manifest,
)
from session_store import SessionState
from streams import StreamMetadata
from testing import FakeTranscoder, wait_until


def _meta(stream_id: str, video: str = "http://v/loop.mp4", radio: str = "http://r/live") -> StreamMetadata:
    return StreamMetadata(
        id=stream_id,
        owner="alice",
        name=f"Stream {stream_id}",
        slug=f"alice-{stream_id}",
        video_url=video,
        radio_url=radio,
    )


@pytest.fixture
def catalog() -> dict[str, StreamMetadata]:
    return {sid: _meta(sid) for sid in ("s1", "s2", "s3")}


def _run(
    tmp_path: Path,
    catalog: dict[str, StreamMetadata],
    transcoder: FakeTranscoder,
    body: Callable[[SessionManager], Awaitable[Any]],
    **kwargs: Any,
) -> Any:
    """Run body against a started manager, closing it afterwards."""

    async def main() -> Any:
        manager = SessionManager(
            catalog.get,
            start_process=transcoder,
            stream_root=tmp_path / "streams",
            startup_timeout=kwargs.pop("startup_timeout", 2.0),
            idle_timeout=kwargs.pop("idle_timeout", 60.0),
            poll_interval=0.01,
        )
        await manager.start()
        try:
            return await body(manager)
        finally:
            await manager.close()

    return asyncio.run(main())


# =============================================================================
# Manifest Readiness Tests
# =============================================================================


class TestAwaitManifest:
    """Tests for await_manifest."""

    def test_existing_manifest(self, tmp_path):
        manifest = tmp_path / "index.m3u8"
        manifest.write_text("#EXTM3U\n")
        assert asyncio.run(await_manifest(manifest, 1.0, poll_interval=0.01)) is True

    def test_manifest_appears(self, tmp_path):
        manifest = tmp_path / "index.m3u8"

        async def main():
            asyncio.get_running_loop().call_later(0.05, manifest.write_text, "#EXTM3U\n")
            return await await_manifest(manifest, 2.0, poll_interval=0.01)

        assert asyncio.run(main()) is True

    def test_timeout(self, tmp_path):
        start = time.monotonic()
        result = asyncio.run(await_manifest(tmp_path / "index.m3u8", 0.1, poll_interval=0.01))
        assert result is False
        assert time.monotonic() - start < 1.0

    def test_empty_manifest_not_ready(self, tmp_path):
        manifest = tmp_path / "index.m3u8"
        manifest.touch()
        assert asyncio.run(await_manifest(manifest, 0.1, poll_interval=0.01)) is False

    def test_abort_returns_promptly(self, tmp_path):
        """Abort during a long wait fails fast instead of waiting for the timeout."""

        async def main():
            aborted = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, aborted.set)
            start = time.monotonic()
            result = await await_manifest(tmp_path / "index.m3u8", 10.0, aborted, 0.5)
            return result, time.monotonic() - start

        result, elapsed = asyncio.run(main())
        assert result is False
        assert elapsed < 1.0


# =============================================================================
# ensure_ready Tests
# =============================================================================


class TestEnsureReady:
    """Tests for SessionManager.ensure_ready."""

    def test_cold_start_then_warm_hit(self, tmp_path, catalog):
        """First call spawns and waits; second returns same path without spawning."""
        transcoder = FakeTranscoder()

        async def body(manager):
            first = await manager.ensure_ready("s1")
            assert first.exists()
            second = await manager.ensure_ready("s1")
            return first, second, manager.get_session("s1").state

        first, second, state = _run(tmp_path, catalog, transcoder, body)
        assert first == second
        assert first == tmp_path / "streams" / "s1" / "index.m3u8"
        assert state is SessionState.READY
        assert transcoder.start_count == 1

    def test_passes_sources_to_process(self, tmp_path, catalog):
        transcoder = FakeTranscoder()
        _run(tmp_path, catalog, transcoder, lambda m: m.ensure_ready("s1"))
        proc = transcoder.processes[0]
        assert proc.video_url == "http://v/loop.mp4"
        assert proc.radio_url == "http://r/live"
        assert proc.output_dir == tmp_path / "streams" / "s1"

    def test_concurrent_first_requests_spawn_once(self, tmp_path, catalog):
        """Single-flight: simultaneous cold requests share one process."""
        transcoder = FakeTranscoder(manifest_delay=0.1)

        async def body(manager):
            return await asyncio.gather(*(manager.ensure_ready("s1") for _ in range(8)))

        paths = _run(tmp_path, catalog, transcoder, body)
        assert transcoder.start_count == 1
        assert len(set(paths)) == 1

    def test_different_streams_start_independently(self, tmp_path, catalog):
        transcoder = FakeTranscoder(manifest_delay=0.1)

        async def body(manager):
            return await asyncio.gather(
                manager.ensure_ready("s1"), manager.ensure_ready("s2"), manager.ensure_ready("s3")
            )

        paths = _run(tmp_path, catalog, transcoder, body)
        assert transcoder.start_count == 3
        assert len(set(paths)) == 3

    def test_unknown_stream_not_found(self, tmp_path, catalog):
        """Unknown id fails before touching the store."""
        transcoder = FakeTranscoder()

        async def body(manager):
            with pytest.raises(NotFound):
                await manager.ensure_ready("ghost")
            return len(manager.store), dict(manager.store._locks)

        size, locks = _run(tmp_path, catalog, transcoder, body)
        assert size == 0
        assert locks == {}
        assert transcoder.start_count == 0
        assert not (tmp_path / "streams" / "ghost").exists()

    def test_startup_timeout_tears_down(self, tmp_path, catalog):
        """No manifest within the bound: StartupTimeout, process stopped, dir gone."""
        transcoder = FakeTranscoder(manifest_delay=None)

        async def body(manager):
            with pytest.raises(StartupTimeout):
                await manager.ensure_ready("s1")
            return "s1" in manager.store

        assert _run(tmp_path, catalog, transcoder, body, startup_timeout=0.1) is False
        assert transcoder.processes[0].stop_calls == 1
        assert not (tmp_path / "streams" / "s1").exists()

    def test_retry_after_startup_timeout(self, tmp_path, catalog):
        """A failed start leaves the store clean so the next request starts fresh."""
        transcoder = FakeTranscoder(manifest_delay=None)

        async def body(manager):
            with pytest.raises(StartupTimeout):
                await manager.ensure_ready("s1")
            transcoder.manifest_delay = 0.01
            path = await manager.ensure_ready("s1")
            assert path.exists()

        _run(tmp_path, catalog, transcoder, body, startup_timeout=0.1)
        assert transcoder.start_count == 2

    def test_spawn_failure(self, tmp_path, catalog):
        transcoder = FakeTranscoder(fail_with=ProcessFailure("s1", "ffmpeg not found"))

        async def body(manager):
            with pytest.raises(ProcessFailure):
                await manager.ensure_ready("s1")
            return len(manager.store)

        assert _run(tmp_path, catalog, transcoder, body) == 0
        assert not (tmp_path / "streams" / "s1").exists()

    def test_stale_sources_restart(self, tmp_path, catalog):
        """Metadata changed without invalidate: the stale session is replaced."""
        transcoder = FakeTranscoder()

        async def body(manager):
            await manager.ensure_ready("s1")
            catalog["s1"] = _meta("s1", video="http://v/new.mp4")
            await manager.ensure_ready("s1")

        _run(tmp_path, catalog, transcoder, body)
        assert transcoder.start_count == 2
        old, new = transcoder.processes
        assert old.stop_calls == 1
        assert new.video_url == "http://v/new.mp4"

    def test_missing_manifest_is_a_miss(self, tmp_path, catalog):
        """Output wiped underneath a ready session: next request cold starts."""
        transcoder = FakeTranscoder()

        async def body(manager):
            path = await manager.ensure_ready("s1")
            path.unlink()
            path = await manager.ensure_ready("s1")
            assert path.exists()

        _run(tmp_path, catalog, transcoder, body)
        assert transcoder.start_count == 2

    def test_leftover_output_dir_is_cleared(self, tmp_path, catalog):
        """A stale playlist from a failed teardown must not count as ready."""
        transcoder = FakeTranscoder(manifest_delay=None)

        async def body(manager):
            stale = manager.output_dir_for("s1")
            stale.mkdir(parents=True)
            (stale / "index.m3u8").write_text("#EXTM3U\n")
            with pytest.raises(StartupTimeout):
                await manager.ensure_ready("s1")

        _run(tmp_path, catalog, transcoder, body, startup_timeout=0.1)


# =============================================================================
# Invalidation Tests
# =============================================================================


class TestInvalidate:
    """Tests for SessionManager.invalidate."""

    def test_no_session_is_noop(self, tmp_path, catalog):
        async def body(manager):
            await manager.invalidate("s1")
            await manager.invalidate("s1")
            return len(manager.store)

        assert _run(tmp_path, catalog, FakeTranscoder(), body) == 0

    def test_removes_leftover_dir_without_session(self, tmp_path, catalog):
        async def body(manager):
            leftover = manager.output_dir_for("s2")
            leftover.mkdir(parents=True)
            (leftover / "seg00001.ts").write_bytes(b"x")
            await manager.invalidate("s2")
            return leftover.exists()

        assert _run(tmp_path, catalog, FakeTranscoder(), body) is False

    def test_invalidate_after_update_uses_new_sources(self, tmp_path, catalog):
        """Ready session, metadata update + invalidate, next start uses new URLs."""
        transcoder = FakeTranscoder()

        async def body(manager):
            path = await manager.ensure_ready("s2")
            catalog["s2"] = _meta("s2", video="http://v/other.mp4", radio="http://r/other")
            await manager.invalidate("s2")
            assert "s2" not in manager.store
            assert not path.parent.exists()
            await manager.ensure_ready("s2")

        _run(tmp_path, catalog, transcoder, body)
        old, new = transcoder.processes
        assert old.stop_calls == 1
        assert (new.video_url, new.radio_url) == ("http://v/other.mp4", "http://r/other")

    def test_invalidate_while_starting_fails_waiter(self, tmp_path, catalog):
        """Pending ensure_ready fails with SessionInvalidated instead of hanging."""
        transcoder = FakeTranscoder(manifest_delay=None)

        async def body(manager):
            waiter = asyncio.create_task(manager.ensure_ready("s1"))
            await wait_until(lambda: "s1" in manager.store)
            start = time.monotonic()
            await manager.invalidate("s1")
            with pytest.raises(SessionInvalidated):
                await waiter
            return time.monotonic() - start

        elapsed = _run(tmp_path, catalog, transcoder, body, startup_timeout=10.0)
        assert elapsed < 1.0
        assert transcoder.processes[0].stop_calls == 1

    def test_invalidate_races_with_expiry(self, tmp_path, catalog):
        """Whichever runs first tears down; the other is a no-op."""
        transcoder = FakeTranscoder()

        async def body(manager):
            await manager.ensure_ready("s1")
            session = manager.get_session("s1")
            session.expires_at = 0.0
            await asyncio.gather(manager.invalidate("s1"), manager._expire(session))
            return len(manager.store)

        assert _run(tmp_path, catalog, transcoder, body) == 0
        assert transcoder.processes[0].stop_calls == 1

    def test_viewer_waiting_on_lock_sees_delete(self, tmp_path, catalog):
        """A request queued behind a delete must not start the deleted stream."""
        transcoder = FakeTranscoder()

        async def body(manager):
            async with manager.store.lock("s1"):
                viewer = asyncio.create_task(manager.ensure_ready("s1"))
                await asyncio.sleep(0.02)
                del catalog["s1"]
            with pytest.raises(NotFound):
                await viewer
            return len(manager.store)

        assert _run(tmp_path, catalog, transcoder, body) == 0
        assert transcoder.start_count == 0

    def test_viewer_waiting_on_lock_sees_update(self, tmp_path, catalog):
        transcoder = FakeTranscoder()

        async def body(manager):
            async with manager.store.lock("s1"):
                viewer = asyncio.create_task(manager.ensure_ready("s1"))
                await asyncio.sleep(0.02)
                catalog["s1"] = _meta("s1", video="http://v/new.mp4")
            await viewer

        _run(tmp_path, catalog, transcoder, body)
        assert transcoder.start_count == 1
        assert transcoder.processes[0].video_url == "http://v/new.mp4"

    def test_joiner_keeps_session_built_from_newer_metadata(self, tmp_path, catalog):
        """A caller that looked up old metadata joins, not replaces, a fresh session."""
        transcoder = FakeTranscoder(manifest_delay=0.05)

        async def body(manager):
            async with manager.store.lock("s1"):
                first = asyncio.create_task(manager.ensure_ready("s1"))
                second = asyncio.create_task(manager.ensure_ready("s1"))
                await asyncio.sleep(0.02)
                catalog["s1"] = _meta("s1", radio="http://r/new")
            return await asyncio.gather(first, second)

        first, second = _run(tmp_path, catalog, transcoder, body)
        assert first == second
        assert transcoder.start_count == 1
        assert transcoder.processes[0].radio_url == "http://r/new"


# =============================================================================
# Process Event Tests
# =============================================================================


class TestProcessEvents:
    """Tests for reacting to ffmpeg errored/ended events."""

    def test_errored_ready_session_is_purged(self, tmp_path, catalog):
        transcoder = FakeTranscoder()

        async def body(manager):
            path = await manager.ensure_ready("s3")
            transcoder.processes[0].emit(ProcessEvent.ERRORED, "exit 1: Connection refused")
            await wait_until(lambda: "s3" not in manager.store)
            assert not path.parent.exists()
            path = await manager.ensure_ready("s3")
            assert path.exists()

        _run(tmp_path, catalog, transcoder, body)
        assert transcoder.start_count == 2

    def test_errored_while_starting_fails_waiter(self, tmp_path, catalog):
        transcoder = FakeTranscoder(manifest_delay=None)

        async def body(manager):
            waiter = asyncio.create_task(manager.ensure_ready("s1"))
            await wait_until(lambda: transcoder.start_count == 1)
            transcoder.processes[0].emit(ProcessEvent.ERRORED, "exit 1: Invalid data")
            with pytest.raises(ProcessFailure):
                await waiter
            await wait_until(lambda: "s1" not in manager.store)

        _run(tmp_path, catalog, transcoder, body, startup_timeout=10.0)

    def test_ended_session_is_purged(self, tmp_path, catalog):
        transcoder = FakeTranscoder()

        async def body(manager):
            await manager.ensure_ready("s1")
            transcoder.processes[0].emit(ProcessEvent.ENDED, "exit 0")
            await wait_until(lambda: "s1" not in manager.store)

        _run(tmp_path, catalog, transcoder, body)

    def test_started_event_is_informational(self, tmp_path, catalog):
        transcoder = FakeTranscoder()

        async def body(manager):
            await manager.ensure_ready("s1")
            transcoder.processes[0].emit(ProcessEvent.STARTED, "pid 1")
            await asyncio.sleep(0.05)
            return manager.get_session("s1").state

        assert _run(tmp_path, catalog, transcoder, body) is SessionState.READY

    def test_late_event_from_replaced_process_ignored(self, tmp_path, catalog):
        """Exit of an invalidated process must not purge its replacement."""
        transcoder = FakeTranscoder()

        async def body(manager):
            await manager.ensure_ready("s1")
            await manager.invalidate("s1")
            await manager.ensure_ready("s1")
            transcoder.processes[0].emit(ProcessEvent.ENDED, "stopped")
            await asyncio.sleep(0.05)
            return manager.get_session("s1")

        session = _run(tmp_path, catalog, transcoder, body)
        assert session is not None
        assert session.process is transcoder.processes[1]


# =============================================================================
# Expiry Tests
# =============================================================================


class TestExpiry:
    """Tests for sliding-window inactivity expiry."""

    def test_idle_session_expires(self, tmp_path, catalog):
        transcoder = FakeTranscoder(manifest_delay=0.01)

        async def body(manager):
            path = await manager.ensure_ready("s1")
            await wait_until(lambda: "s1" not in manager.store, timeout=3.0)
            assert not path.parent.exists()
            await manager.ensure_ready("s1")

        _run(tmp_path, catalog, transcoder, body, idle_timeout=0.2)
        assert transcoder.processes[0].stop_calls == 1
        assert transcoder.start_count == 2

    def test_requests_keep_session_alive(self, tmp_path, catalog):
        transcoder = FakeTranscoder(manifest_delay=0.01)

        async def body(manager):
            for _ in range(8):
                await manager.ensure_ready("s1")
                await asyncio.sleep(0.1)
            return "s1" in manager.store

        assert _run(tmp_path, catalog, transcoder, body, idle_timeout=0.3) is True
        assert transcoder.start_count == 1

    def test_touch_renews(self, tmp_path, catalog):
        transcoder = FakeTranscoder(manifest_delay=0.01)

        async def body(manager):
            await manager.ensure_ready("s1")
            for _ in range(6):
                await asyncio.sleep(0.1)
                assert manager.touch("s1") is True
            return "s1" in manager.store

        assert _run(tmp_path, catalog, transcoder, body, idle_timeout=0.3) is True

    def test_replaced_sessions_leave_no_heap_entries(self, tmp_path, catalog):
        """Deadlines armed for torn-down sessions are dropped, not rescheduled."""
        transcoder = FakeTranscoder(manifest_delay=0.01)

        async def body(manager):
            for _ in range(3):
                await manager.ensure_ready("s1")
                await manager.invalidate("s1")
            await manager.ensure_ready("s1")
            for _ in range(14):
                await asyncio.sleep(0.05)
                manager.touch("s1")
            return [entry[2] for entry in manager._expiry_heap], manager.get_session("s1")

        entries, current = _run(tmp_path, catalog, transcoder, body, idle_timeout=0.3)
        assert entries == [current]

    def test_touch_unknown(self, tmp_path, catalog):
        async def body(manager):
            return manager.touch("s1")

        assert _run(tmp_path, catalog, FakeTranscoder(), body) is False


# =============================================================================
# Startup / Shutdown Tests
# =============================================================================


class TestStartClose:
    """Tests for start() and close()."""

    def test_start_removes_orphaned_dirs(self, tmp_path, catalog):
        orphan = tmp_path / "streams" / "7"
        orphan.mkdir(parents=True)
        (orphan / "index.m3u8").write_text("#EXTM3U\n")

        _run(tmp_path, catalog, FakeTranscoder(), lambda m: asyncio.sleep(0))
        assert not orphan.exists()

    def test_close_stops_everything(self, tmp_path, catalog):
        transcoder = FakeTranscoder()

        async def main():
            manager = SessionManager(
                catalog.get,
                start_process=transcoder,
                stream_root=tmp_path / "streams",
                startup_timeout=2.0,
                idle_timeout=60.0,
                poll_interval=0.01,
            )
            await manager.start()
            await manager.ensure_ready("s1")
            await manager.ensure_ready("s2")
            await manager.close()
            return len(manager.store)

        assert asyncio.run(main()) == 0
        assert all(p.stop_calls == 1 for p in transcoder.processes)
        assert list((tmp_path / "streams").iterdir()) == []

    def test_close_right_after_expiry_armed(self, tmp_path, catalog):
        """A reaper woken just before close must still exit."""
        transcoder = FakeTranscoder()

        async def main():
            manager = SessionManager(
                catalog.get,
                start_process=transcoder,
                stream_root=tmp_path / "streams",
                startup_timeout=2.0,
                idle_timeout=60.0,
                poll_interval=0.01,
            )
            await manager.start()
            await asyncio.sleep(0)
            for sid in ("s1", "s2"):
                await manager.ensure_ready(sid)
                manager._expiry_wakeup.set()
            await asyncio.wait_for(manager.close(), timeout=2.0)
            return manager._reaper

        assert asyncio.run(main()) is None

    def test_close_waits_for_pending_teardown(self, tmp_path, catalog):
        """Background teardown in flight at close runs to completion."""
        finished = []

        async def slow_teardown():
            await asyncio.sleep(0.05)
            finished.append(True)

        async def body(manager):
            manager._spawn_background_task(slow_teardown())

        _run(tmp_path, catalog, FakeTranscoder(), body)
        assert finished == [True]

    def test_close_sweeps_leftover_dirs(self, tmp_path, catalog):
        async def body(manager):
            leftover = manager.output_dir_for("s9")
            leftover.mkdir(parents=True)
            (leftover / "seg00001.ts").write_bytes(b"x")

        _run(tmp_path, catalog, FakeTranscoder(), body)
        assert list((tmp_path / "streams").iterdir()) == []

    def test_startup_timeout_then_close_removes_output(self, tmp_path, catalog):
        transcoder = FakeTranscoder(manifest_delay=None)

        async def body(manager):
            with pytest.raises(StartupTimeout):
                await manager.ensure_ready("s1")

        for _ in range(5):
            _run(tmp_path, catalog, transcoder, body, startup_timeout=0.05)
            assert not (tmp_path / "streams" / "s1").exists()

    def test_active_sessions(self, tmp_path, catalog):
        transcoder = FakeTranscoder()

        async def body(manager):
            await manager.ensure_ready("s1")
            return manager.active_sessions()

        sessions = _run(tmp_path, catalog, transcoder, body)
        assert len(sessions) == 1
        assert sessions[0]["stream_id"] == "s1"
        assert sessions[0]["state"] == "ready"
        assert sessions[0]["pid"] == transcoder.processes[0].pid
        assert 0 < sessions[0]["expires_in"] <= 60.0

    def test_invalid_stream_id_rejected(self, tmp_path):
        manager = SessionManager(lambda _: None, stream_root=tmp_path)
        with pytest.raises(ValueError):
            manager.output_dir_for("../etc")


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
