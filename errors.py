"""Errors raised while resolving a stream's manifest."""

from __future__ import annotations


class StreamError(Exception):
    """Base class for stream session failures."""

    def __init__(self, stream_id: str, detail: str = "") -> None:
        self.stream_id = stream_id
        self.detail = detail
        super().__init__(f"stream {stream_id}: {detail}" if detail else f"stream {stream_id}")


class NotFound(StreamError):
    """No metadata exists for the stream id."""


class StartupTimeout(StreamError):
    """ffmpeg did not write a playlist within the startup bound. Retryable."""


class ProcessFailure(StreamError):
    """ffmpeg could not be started, or exited while its session was live."""


class SessionInvalidated(StreamError):
    """The session was torn down while a request was waiting for it."""


class TeardownFailure(StreamError):
    """Output directory removal failed. Logged, never returned to a viewer."""
