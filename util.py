"""Shared utilities."""

from __future__ import annotations

import urllib.parse


# ffmpeg would happily read file://, concat:, pipe: etc.
_SOURCE_SCHEMES = ("http", "https", "rtmp", "rtmps", "rtsp")


def is_safe_source_url(url: str) -> bool:
    """Check a user-supplied source URL is a network URL ffmpeg may open."""
    if not url or any(c.isspace() for c in url):
        return False
    parsed = urllib.parse.urlparse(url)
    return parsed.scheme in _SOURCE_SCHEMES and bool(parsed.netloc)
