"""M3U playlist text for published streams."""

from __future__ import annotations


M3U_CONTENT_TYPE = "audio/x-mpegurl"


def _clean_title(name: str) -> str:
    # A newline in the title would start a new playlist entry
    return " ".join(name.split()) or "Stream"


def manifest_url(base_url: str, slug: str) -> str:
    return f"{base_url.rstrip('/')}/stream/{slug}/index.m3u8"


def build_stream_playlist(name: str, base_url: str, slug: str) -> str:
    """Single-entry playlist pointing players at the stream's HLS manifest."""
    return f"#EXTM3U\n#EXTINF:-1,{_clean_title(name)}\n{manifest_url(base_url, slug)}\n"


def build_not_found_playlist(base_url: str) -> str:
    """Playlist players can still parse when the stream does not exist."""
    return (
        "#EXTM3U\n"
        "#EXTINF:-1,Stream not found\n"
        "#EXTVLCOPT:network-caching=1000\n"
        f"{base_url.rstrip('/')}/error.m3u8\n"
    )
