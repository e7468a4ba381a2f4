"""FFmpeg command building for muxed video + radio HLS output."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import logging
import pathlib
import tempfile


log = logging.getLogger(__name__)

# HLS output
_HLS_SEGMENT_DURATION_SEC = 6
_HLS_LIST_SIZE = 10
_HLS_FLAGS = "delete_segments+append_list+omit_endlist"
_HLS_START_NUMBER = 1
_DEFAULT_AUDIO_BITRATE = "128k"

# Output file naming
MANIFEST_NAME = "index.m3u8"
SEG_PREFIX = "seg"  # Segment files are named seg00001.ts, seg00002.ts, etc.

# User-Agent presets
_USER_AGENT_PRESETS = {
    "vlc": "VLC/3.0.20 LibVLC/3.0.20",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
}

# Module state
_load_settings: Callable[[], dict[str, Any]] = dict


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


def get_hls_segment_duration() -> int:
    """Get HLS segment duration in seconds."""
    return int(_load_settings().get("hls_segment_secs", _HLS_SEGMENT_DURATION_SEC))


def get_hls_list_size() -> int:
    """Get the number of segments kept in the rolling playlist."""
    return int(_load_settings().get("hls_list_size", _HLS_LIST_SIZE))


# ===========================================================================
# User-Agent
# ===========================================================================


def get_user_agent() -> str | None:
    """Get user-agent string from settings, or None to use FFmpeg default."""
    settings = _load_settings()
    preset = settings.get("user_agent_preset", "default")
    if preset == "default":
        return None
    if preset == "custom":
        return settings.get("user_agent_custom") or None
    return _USER_AGENT_PRESETS.get(preset)


# ===========================================================================
# Stream Directory
# ===========================================================================


def get_stream_root() -> pathlib.Path:
    """Get the root directory for per-stream output. Falls back to system temp."""
    custom_dir = _load_settings().get("stream_dir", "")
    path = (
        pathlib.Path(custom_dir)
        if custom_dir
        else pathlib.Path(tempfile.gettempdir()) / "streammixer"
    )
    path.mkdir(parents=True, exist_ok=True)
    return path


# ===========================================================================
# Command Building
# ===========================================================================


def _reconnect_args(url: str) -> list[str]:
    """Reconnect flags only apply to the http protocol."""
    if not url.startswith(("http://", "https://")):
        return []
    return [
        "-reconnect",
        "1",
        "-reconnect_streamed",
        "1",
        "-reconnect_on_network_error",
        "1",
        "-reconnect_delay_max",
        "30",
    ]


def build_mux_hls_cmd(
    video_url: str,
    radio_url: str,
    output_dir: str | pathlib.Path,
    segment_secs: int | None = None,
    list_size: int | None = None,
    audio_bitrate: str = _DEFAULT_AUDIO_BITRATE,
    user_agent: str | None = None,
) -> list[str]:
    """Build ffmpeg command muxing looped video with live radio audio into HLS.

    The video input loops forever and is copied as-is; the radio input
    supplies the only audio track, re-encoded to AAC. Both inputs are read
    at native rate so the rolling playlist advances in real time.
    """
    out = pathlib.Path(output_dir)
    seg_secs = segment_secs if segment_secs is not None else get_hls_segment_duration()
    window = list_size if list_size is not None else get_hls_list_size()

    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostdin",
    ]
    ua_args = ["-user_agent", user_agent] if user_agent else []

    # Input 0: looping video
    cmd.extend(["-stream_loop", "-1", "-re"])
    cmd.extend(_reconnect_args(video_url))
    cmd.extend(ua_args)
    cmd.extend(["-i", video_url])

    # Input 1: live radio
    cmd.extend(["-re"])
    cmd.extend(_reconnect_args(radio_url))
    cmd.extend(ua_args)
    cmd.extend(["-i", radio_url])

    # Picture from the video, sound from the radio
    cmd.extend(["-map", "0:v:0", "-map", "1:a:0"])
    cmd.extend(["-c:v", "copy", "-c:a", "aac", "-b:a", audio_bitrate])

    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(seg_secs),
            "-hls_list_size",
            str(window),
            "-hls_flags",
            _HLS_FLAGS,
            "-start_number",
            str(_HLS_START_NUMBER),
            "-hls_segment_filename",
            str(out / f"{SEG_PREFIX}%05d.ts"),
        ]
    )
    cmd.append(str(out / MANIFEST_NAME))
    return cmd
