"""StreamMixer HTTP server: stream CRUD API, HLS manifests, M3U playlists."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

import asyncio
import logging
import os
import re

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response
from pydantic import BaseModel

from ffmpeg_session import (
    NotFound,
    ProcessFailure,
    SessionInvalidated,
    SessionManager,
    StartupTimeout,
)
from util import is_safe_source_url

import auth
import ffmpeg_command
import ffmpeg_process
import m3u
import settings
import streams


log = logging.getLogger(__name__)

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
_SEGMENT_RE = re.compile(rf"{ffmpeg_command.SEG_PREFIX}\d+\.ts")
_RETRY_AFTER_SECS = "2"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    ffmpeg_command.init(settings.load_settings)
    streams.init(settings.DATA_DIR)
    manager = SessionManager(
        streams.get_stream_by_id,
        start_process=ffmpeg_process.start_transcode,
    )
    await manager.start()
    app.state.sessions = manager
    log.info("StreamMixer ready (streams in %s)", manager.stream_root)
    try:
        yield
    finally:
        await manager.close()
        streams.close()


app = FastAPI(title="StreamMixer", lifespan=lifespan)


def _sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def _base_url(request: Request) -> str:
    return settings.load_settings().get("base_url") or str(request.base_url).rstrip("/")


# =============================================================================
# Auth
# =============================================================================


class Credentials(BaseModel):
    username: str
    password: str


def current_user(authorization: Annotated[str | None, Header()] = None) -> str:
    """Resolve the Bearer token to a username."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(401, "Token required")
    username = auth.verify_token(token.strip())
    if username is None:
        raise HTTPException(403, "Invalid token")
    return username


User = Annotated[str, Depends(current_user)]


@app.post("/api/auth/register")
def register(creds: Credentials) -> dict[str, Any]:
    username = creds.username.strip().lower()
    if not username or not creds.password:
        raise HTTPException(400, "Username and password required")
    if len(creds.password) < 8:
        raise HTTPException(400, "Password must be at least 8 characters")
    try:
        auth.create_user(username, creds.password)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e
    log.info("Registered user %s", username)
    return {"token": auth.create_token(username), "user": {"username": username}}


@app.post("/api/auth/login")
def login(creds: Credentials) -> dict[str, Any]:
    username = creds.username.strip().lower()
    if not auth.verify_password(username, creds.password):
        raise HTTPException(400, "Invalid username or password")
    return {"token": auth.create_token(username), "user": {"username": username}}


@app.get("/api/auth/verify")
def verify(user: User) -> dict[str, Any]:
    return {"valid": True, "user": {"username": user}}


# =============================================================================
# Stream CRUD
# =============================================================================


class StreamIn(BaseModel):
    name: str
    video_url: str
    radio_url: str


def _validate_stream(body: StreamIn) -> None:
    if not body.name.strip() or not body.video_url or not body.radio_url:
        raise HTTPException(400, "All fields are required")
    for field in ("video_url", "radio_url"):
        if not is_safe_source_url(getattr(body, field)):
            raise HTTPException(400, f"{field} must be an http(s), rtmp or rtsp URL")


@app.get("/api/streams")
def get_streams(user: User) -> list[dict[str, Any]]:
    return [s.to_dict() for s in streams.list_streams(user)]


@app.post("/api/streams")
def create_stream(body: StreamIn, user: User) -> dict[str, Any]:
    _validate_stream(body)
    return streams.create_stream(
        user, body.name.strip(), body.video_url, body.radio_url
    ).to_dict()


@app.put("/api/streams/{stream_id}")
async def update_stream(
    stream_id: str, body: StreamIn, user: User, request: Request
) -> dict[str, Any]:
    _validate_stream(body)
    updated = await asyncio.to_thread(
        streams.update_stream, stream_id, user, body.name.strip(), body.video_url, body.radio_url
    )
    if updated is None:
        raise HTTPException(404, "Stream not found")
    # Never serve a session built from the old sources
    await _sessions(request).invalidate(updated.id)
    return updated.to_dict()


@app.delete("/api/streams/{stream_id}")
async def delete_stream(stream_id: str, user: User, request: Request) -> dict[str, Any]:
    # Row goes first so a viewer racing the teardown sees NotFound
    if not await asyncio.to_thread(streams.delete_stream, stream_id, user):
        raise HTTPException(404, "Stream not found")
    await _sessions(request).invalidate(stream_id)
    return {"message": "Stream deleted"}


@app.get("/api/status")
async def status(user: User, request: Request) -> dict[str, Any]:
    return {"sessions": _sessions(request).active_sessions()}


# =============================================================================
# HLS
# =============================================================================


@app.get("/stream/{slug}/index.m3u8")
async def stream_manifest(slug: str, request: Request) -> Response:
    stream = await asyncio.to_thread(streams.get_stream_by_slug, slug)
    if stream is None:
        raise HTTPException(404, "Stream not found")
    try:
        manifest_path = await _sessions(request).ensure_ready(stream.id)
        content = await asyncio.to_thread(manifest_path.read_bytes)
    except NotFound as e:
        raise HTTPException(404, "Stream not found") from e
    except (StartupTimeout, SessionInvalidated, FileNotFoundError) as e:
        log.warning("Manifest for %s not available: %s", slug, e)
        raise HTTPException(
            503, "Stream is starting, retry shortly", headers={"Retry-After": _RETRY_AFTER_SECS}
        ) from e
    except ProcessFailure as e:
        log.error("Stream %s failed: %s", slug, e)
        raise HTTPException(500, "Error generating stream") from e
    return Response(
        content=content,
        media_type=HLS_CONTENT_TYPE,
        headers={"Cache-Control": "no-cache"},
    )


@app.get("/stream/{slug}/{segment}")
async def stream_segment(slug: str, segment: str, request: Request) -> FileResponse:
    if not _SEGMENT_RE.fullmatch(segment):
        raise HTTPException(404, "Not found")
    stream = await asyncio.to_thread(streams.get_stream_by_slug, slug)
    session = _sessions(request).get_session(stream.id) if stream else None
    if session is None:
        raise HTTPException(404, "Stream not active")
    path = session.output_dir / segment
    if not path.is_file():
        raise HTTPException(404, "Segment not found")
    _sessions(request).touch(stream.id)
    return FileResponse(path, media_type="video/mp2t")


# =============================================================================
# M3U
# =============================================================================


def _playlist_response(request: Request, slug: str) -> PlainTextResponse:
    base_url = _base_url(request)
    stream = streams.get_stream_by_slug(slug)
    if stream is None:
        return PlainTextResponse(
            m3u.build_not_found_playlist(base_url), status_code=404, media_type=m3u.M3U_CONTENT_TYPE
        )
    return PlainTextResponse(
        m3u.build_stream_playlist(stream.name, base_url, stream.slug),
        media_type=m3u.M3U_CONTENT_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{stream.slug}.m3u"'},
    )


@app.get("/u/{slug}.m3u")
def stream_playlist(slug: str, request: Request) -> PlainTextResponse:
    return _playlist_response(request, slug)


@app.get("/u/{username}/{channel}.m3u")
def user_channel_playlist(username: str, channel: str, request: Request) -> PlainTextResponse:
    return _playlist_response(request, f"{username}-{channel}")


def run() -> None:
    """Run the server with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(settings.load_settings().get("port", 3000))
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
