"""Stream metadata storage (SQLite)."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import logging
import re
import sqlite3
import threading
import time
import uuid


log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StreamMetadata:
    id: str
    owner: str
    name: str
    slug: str
    video_url: str
    radio_url: str
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# SQLite Storage
# =============================================================================

_DB_PATH: Path | None = None
_local = threading.local()


def init(data_dir: Path) -> None:
    """Initialize the streams database."""
    global _DB_PATH
    data_dir.mkdir(parents=True, exist_ok=True)
    _DB_PATH = data_dir / "streams.db"
    close()
    conn = _get_conn()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS streams (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner TEXT NOT NULL,
            name TEXT NOT NULL,
            slug TEXT UNIQUE NOT NULL,
            video_url TEXT NOT NULL,
            radio_url TEXT NOT NULL,
            created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_streams_owner
            ON streams(owner, created_at);
    """)
    conn.commit()


def _get_conn() -> sqlite3.Connection:
    """Get thread-local database connection."""
    if getattr(_local, "conn", None) is None or getattr(_local, "path", None) != _DB_PATH:
        if _DB_PATH is None:
            raise RuntimeError("Streams database not initialized")
        close()
        _local.path = _DB_PATH
        _local.conn = sqlite3.connect(_DB_PATH, timeout=30.0)
        _local.conn.row_factory = sqlite3.Row
        _local.conn.execute("PRAGMA journal_mode=WAL")
    return _local.conn


def close() -> None:
    """Close this thread's connection, if open."""
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
        _local.conn = None


def _row_to_stream(row: sqlite3.Row) -> StreamMetadata:
    return StreamMetadata(
        id=str(row["id"]),
        owner=row["owner"],
        name=row["name"],
        slug=row["slug"],
        video_url=row["video_url"],
        radio_url=row["radio_url"],
        created_at=row["created_at"],
    )


def _parse_id(stream_id: str) -> int | None:
    return int(stream_id) if stream_id.isdigit() else None


def make_slug(owner: str, name: str) -> str:
    """Build a unique slug: <owner>-<name>-<8 hex chars>."""
    name_part = re.sub(r"[^a-z0-9]", "-", name.lower())
    return f"{owner}-{name_part}-{uuid.uuid4().hex[:8]}"


# =============================================================================
# Queries
# =============================================================================


def get_stream_by_id(stream_id: str) -> StreamMetadata | None:
    """Get stream by id, or None. Always reads committed state."""
    row_id = _parse_id(stream_id)
    if row_id is None:
        return None
    row = _get_conn().execute("SELECT * FROM streams WHERE id = ?", (row_id,)).fetchone()
    return _row_to_stream(row) if row else None


def get_stream_by_slug(slug: str) -> StreamMetadata | None:
    """Get stream by exact slug, or None."""
    row = _get_conn().execute("SELECT * FROM streams WHERE slug = ?", (slug,)).fetchone()
    return _row_to_stream(row) if row else None


def list_streams(owner: str) -> list[StreamMetadata]:
    """Get an owner's streams, newest first."""
    rows = _get_conn().execute(
        "SELECT * FROM streams WHERE owner = ? ORDER BY created_at DESC, id DESC",
        (owner,),
    ).fetchall()
    return [_row_to_stream(row) for row in rows]


# =============================================================================
# Mutations
# =============================================================================


def create_stream(owner: str, name: str, video_url: str, radio_url: str) -> StreamMetadata:
    """Insert a stream and return it."""
    conn = _get_conn()
    cur = conn.execute(
        "INSERT INTO streams (owner, name, slug, video_url, radio_url, created_at)"
        " VALUES (?, ?, ?, ?, ?, ?)",
        (owner, name, make_slug(owner, name), video_url, radio_url, time.time()),
    )
    conn.commit()
    stream = get_stream_by_id(str(cur.lastrowid))
    assert stream is not None
    log.info("Created stream %s (%s) for %s", stream.id, stream.slug, owner)
    return stream


def update_stream(
    stream_id: str,
    owner: str,
    name: str,
    video_url: str,
    radio_url: str,
) -> StreamMetadata | None:
    """Update an owner's stream. Returns None if not found or not owned.

    The slug is kept so published playlist URLs stay valid.
    """
    row_id = _parse_id(stream_id)
    if row_id is None:
        return None
    conn = _get_conn()
    cur = conn.execute(
        "UPDATE streams SET name = ?, video_url = ?, radio_url = ? WHERE id = ? AND owner = ?",
        (name, video_url, radio_url, row_id, owner),
    )
    conn.commit()
    if cur.rowcount == 0:
        return None
    log.info("Updated stream %s", stream_id)
    return get_stream_by_id(stream_id)


def delete_stream(stream_id: str, owner: str) -> bool:
    """Delete an owner's stream. Returns False if not found or not owned."""
    row_id = _parse_id(stream_id)
    if row_id is None:
        return False
    conn = _get_conn()
    cur = conn.execute("DELETE FROM streams WHERE id = ? AND owner = ?", (row_id, owner))
    conn.commit()
    if cur.rowcount == 0:
        return False
    log.info("Deleted stream %s", stream_id)
    return True
