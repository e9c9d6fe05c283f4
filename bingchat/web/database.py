"""SQLite persistence for chat history snapshots and uploaded image blobs.

- history: one row per completed generation, holding the full transcript as JSON
- blobs: uploaded image bytes, served back through /api/blob.jpg?bcid=<id>
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Thread-safe SQLite DAO; also the session history collaborator."""

    def __init__(self, db_path: str | Path):
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._ensure_schema()

    # ── Connection ────────────────────────────────────────────────

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def _ensure_schema(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS history (
                    id             TEXT PRIMARY KEY,
                    message_count  INTEGER NOT NULL,
                    messages_json  TEXT NOT NULL DEFAULT '[]',
                    created_at     TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_history_created ON history(created_at);

                CREATE TABLE IF NOT EXISTS blobs (
                    id            TEXT PRIMARY KEY,
                    sha256        TEXT NOT NULL,
                    content_type  TEXT NOT NULL DEFAULT 'image/jpeg',
                    data          BLOB NOT NULL,
                    source_url    TEXT NOT NULL DEFAULT '',
                    created_at    TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_blobs_sha ON blobs(sha256);
                """
            )
            conn.commit()

    # ── History ───────────────────────────────────────────────────

    def save(self, snapshot: dict[str, Any]) -> None:
        """Store a `{messages: [...]}` snapshot."""
        messages = list(snapshot.get("messages") or [])
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT INTO history (id, message_count, messages_json, created_at) VALUES (?, ?, ?, ?)",
                (
                    f"hist_{uuid.uuid4().hex[:12]}",
                    len(messages),
                    json.dumps(messages, ensure_ascii=False),
                    _now_iso(),
                ),
            )
            conn.commit()

    def list_history(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            conn = self._get_conn()
            rows = conn.execute(
                "SELECT * FROM history ORDER BY created_at DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        out: list[dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["messages"] = json.loads(d.pop("messages_json") or "[]")
            out.append(d)
        return out

    def latest_history(self) -> dict[str, Any] | None:
        rows = self.list_history(limit=1)
        return rows[0] if rows else None

    # ── Blobs ─────────────────────────────────────────────────────

    def put_blob(self, data: bytes, content_type: str = "image/jpeg", source_url: str = "") -> str:
        """Store image bytes and return the blob id. Identical bytes share one id."""
        sha = hashlib.sha256(data).hexdigest()
        with self._lock:
            conn = self._get_conn()
            row = conn.execute("SELECT id FROM blobs WHERE sha256 = ?", (sha,)).fetchone()
            if row:
                return str(row["id"])
            blob_id = uuid.uuid4().hex
            conn.execute(
                "INSERT INTO blobs (id, sha256, content_type, data, source_url, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (blob_id, sha, content_type, sqlite3.Binary(data), source_url, _now_iso()),
            )
            conn.commit()
            return blob_id

    def get_blob(self, blob_id: str) -> tuple[bytes, str] | None:
        with self._lock:
            conn = self._get_conn()
            row = conn.execute("SELECT data, content_type FROM blobs WHERE id = ?", (blob_id,)).fetchone()
            if not row:
                return None
            return bytes(row["data"]), str(row["content_type"])
