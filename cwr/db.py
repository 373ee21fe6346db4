from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a missing
    bind-mounted file is requested), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "cwr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              workload TEXT,
              digest TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, workload: str | None = None, digest: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, workload, digest, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), workload, digest, message),
        )


def latest_events(limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if level:
            rows = conn.execute(
                "SELECT * FROM events WHERE level=? ORDER BY id DESC LIMIT ?",
                (level.upper(), limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
