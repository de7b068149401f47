"""
smartmarks/db.py — SQLite schema and helpers.

Tables
------
kv         : durable key-value records (JSON values), see smartmarks/store.py
bookmarks  : bookmark tree nodes; a folder is a row without a url
events     : organizer audit log (job lifecycle, per-item failures)

Two root folders are seeded on first connect ("Bookmarks bar", "Other bookmarks"),
mirroring the layout a browser profile starts with.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_DDL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bookmarks (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    parent_id  INTEGER REFERENCES bookmarks(id),
    title      TEXT NOT NULL DEFAULT '',
    url        TEXT,
    date_added INTEGER NOT NULL,
    position   INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_bookmarks_parent ON bookmarks(parent_id);
CREATE INDEX IF NOT EXISTS idx_bookmarks_url    ON bookmarks(url);

CREATE TABLE IF NOT EXISTS events (
    event_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    bookmark_id TEXT,
    event_type  TEXT,
    detail      TEXT,
    ts          TEXT NOT NULL DEFAULT (datetime('now'))
);

INSERT OR IGNORE INTO bookmarks (id, parent_id, title, url, date_added, position)
VALUES (1, NULL, 'Bookmarks bar', NULL, 0, 0);
INSERT OR IGNORE INTO bookmarks (id, parent_id, title, url, date_added, position)
VALUES (2, NULL, 'Other bookmarks', NULL, 0, 1);
"""

BOOKMARKS_BAR_ID = "1"
OTHER_BOOKMARKS_ID = "2"


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

def get_connection(db_path: Path) -> sqlite3.Connection:
    """Return a WAL-mode, FK-enabled connection with row_factory set."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    path_str = str(db_path.resolve())
    conn = sqlite3.connect(path_str, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(_DDL)
    conn.commit()
    return conn


# ---------------------------------------------------------------------------
# events helper
# ---------------------------------------------------------------------------

def log_event(
    conn: sqlite3.Connection,
    event_type: str,
    detail: str | None = None,
    bookmark_id: str | None = None,
) -> None:
    conn.execute(
        "INSERT INTO events (bookmark_id, event_type, detail) VALUES (?, ?, ?)",
        (bookmark_id, event_type, detail),
    )
    conn.commit()


def get_events(
    conn: sqlite3.Connection,
    event_type: str | None = None,
    limit: int = 100,
) -> list[sqlite3.Row]:
    """Most recent events first, optionally filtered by type."""
    if event_type:
        return conn.execute(
            "SELECT * FROM events WHERE event_type=? ORDER BY event_id DESC LIMIT ?",
            (event_type, limit),
        ).fetchall()
    return conn.execute(
        "SELECT * FROM events ORDER BY event_id DESC LIMIT ?", (limit,)
    ).fetchall()


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

def get_stats(conn: sqlite3.Connection) -> dict[str, Any]:
    """Return bookmark / folder counts and event count."""
    row = conn.execute(
        "SELECT SUM(CASE WHEN url IS NOT NULL THEN 1 ELSE 0 END) AS bookmarks, "
        "SUM(CASE WHEN url IS NULL THEN 1 ELSE 0 END) AS folders FROM bookmarks"
    ).fetchone()
    return {
        "bookmarks": row["bookmarks"] or 0,
        "folders": row["folders"] or 0,
        "events": conn.execute("SELECT COUNT(*) FROM events").fetchone()[0],
    }
