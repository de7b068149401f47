"""
smartmarks/store.py — Durable key-value store over the SQLite kv table.

Contract (no transactions across calls):
  get(keys)      -> {key: value} for the keys that exist
  set(record)    -> persist every key in the mapping
  remove(keys)   -> delete the keys

Values are JSON-serialisable Python objects. Callers read-modify-write whole
records; the single sequential organizer avoids self-races.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class KeyValueStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get(self, keys: str | Iterable[str]) -> dict[str, Any]:
        if isinstance(keys, str):
            keys = [keys]
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        rows = self._conn.execute(
            f"SELECT key, value FROM kv WHERE key IN ({placeholders})", keys
        ).fetchall()
        out: dict[str, Any] = {}
        for r in rows:
            try:
                out[r["key"]] = json.loads(r["value"])
            except json.JSONDecodeError:
                logger.warning("kv: corrupt value for key %r, ignoring", r["key"])
        return out

    def get_one(self, key: str, default: Any = None) -> Any:
        return self.get([key]).get(key, default)

    def set(self, record: dict[str, Any]) -> None:
        self._conn.executemany(
            """INSERT INTO kv (key, value, updated_at) VALUES (?, ?, datetime('now'))
               ON CONFLICT(key) DO UPDATE SET
                   value      = excluded.value,
                   updated_at = datetime('now')""",
            [(k, json.dumps(v, ensure_ascii=False)) for k, v in record.items()],
        )
        self._conn.commit()

    def remove(self, keys: str | Iterable[str]) -> None:
        if isinstance(keys, str):
            keys = [keys]
        self._conn.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in keys])
        self._conn.commit()

    def keys(self) -> list[str]:
        return [r["key"] for r in self._conn.execute("SELECT key FROM kv ORDER BY key")]

    def dump(self) -> dict[str, Any]:
        """Every record in the store."""
        return self.get(self.keys())
