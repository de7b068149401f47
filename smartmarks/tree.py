"""
smartmarks/tree.py — Bookmark tree store over the SQLite bookmarks table.

A folder is a node without a url. Ids are opaque strings to callers.

Public API
----------
  BookmarkTree(conn)
    get(id) -> TreeNode                 (KeyError if missing)
    get_children(parent_id) -> [TreeNode]
    get_tree() -> [dict]                nested {id, title, url, children}
    flatten() -> [BookmarkItem]         http(s) bookmarks with ancestor paths
    create(parent_id, title, url=None, date_added=None) -> id
    move(id, new_parent_id)
    update(id, title=None, url=None)
    remove(id)                          bookmark or empty folder only
    remove_subtree(id)
    find_folder(parent_id, title) -> id | None
    get_or_create_folder(parent_id, title) -> id
    find_folders_by_title(title) -> [id]
    subtree_ids(id) -> set[id]
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any

from smartmarks.models import BookmarkItem, now_ms

logger = logging.getLogger(__name__)

_HTTP_RX = re.compile(r"^https?:", re.IGNORECASE)


class TreeError(Exception):
    """Raised for invalid tree operations (bad parent, non-empty folder, cycles)."""


@dataclass(frozen=True)
class TreeNode:
    id:         str
    parent_id:  str | None
    title:      str
    url:        str | None
    date_added: int
    position:   int

    @property
    def is_folder(self) -> bool:
        return self.url is None

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "TreeNode":
        return cls(
            id         = str(r["id"]),
            parent_id  = str(r["parent_id"]) if r["parent_id"] is not None else None,
            title      = r["title"] or "",
            url        = r["url"],
            date_added = r["date_added"] or 0,
            position   = r["position"] or 0,
        )


class BookmarkTree:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> TreeNode:
        row = self._conn.execute(
            "SELECT * FROM bookmarks WHERE id = ?", (node_id,)
        ).fetchone()
        if row is None:
            raise KeyError(f"bookmark {node_id!r} not found")
        return TreeNode.from_row(row)

    def exists(self, node_id: str) -> bool:
        return self._conn.execute(
            "SELECT 1 FROM bookmarks WHERE id = ?", (node_id,)
        ).fetchone() is not None

    def get_children(self, parent_id: str) -> list[TreeNode]:
        rows = self._conn.execute(
            "SELECT * FROM bookmarks WHERE parent_id = ? ORDER BY position, id",
            (parent_id,),
        ).fetchall()
        return [TreeNode.from_row(r) for r in rows]

    def _all_nodes(self) -> dict[str, TreeNode]:
        rows = self._conn.execute("SELECT * FROM bookmarks ORDER BY position, id").fetchall()
        return {str(r["id"]): TreeNode.from_row(r) for r in rows}

    def get_tree(self) -> list[dict[str, Any]]:
        nodes = self._all_nodes()
        children: dict[str | None, list[TreeNode]] = {}
        for n in nodes.values():
            children.setdefault(n.parent_id, []).append(n)

        def _build(n: TreeNode) -> dict[str, Any]:
            d: dict[str, Any] = {"id": n.id, "title": n.title, "date_added": n.date_added}
            if n.url is not None:
                d["url"] = n.url
            else:
                d["children"] = [_build(c) for c in children.get(n.id, [])]
            return d

        return [_build(r) for r in children.get(None, [])]

    def flatten(self) -> list[BookmarkItem]:
        """Every http(s) bookmark in tree order, with its ancestor folder titles."""
        nodes = self._all_nodes()
        children: dict[str | None, list[TreeNode]] = {}
        for n in nodes.values():
            children.setdefault(n.parent_id, []).append(n)

        acc: list[BookmarkItem] = []

        def _walk(n: TreeNode, path: tuple[str, ...]) -> None:
            if n.url is not None:
                if _HTTP_RX.match(n.url):
                    acc.append(BookmarkItem(
                        id=n.id, title=n.title, url=n.url,
                        parent_id=n.parent_id, date_added=n.date_added, path=path,
                    ))
                return
            sub = path + (n.title,) if n.title else path
            for c in children.get(n.id, []):
                _walk(c, sub)

        for root in children.get(None, []):
            _walk(root, ())
        return acc

    def subtree_ids(self, node_id: str) -> set[str]:
        """Ids of node_id and every descendant."""
        out = {node_id}
        frontier = [node_id]
        while frontier:
            nid = frontier.pop()
            for c in self.get_children(nid):
                if c.id not in out:
                    out.add(c.id)
                    frontier.append(c.id)
        return out

    def find_folder(self, parent_id: str, title: str) -> str | None:
        row = self._conn.execute(
            "SELECT id FROM bookmarks WHERE parent_id = ? AND url IS NULL AND title = ? "
            "ORDER BY id LIMIT 1",
            (parent_id, title),
        ).fetchone()
        return str(row["id"]) if row else None

    def find_folders_by_title(self, title: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT id FROM bookmarks WHERE url IS NULL AND title = ? ORDER BY id", (title,)
        ).fetchall()
        return [str(r["id"]) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _require_folder(self, node_id: str) -> TreeNode:
        try:
            node = self.get(node_id)
        except KeyError:
            raise TreeError(f"parent {node_id!r} does not exist") from None
        if not node.is_folder:
            raise TreeError(f"parent {node_id!r} is not a folder")
        return node

    def _next_position(self, parent_id: str | None) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM bookmarks WHERE parent_id IS ?",
            (parent_id,),
        ).fetchone()
        return row[0]

    def create(
        self,
        parent_id: str | None,
        title: str,
        url: str | None = None,
        date_added: int | None = None,
    ) -> str:
        if parent_id is not None:
            self._require_folder(parent_id)
        cur = self._conn.execute(
            "INSERT INTO bookmarks (parent_id, title, url, date_added, position) "
            "VALUES (?, ?, ?, ?, ?)",
            (parent_id, title or "", url,
             date_added if date_added is not None else now_ms(),
             self._next_position(parent_id)),
        )
        self._conn.commit()
        return str(cur.lastrowid)

    def get_or_create_folder(self, parent_id: str, title: str) -> str:
        existing = self.find_folder(parent_id, title)
        if existing:
            return existing
        return self.create(parent_id, title)

    def move(self, node_id: str, new_parent_id: str) -> None:
        node = self.get(node_id)
        self._require_folder(new_parent_id)
        if node.is_folder and new_parent_id in self.subtree_ids(node_id):
            raise TreeError(f"cannot move folder {node_id!r} into its own subtree")
        if node.parent_id == new_parent_id:
            return
        self._conn.execute(
            "UPDATE bookmarks SET parent_id = ?, position = ? WHERE id = ?",
            (new_parent_id, self._next_position(new_parent_id), node_id),
        )
        self._conn.commit()

    def update(self, node_id: str, title: str | None = None, url: str | None = None) -> None:
        node = self.get(node_id)
        if url is not None and node.is_folder:
            raise TreeError(f"cannot set a url on folder {node_id!r}")
        self._conn.execute(
            "UPDATE bookmarks SET title = COALESCE(?, title), url = COALESCE(?, url) "
            "WHERE id = ?",
            (title, url, node_id),
        )
        self._conn.commit()

    def remove(self, node_id: str) -> None:
        node = self.get(node_id)
        if node.parent_id is None:
            raise TreeError(f"cannot remove root folder {node_id!r}")
        if node.is_folder and self.get_children(node_id):
            raise TreeError(f"folder {node_id!r} is not empty")
        self._conn.execute("DELETE FROM bookmarks WHERE id = ?", (node_id,))
        self._conn.commit()

    def remove_subtree(self, node_id: str) -> None:
        node = self.get(node_id)
        if node.parent_id is None:
            raise TreeError(f"cannot remove root folder {node_id!r}")
        ids = self.subtree_ids(node_id)
        # Children first so the parent_id foreign key never dangles
        depth_sorted = sorted(ids, key=lambda i: len(self._ancestor_ids(i)), reverse=True)
        self._conn.executemany(
            "DELETE FROM bookmarks WHERE id = ?", [(i,) for i in depth_sorted]
        )
        self._conn.commit()
        logger.debug("removed subtree %s (%d nodes)", node_id, len(ids))

    def _ancestor_ids(self, node_id: str) -> list[str]:
        out: list[str] = []
        cur = self.get(node_id).parent_id
        while cur is not None:
            out.append(cur)
            cur = self.get(cur).parent_id
        return out
