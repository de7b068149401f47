"""
smartmarks/netscape.py — Netscape bookmark HTML import/export.

The format every browser exports: nested <DL> lists, folders as <H3>, links as
<A HREF ADD_DATE>. ADD_DATE is epoch seconds in the file and epoch ms in the tree.

Public API
----------
  parse_netscape(html_text) -> [(title, url, add_date_ms, folder_path, in_toolbar)]
  import_netscape(tree, html_text, parent_id=None) -> {"imported": N, "skipped": N, "folders": N}
  export_netscape(tree) -> str
"""

from __future__ import annotations

import html
import logging
from typing import Any, Iterator

from bs4 import BeautifulSoup

from smartmarks.db import BOOKMARKS_BAR_ID, OTHER_BOOKMARKS_ID
from smartmarks.models import now_ms
from smartmarks.tree import BookmarkTree

logger = logging.getLogger(__name__)

_TOOLBAR_NAMES = {"favorites bar", "bookmarks bar", "bookmarks toolbar", "toolbar"}

_HEADER = (
    "<!DOCTYPE NETSCAPE-Bookmark-file-1>\n"
    '<META HTTP-EQUIV="Content-Type" CONTENT="text/html; charset=UTF-8">\n'
    "<TITLE>Bookmarks</TITLE>\n"
    "<H1>Bookmarks</H1>\n"
)


def _is_toolbar(h3: Any) -> bool:
    flag = str(h3.get("personal_toolbar_folder", "false")).lower() == "true"
    return flag or h3.get_text(strip=True).lower() in _TOOLBAR_NAMES


def parse_netscape(html_text: str) -> list[tuple[str, str, int, list[str], bool]]:
    """
    Yield every link with its folder path (outermost folder first).

    A folder's <DL> is the sibling that follows its <H3>; walking a link's
    <DL> ancestors and reading each one's preceding <H3> recovers the path.
    """
    soup = BeautifulSoup(html_text, "html.parser")
    out: list[tuple[str, str, int, list[str], bool]] = []
    for a in soup.find_all("a"):
        url = a.get("href")
        if not url:
            continue
        path: list[str] = []
        in_toolbar = False
        for dl in a.find_parents("dl"):
            h3 = dl.find_previous_sibling("h3")
            if h3 is None:
                continue
            if _is_toolbar(h3):
                in_toolbar = True
            else:
                path.append(h3.get_text(strip=True))
        path.reverse()
        raw_date = a.get("add_date")
        try:
            add_date = int(raw_date) * 1000 if raw_date else now_ms()
        except ValueError:
            add_date = now_ms()
        out.append((a.get_text(strip=True), url, add_date, path, in_toolbar))
    return out


def import_netscape(
    tree: BookmarkTree,
    html_text: str,
    parent_id: str | None = None,
) -> dict[str, int]:
    """
    Recreate the exported folder structure under parent_id (default: Other bookmarks).
    Toolbar links land in the Bookmarks bar root. Exact url+folder duplicates are skipped.
    """
    target = parent_id or OTHER_BOOKMARKS_ID
    folder_cache: dict[tuple[str, tuple[str, ...]], str] = {}
    imported = skipped = 0
    folders_before = sum(1 for _ in _iter_folders(tree))

    for title, url, add_date, path, in_toolbar in parse_netscape(html_text):
        base = BOOKMARKS_BAR_ID if in_toolbar else target
        folder_id = base
        for depth in range(len(path)):
            key = (base, tuple(path[: depth + 1]))
            if key not in folder_cache:
                folder_cache[key] = tree.get_or_create_folder(folder_id, path[depth])
            folder_id = folder_cache[key]
        if any(c.url == url for c in tree.get_children(folder_id)):
            skipped += 1
            continue
        tree.create(folder_id, title, url, date_added=add_date)
        imported += 1

    folders_after = sum(1 for _ in _iter_folders(tree))
    logger.info("netscape import: %d imported, %d skipped", imported, skipped)
    return {"imported": imported, "skipped": skipped, "folders": folders_after - folders_before}


def _iter_folders(tree: BookmarkTree) -> Iterator[dict[str, Any]]:
    stack = list(tree.get_tree())
    while stack:
        node = stack.pop()
        if "children" in node:
            yield node
            stack.extend(node["children"])


def _write_dl(nodes: list[dict[str, Any]], indent: int) -> Iterator[str]:
    """Recursively emit DL/DT HTML for tree nodes."""
    pad = " " * indent
    for node in nodes:
        if "children" in node:
            yield f"{pad}<DT><H3>{html.escape(node['title'])}</H3>\n"
            yield f"{pad}<DL><p>\n"
            yield from _write_dl(node["children"], indent + 4)
            yield f"{pad}</DL><p>\n"
        else:
            add_date = int(node.get("date_added", 0)) // 1000
            yield (f'{pad}<DT><A HREF="{html.escape(node["url"])}" '
                   f'ADD_DATE="{add_date}">{html.escape(node["title"])}</A>\n')


def export_netscape(tree: BookmarkTree) -> str:
    """Serialise the whole tree; root folders become top-level <H3> entries."""
    return _HEADER + "<DL><p>\n" + "".join(_write_dl(tree.get_tree(), 4)) + "</DL><p>\n"
