"""
smartmarks/dedupe.py — Duplicate removal inside the organized folder.

Only bookmarks under the organized container are candidates; originals
elsewhere in the tree are never touched.

Grouping (both keyings feed one removal set):
  a. normalized url + "|" + stripped title
  b. normalized url, then split by lowercased stripped title
Every group larger than one keeps its earliest date_added entry.

Public API
----------
  normalize_url(url) -> str
  find_duplicates(items) -> (found, [BookmarkItem to remove])     pure
  remove_duplicates(tree, store, root_title) -> DedupeResult
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from smartmarks.models import META_KEY, BookmarkItem
from smartmarks.store import KeyValueStore
from smartmarks.tree import BookmarkTree

logger = logging.getLogger(__name__)

TRACKING_PARAMS = frozenset({
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "fbclid", "gclid", "ref", "source", "campaign_id", "ad_id",
    "track", "tracking", "campaign", "medium",
})


@dataclass
class DedupeResult:
    duplicates_found:   int
    duplicates_removed: int
    organized_total:    int
    original_total:     int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_url(url: str) -> str:
    try:
        parts = urlsplit(url.strip())
        if not parts.scheme or not parts.netloc:
            raise ValueError("not an absolute url")
        query = urlencode(
            [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
             if k not in TRACKING_PARAMS]
        )
        scheme, netloc = parts.scheme, parts.netloc
        # http(s)://www.host folds into https://host; bare http hosts keep their scheme
        if netloc.lower().startswith("www.") and scheme.lower() in ("http", "https"):
            scheme, netloc = "https", netloc[4:]
        out = urlunsplit((scheme, netloc, parts.path, query, parts.fragment))
    except ValueError:
        return (url or "").strip().lower()
    if out.endswith("/"):
        out = out[:-1]
    return out.lower()


def _earliest_first(group: list[BookmarkItem]) -> list[BookmarkItem]:
    return sorted(group, key=lambda b: b.date_added or 0)


def find_duplicates(items: Iterable[BookmarkItem]) -> tuple[int, list[BookmarkItem]]:
    """Return (duplicates_found, items_to_remove). Removal list is id-unique."""
    by_url_title: dict[str, list[BookmarkItem]] = {}
    by_url: dict[str, list[BookmarkItem]] = {}
    for b in items:
        if not b.url:
            continue
        norm = normalize_url(b.url)
        by_url_title.setdefault(f"{norm}|{(b.title or '').strip()}", []).append(b)
        by_url.setdefault(norm, []).append(b)

    found = 0
    remove: dict[str, BookmarkItem] = {}

    for group in by_url_title.values():
        if len(group) > 1:
            found += len(group) - 1
            for b in _earliest_first(group)[1:]:
                remove.setdefault(b.id, b)

    for group in by_url.values():
        if len(group) < 2:
            continue
        by_title: dict[str, list[BookmarkItem]] = {}
        for b in group:
            by_title.setdefault((b.title or "").strip().lower(), []).append(b)
        for sub in by_title.values():
            if len(sub) > 1:
                found += len(sub) - 1
                for b in _earliest_first(sub)[1:]:
                    remove.setdefault(b.id, b)

    return found, list(remove.values())


def split_organized(
    items: Iterable[BookmarkItem], root_title: str, root_id: str | None = None
) -> tuple[list[BookmarkItem], list[BookmarkItem]]:
    """(inside organized container, everything else)."""
    inside, outside = [], []
    for b in items:
        if root_title in b.path or (root_id is not None and b.parent_id == root_id):
            inside.append(b)
        else:
            outside.append(b)
    return inside, outside


def remove_duplicates(
    tree: BookmarkTree,
    store: KeyValueStore,
    root_title: str,
    root_id: str | None = None,
) -> DedupeResult:
    organized, originals = split_organized(tree.flatten(), root_title, root_id)
    found, to_remove = find_duplicates(organized)
    logger.info("dedupe: %d duplicates found among %d organized bookmarks",
                found, len(organized))

    removed_ids: list[str] = []
    for b in to_remove:
        try:
            tree.remove(b.id)
            removed_ids.append(b.id)
        except Exception as e:
            logger.warning("dedupe: failed to remove %s (%s): %s", b.id, b.title, e)

    if removed_ids:
        meta = store.get_one(META_KEY, {}) or {}
        if any(i in meta for i in removed_ids):
            for i in removed_ids:
                meta.pop(i, None)
            store.set({META_KEY: meta})

    return DedupeResult(
        duplicates_found   = found,
        duplicates_removed = len(removed_ids),
        organized_total    = len(organized),
        original_total     = len(originals),
    )
