"""
tests/test_dedupe.py — Duplicate detection and removal in the organized folder.

Run with: pytest tests/test_dedupe.py -v
"""

from __future__ import annotations

import pytest

from smartmarks.db import OTHER_BOOKMARKS_ID
from smartmarks.dedupe import find_duplicates, normalize_url, remove_duplicates
from smartmarks.models import META_KEY, BookmarkItem
from smartmarks.store import KeyValueStore
from smartmarks.tree import BookmarkTree

ROOT = "🧠 Smart Bookmarks"


def _item(id_: str, url: str, title: str, added: int) -> BookmarkItem:
    return BookmarkItem(id_, title, url, "10", added, (ROOT, "📁 Docs"))


@pytest.mark.parametrize("url, expected", [
    ("https://www.Example.com/Page/", "https://example.com/page"),
    ("https://example.com/page?utm_source=x&id=3&fbclid=y", "https://example.com/page?id=3"),
    ("http://example.com/?ref=hn", "http://example.com"),
    ("http://www.example.com/page", "https://example.com/page"),
    ("  Not A Url  ", "not a url"),
])
def test_normalize_url(url: str, expected: str) -> None:
    assert normalize_url(url) == expected


def test_keeps_earliest() -> None:
    items = [
        _item("b", "https://example.com/page", "Page", 200),
        _item("a", "https://www.example.com/page/", "Page", 100),
    ]
    found, remove = find_duplicates(items)
    assert found >= 1
    assert [b.id for b in remove] == ["b"]


def test_distinct_titles_same_url_kept() -> None:
    items = [
        _item("a", "https://example.com/page", "Page one", 100),
        _item("b", "https://example.com/page", "Page two", 200),
    ]
    assert find_duplicates(items) == (0, [])


def test_title_case_differences_grouped_by_url() -> None:
    items = [
        _item("a", "https://example.com/page", "Page", 100),
        _item("b", "https://example.com/page", "PAGE", 200),
    ]
    _, remove = find_duplicates(items)
    assert [b.id for b in remove] == ["b"]


def test_remove_only_touches_organized_folder(conn) -> None:
    tree = BookmarkTree(conn)
    store = KeyValueStore(conn)
    root = tree.create(OTHER_BOOKMARKS_ID, ROOT)
    docs = tree.create(root, "📁 Docs")
    keep = tree.create(docs, "Page", "https://example.com/page", date_added=100)
    dup = tree.create(docs, "Page", "https://example.com/page/", date_added=200)
    original_a = tree.create(OTHER_BOOKMARKS_ID, "Page", "https://example.com/page", date_added=50)
    original_b = tree.create(OTHER_BOOKMARKS_ID, "Page", "https://example.com/page", date_added=60)
    store.set({META_KEY: {dup: {"primary": "docs"}, keep: {"primary": "docs"}}})

    result = remove_duplicates(tree, store, ROOT, root)

    assert result.duplicates_removed == 1
    assert result.organized_total == 2
    assert result.original_total == 2
    assert tree.exists(keep)
    assert not tree.exists(dup)
    assert tree.exists(original_a) and tree.exists(original_b)
    assert set(store.get_one(META_KEY)) == {keep}


def test_removal_failure_is_counted_not_fatal(conn, monkeypatch: pytest.MonkeyPatch) -> None:
    tree = BookmarkTree(conn)
    store = KeyValueStore(conn)
    root = tree.create(OTHER_BOOKMARKS_ID, ROOT)
    for added in (100, 200, 300):
        tree.create(root, "Page", "https://example.com/page", date_added=added)

    real_remove = tree.remove
    calls: list[str] = []

    def flaky_remove(node_id: str) -> None:
        calls.append(node_id)
        if len(calls) == 1:
            raise RuntimeError("locked")
        real_remove(node_id)

    monkeypatch.setattr(tree, "remove", flaky_remove)
    result = remove_duplicates(tree, store, ROOT, root)
    assert len(calls) == 2
    assert result.duplicates_removed == 1
    assert result.duplicates_found > result.duplicates_removed
    assert len(tree.flatten()) == 2
