"""
tests/test_netscape.py — Netscape bookmark HTML import/export tests.

Run with: pytest tests/test_netscape.py -v
"""

from __future__ import annotations

from pathlib import Path

import pytest

from smartmarks.db import BOOKMARKS_BAR_ID, OTHER_BOOKMARKS_ID, get_connection
from smartmarks.netscape import export_netscape, import_netscape, parse_netscape
from smartmarks.tree import BookmarkTree

_SAMPLE = """<!DOCTYPE NETSCAPE-Bookmark-file-1>
<META HTTP-EQUIV="Content-Type" CONTENT="text/html; charset=UTF-8">
<TITLE>Bookmarks</TITLE>
<H1>Bookmarks</H1>
<DL><p>
    <DT><H3 ADD_DATE="1" PERSONAL_TOOLBAR_FOLDER="true">Bookmarks bar</H3>
    <DL><p>
        <DT><A HREF="https://github.com/" ADD_DATE="1700000000">GitHub</A>
    </DL><p>
    <DT><H3>Dev</H3>
    <DL><p>
        <DT><H3>Frontend</H3>
        <DL><p>
            <DT><A HREF="https://vuejs.org/" ADD_DATE="1600000000">Vue</A>
        </DL><p>
        <DT><A HREF="https://docs.python.org/">Python docs</A>
    </DL><p>
    <DT><A HREF="https://example.com/">Loose</A>
</DL><p>
"""


@pytest.fixture
def tree(tmp_path: Path):
    conn = get_connection(tmp_path / "db" / "smartmarks.db")
    yield BookmarkTree(conn)
    conn.close()


def test_parse_paths_and_dates() -> None:
    links = {title: (url, date, path, bar) for title, url, date, path, bar
             in parse_netscape(_SAMPLE)}
    assert links["GitHub"] == ("https://github.com/", 1_700_000_000_000, [], True)
    assert links["Vue"][2] == ["Dev", "Frontend"]
    assert links["Vue"][1] == 1_600_000_000_000
    assert links["Python docs"][2] == ["Dev"]
    assert links["Loose"][2] == []
    assert links["Loose"][3] is False


def test_import_builds_folders(tree) -> None:
    result = import_netscape(tree, _SAMPLE)
    assert result["imported"] == 4
    assert result["skipped"] == 0
    assert result["folders"] == 2

    flat = {b.title: b for b in tree.flatten()}
    assert flat["GitHub"].parent_id == BOOKMARKS_BAR_ID
    assert flat["Vue"].path == ("Other bookmarks", "Dev", "Frontend")
    assert flat["Loose"].parent_id == OTHER_BOOKMARKS_ID


def test_reimport_skips_existing(tree) -> None:
    import_netscape(tree, _SAMPLE)
    again = import_netscape(tree, _SAMPLE)
    assert again == {"imported": 0, "skipped": 4, "folders": 0}
    assert len(tree.flatten()) == 4


def test_export_contains_structure(tree) -> None:
    import_netscape(tree, _SAMPLE)
    html_text = export_netscape(tree)
    assert html_text.startswith("<!DOCTYPE NETSCAPE-Bookmark-file-1>")
    assert "<H3>Frontend</H3>" in html_text
    assert 'HREF="https://vuejs.org/" ADD_DATE="1600000000"' in html_text

    titles = {t for t, *_ in parse_netscape(html_text)}
    assert titles == {"GitHub", "Vue", "Python docs", "Loose"}
