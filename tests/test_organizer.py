"""
tests/test_organizer.py — Organization job engine and single-item operations.

Every Organizer here gets the offline FakeFetcher and an empty provider list,
so classification runs on rules and keywords only.

Run with: pytest tests/test_organizer.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from smartmarks.db import OTHER_BOOKMARKS_ID, get_events
from smartmarks.extract import PageContent
from smartmarks.models import META_KEY, OrganizationJobState
from smartmarks.organizer import Organizer
from smartmarks.taxonomy import TaxonomyError
from smartmarks.tree import TreeError

ROOT = "🧠 Smart Bookmarks"

_URLS = {
    "Repo":   "https://github.com/user/repo",
    "Design": "https://www.figma.com/file/abc",
    "Zzz":    "https://zzz.example/",
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def org(conn, cfg, fetcher) -> Organizer:
    return Organizer(conn, cfg, fetcher=fetcher, providers=[])


@pytest.fixture
def seeded(org) -> dict[str, str]:
    """Three bookmarks in an Inbox folder; returns title -> id."""
    inbox = org.tree.create(OTHER_BOOKMARKS_ID, "Inbox")
    return {title: org.tree.create(inbox, title, url) for title, url in _URLS.items()}


def _root_folders(org: Organizer) -> dict[str, str]:
    root = org.tree.find_folders_by_title(ROOT)[0]
    return {c.title: c.id for c in org.tree.get_children(root) if c.is_folder}


def _meta(org: Organizer) -> dict:
    return org.store.get_one(META_KEY, {})


def _event_types(org: Organizer) -> list[str]:
    return [r["event_type"] for r in get_events(org.conn)]


# ---------------------------------------------------------------------------
# Full job
# ---------------------------------------------------------------------------

def test_clone_job_end_to_end(org, seeded) -> None:
    progress: list[dict] = []
    org.channel.add_listener(progress.append)

    result = asyncio.run(org.run_job("clone"))

    assert result["start"] == {"status": "accepted", "total": 3, "strategy": "clone"}
    state = result["state"]
    assert state["status"] == "done"
    assert state["done"] == 3
    assert state["completed_at"] is not None

    assert set(_root_folders(org)) == {
        "📁 Developer Programming", "📁 Tools Design Tools", "📁 Other",
    }
    # originals stay, clones added
    assert len(org.tree.flatten()) == 6
    assert org.tree.get(seeded["Repo"]).title == "Repo"

    meta = _meta(org)
    assert meta[seeded["Repo"]]["primary"] == "developer/programming"
    assert meta[seeded["Design"]]["primary"] == "tools/design-tools"
    assert meta[seeded["Zzz"]]["primary"] == "other"
    assert all(m["organized"] for m in meta.values())
    clones = [m for m in meta.values() if m.get("cloned_from")]
    assert sorted(m["cloned_from"] for m in clones) == sorted(seeded.values())

    stats = org.get_stats()
    assert stats["categories"] == {
        "developer/programming": 1, "tools/design-tools": 1, "other": 1,
    }
    assert stats["categories_created"] == 3
    assert stats["total_bookmarks"] == 3
    assert stats["recent"] == 3

    assert progress[0] == {"status": "running", "done": 0, "total": 3}
    assert progress[-1] == {"status": "done", "done": 3, "total": 3}
    dones = [p["done"] for p in progress]
    assert dones == sorted(dones)
    assert any(p.get("message") == "Removing duplicates..." for p in progress)
    assert org.get_progress() == {"status": "done", "done": 3, "total": 3}

    events = _event_types(org)
    assert "job_started" in events
    assert "duplicates_removed" in events
    assert events[0] == "job_done"


def test_second_clone_run_leaves_no_duplicates(org, seeded) -> None:
    asyncio.run(org.run_job("clone"))
    asyncio.run(org.run_job("clone"))
    assert len(org.tree.flatten()) == 6


def test_move_job(org, seeded) -> None:
    asyncio.run(org.run_job("move"))
    folders = _root_folders(org)
    assert org.tree.get(seeded["Repo"]).parent_id == folders["📁 Developer Programming"]
    assert len(org.tree.flatten()) == 3
    assert asyncio.run(org.start_job("move")) == {"status": "nothing_to_do", "total": 0}


def test_default_strategy_from_settings(org, seeded) -> None:
    org.save_settings({"organize_strategy": "move"})
    result = asyncio.run(org.run_job())
    assert result["start"]["strategy"] == "move"


def test_nothing_to_do(org) -> None:
    assert asyncio.run(org.start_job()) == {"status": "nothing_to_do", "total": 0}


def test_bad_strategy_rejected(org, seeded) -> None:
    with pytest.raises(ValueError):
        asyncio.run(org.start_job("copy"))


# ---------------------------------------------------------------------------
# Job control
# ---------------------------------------------------------------------------

def test_only_one_running_job(org, seeded) -> None:
    async def _run():
        first = await org.start_job()
        second = await org.start_job()
        await org.wait_for_job()
        return first, second

    first, second = asyncio.run(_run())
    assert first["status"] == "accepted"
    assert second == {"status": "already_running", "done": 0, "total": 3}
    assert org.get_job_state()["status"] == "done"


def test_failed_job_needs_reset(org, seeded) -> None:
    org.state.save_state(OrganizationJobState(status="failed", error="boom"))
    assert asyncio.run(org.start_job()) == {"status": "needs_reset", "error": "boom"}

    reset = org.reset_job_state()
    assert reset == {"status": "idle", "previous": "failed"}
    assert asyncio.run(org.run_job())["state"]["status"] == "done"


def test_done_job_can_restart(org, seeded) -> None:
    asyncio.run(org.run_job("move"))
    org.tree.create(OTHER_BOOKMARKS_ID, "New", "https://gitlab.com/x")
    result = asyncio.run(org.run_job("move"))
    assert result["start"]["status"] == "accepted"
    assert result["state"]["total"] == 1


def test_reset_cancels_running_job(org, seeded) -> None:
    def cancel_after_first(payload: dict) -> None:
        if payload.get("status") == "running" and payload.get("done") == 1:
            org.reset_job_state()

    org.channel.add_listener(cancel_after_first)
    asyncio.run(org.run_job("clone"))

    assert org.get_job_state()["status"] == "idle"
    assert org.get_progress() == {"status": "idle", "done": 0, "total": 0}
    # one item processed before the cancel took effect
    assert len(org.tree.flatten()) == 4
    assert "job_cancelled" in _event_types(org)


class _HeldFetcher:
    """Holds the first fetch until released; every fetch answers offline."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch(self, url: str) -> PageContent:
        self.calls.append(url)
        if len(self.calls) == 1:
            self.entered.set()
            await self.release.wait()
        return PageContent(url=url, error="offline")

    async def aclose(self) -> None:
        pass


def test_restart_waits_for_cancelled_run(conn, cfg) -> None:
    async def _run():
        fetcher = _HeldFetcher()
        org = Organizer(conn, cfg, fetcher=fetcher, providers=[])
        inbox = org.tree.create(OTHER_BOOKMARKS_ID, "Inbox")
        ids = [org.tree.create(inbox, t, u) for t, u in _URLS.items()]

        first = await org.start_job("clone")
        await fetcher.entered.wait()
        org.reset_job_state()
        blocked = await org.start_job("clone")
        fetcher.release.set()
        await org.wait_for_job()
        second = await org.run_job("clone")
        return org, ids, first, blocked, second

    org, ids, first, blocked, second = asyncio.run(_run())
    assert first["status"] == "accepted"
    assert blocked["status"] == "already_running"
    assert second["start"]["status"] == "accepted"
    assert second["state"]["status"] == "done"

    # the cancelled run placed nothing for its in-flight item
    assert len(org.tree.flatten()) == 6
    meta = _meta(org)
    assert len(meta) == 6
    clones = [m for m in meta.values() if m.get("cloned_from")]
    assert sorted(m["cloned_from"] for m in clones) == sorted(ids)
    assert all(meta[i]["organized"] for i in ids)
    assert "job_cancelled" in _event_types(org)


def test_run_stops_when_another_run_owns_state(org, seeded) -> None:
    def take_over(payload: dict) -> None:
        if payload.get("status") == "running" and payload.get("done") == 1:
            org.state.save_state(OrganizationJobState(status="running", total=3, started_at=1))

    org.channel.add_listener(take_over)
    asyncio.run(org.run_job("clone"))

    state = org.get_job_state()
    assert state["status"] == "running"
    assert state["started_at"] == 1
    assert state["done"] == 0
    assert len(org.tree.flatten()) == 4


def test_setup_failure_marks_job_failed(conn, cfg, fetcher, seeded,
                                        monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_cascade(*args, **kwargs):
        raise RuntimeError("no provider client")

    monkeypatch.setattr("smartmarks.organizer.build_cascade", broken_cascade)
    org = Organizer(conn, cfg, fetcher=fetcher)
    result = asyncio.run(org.run_job("move"))

    assert result["start"]["status"] == "accepted"
    assert result["state"]["status"] == "failed"
    assert result["state"]["error"] == "no provider client"
    assert "job_failed" in _event_types(org)
    assert asyncio.run(org.start_job("move"))["status"] == "needs_reset"


def test_unloadable_settings_mark_job_failed(org, seeded) -> None:
    # stored directly, bypassing save_settings validation
    org.store.set({"rate_limit_delay": "abc"})
    result = asyncio.run(org.start_job("move"))

    assert result["status"] == "failed"
    assert "abc" in result["error"]
    state = org.get_job_state()
    assert state["status"] == "failed"
    assert state["error"] == result["error"]
    assert org.reset_job_state()["previous"] == "failed"


def test_item_failure_does_not_stop_job(org, seeded, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_move(node_id: str, parent_id: str) -> None:
        raise TreeError("locked")

    monkeypatch.setattr(org.tree, "move", broken_move)
    state = asyncio.run(org.run_job("move"))["state"]

    assert state["status"] == "done"
    meta = _meta(org)
    for bid in seeded.values():
        assert meta[bid]["organize_failed"] is True
        assert meta[bid]["last_error"] == "locked"
        assert meta[bid]["organized"] is False
    assert "item_failed" in _event_types(org)


def test_job_failure_is_recorded(org, seeded, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_save(meta) -> None:
        raise RuntimeError("disk full")

    monkeypatch.setattr(org, "_save_meta", broken_save)
    progress: list[dict] = []
    org.channel.add_listener(progress.append)

    state = asyncio.run(org.run_job())["state"]
    assert state["status"] == "failed"
    assert state["error"] == "disk full"
    assert progress[-1]["status"] == "failed"
    assert asyncio.run(org.start_job())["status"] == "needs_reset"


# ---------------------------------------------------------------------------
# Manual precedence and reclassification
# ---------------------------------------------------------------------------

def test_manual_metadata_is_never_rewritten(org, seeded, fetcher) -> None:
    repo = seeded["Repo"]
    org.store.set({META_KEY: {repo: {"primary": "reading", "description": "mine",
                                     "manual": True, "categories": ["reading"]}}})
    org.mark_stale([repo])

    asyncio.run(org.run_job("move"))

    m = _meta(org)[repo]
    assert m["primary"] == "reading"
    assert m["description"] == "mine"
    assert m["manual"] is True
    assert m["stale"] is False
    assert org.tree.get(repo).parent_id == _root_folders(org)["📁 Reading"]
    assert _URLS["Repo"] not in fetcher.calls


def test_existing_primary_reused_unless_stale(org, seeded) -> None:
    repo = seeded["Repo"]
    org.store.set({META_KEY: {repo: {"primary": "docs", "description": "kept"}}})
    asyncio.run(org.run_job("clone"))
    assert _meta(org)[repo]["primary"] == "docs"

    assert org.mark_stale() >= 3
    asyncio.run(org.run_job("clone"))
    assert _meta(org)[repo]["primary"] == "developer/programming"


# ---------------------------------------------------------------------------
# Single-item operations
# ---------------------------------------------------------------------------

def test_classify_and_place(org) -> None:
    result = asyncio.run(org.classify_and_place("https://github.com/x", "X"))
    assert result["category"] == "developer/programming"

    node = org.tree.get(result["id"])
    assert node.parent_id == _root_folders(org)["📁 Developer Programming"]
    m = _meta(org)[result["id"]]
    assert m["manual"] is False
    assert m["organized"] is True

    stats = org.get_stats()
    assert stats["total_bookmarks"] == 1
    assert stats["categories"] == {"developer/programming": 1}


def test_classify_and_place_with_forced_category(org) -> None:
    result = asyncio.run(org.classify_and_place("https://github.com/x", "X",
                                                {"category": "Reading"}))
    assert result["category"] == "reading"
    assert _meta(org)[result["id"]]["manual"] is True
    assert "📁 Reading" in _root_folders(org)


def test_classify_and_place_with_new_category(org) -> None:
    result = asyncio.run(org.classify_and_place(
        "https://soup.example/", "Soup", {"new_category": {"name": "Recipes", "emoji": "🍲"}},
    ))
    assert result["category"] == "recipes"
    assert "🍲 Recipes" in _root_folders(org)
    assert org.taxonomy.get("recipes").emoji == "🍲"


def test_classify_and_place_requires_url(org) -> None:
    with pytest.raises(ValueError):
        asyncio.run(org.classify_and_place("  "))


def test_update_item_category(org, seeded) -> None:
    repo = seeded["Repo"]
    result = org.update_item_category(repo, "docs", tags="python, reference")
    assert result == {"id": repo, "category": "docs", "tags": ["python", "reference"],
                      "categories": ["docs"]}
    m = _meta(org)[repo]
    assert m["manual"] is True
    assert org.tree.get(repo).parent_id == _root_folders(org)["📁 Docs"]


def test_update_item_category_errors(org, seeded) -> None:
    with pytest.raises(KeyError):
        org.update_item_category("999", "docs")
    with pytest.raises(TreeError):
        org.update_item_category(OTHER_BOOKMARKS_ID, "docs")
    with pytest.raises(ValueError):
        org.update_item_category(seeded["Repo"], "  ")


# ---------------------------------------------------------------------------
# View, categories, settings
# ---------------------------------------------------------------------------

def test_view_before_and_after_job(org, seeded) -> None:
    view = org.get_organized_view()
    assert list(view) == ["❓ Uncategorized"]
    bucket = view["❓ Uncategorized"]
    assert bucket["count"] == 3
    repo = next(i for i in bucket["items"] if i["title"] == "Repo")
    assert repo["description"] == "Not yet organized"
    assert repo["tags"] == ["github"]

    asyncio.run(org.run_job("move"))
    view = org.get_organized_view()
    assert view["📁 Developer Programming"]["count"] == 1
    assert "❓ Uncategorized" not in view


def test_manual_tags_shown_in_view(org, seeded) -> None:
    org.update_item_category(seeded["Zzz"], "docs", tags=["a", "b", "c", "d"])
    items = org.get_organized_view()["📁 Docs"]["items"]
    assert items[0]["tags"] == ["a", "b", "c"]


def test_categories_and_rename(org, seeded) -> None:
    asyncio.run(org.run_job("move"))
    cats = {c["slug"]: c for c in org.get_categories()}
    assert cats["other"]["count"] == 1
    assert cats["other"]["folder_title"] == "📁 Other"

    renamed = org.rename_category("other", "Misc", "🗃")
    assert renamed["slug"] == "misc"
    assert renamed["previous_slug"] == "other"
    assert _meta(org)[seeded["Zzz"]]["primary"] == "misc"
    assert "🗃 Misc" in _root_folders(org)


def test_update_taxonomy_via_organizer(org, seeded) -> None:
    asyncio.run(org.run_job("move"))
    before = len(org.tree.flatten())
    result = org.update_taxonomy({"other": {"name": "Other", "emoji": "📁"}})
    assert sorted(result["removed"]) == ["developer/programming", "tools/design-tools"]
    assert len(org.tree.flatten()) == before
    assert "taxonomy_updated" in _event_types(org)


def test_deleted_category_stays_deleted_after_clone_job(org, seeded) -> None:
    asyncio.run(org.run_job("clone"))
    result = org.update_taxonomy({
        "tools/design-tools": {"name": "Tools Design Tools"},
        "other": {"name": "Other", "emoji": "📁"},
    })
    assert result["removed"] == ["developer/programming"]
    assert result["reassigned"] == 1

    meta = _meta(org)
    assert meta[seeded["Repo"]]["primary"] == "other"
    assert not [i for i, m in meta.items()
                if m["primary"] == "developer/programming"
                or "developer/programming" in m["categories"]]

    assert asyncio.run(org.run_job("clone"))["state"]["status"] == "done"
    slugs = [c["slug"] for c in org.get_categories()]
    assert slugs == ["tools/design-tools", "other"]
    assert "📁 Developer Programming" not in _root_folders(org)
    assert len(org.tree.flatten()) == 6


def test_settings_roundtrip(org) -> None:
    assert org.get_settings()["classification_mode"] == "local"
    saved = org.save_settings({"classification_mode": "api_openai", "openai_api_key": "sk-x"})
    assert saved["openai_api_key"] is True

    exported = org.export_settings()
    assert "openai_api_key" not in exported
    assert org.import_settings({"userCategories": {"docs": {"name": "Docs"}}}) == ["userCategories"]
    with pytest.raises(TaxonomyError):
        org.import_settings({"userCategories": "nope"})


def test_import_and_export_bookmarks(org) -> None:
    html_text = ('<DL><p><DT><H3>Dev</H3><DL><p>'
                 '<DT><A HREF="https://github.com/" ADD_DATE="1">GH</A></DL><p></DL><p>')
    assert org.import_bookmarks(html_text)["imported"] == 1
    assert 'HREF="https://github.com/"' in org.export_bookmarks()
    assert org.recent_events(1)[0]["event_type"] == "netscape_import"
