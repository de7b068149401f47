"""
smartmarks/organizer.py — Organization job engine and the operations around it.

One Organizer per database connection. It owns the store/tree/taxonomy views,
the persisted job state, the progress channel and one global rate limiter for
remote providers.

Job lifecycle
-------------
  idle ──start_job──▶ running ──▶ done
                         │  └────▶ failed ──reset_job_state──▶ idle
                         └─reset_job_state (cancel)──▶ idle

  start_job()     rejected with "already_running" / "needs_reset" (also while a
                  cancelled run is still finishing its item); "nothing_to_do"
                  when no eligible bookmark exists; "failed" when settings
                  cannot be loaded; otherwise "accepted" and the run is
                  scheduled as an asyncio task.
  Items are processed strictly one after another. A run owns the persisted
  state while status is "running" and started_at is its own; the check runs
  before each item, after classification and after each item, and a run that
  lost ownership writes nothing more. Only the rows an item touched are merged
  into the metadata map. Progress is persisted after every item.
  Clone strategy runs duplicate removal before the job is marked done.

INVARIANT: metadata with manual=True never has primary/description rewritten
by a job step.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any

from config import cfg as _module_cfg, Config
from smartmarks.classifier import Classifier
from smartmarks.db import get_events, log_event
from smartmarks.dedupe import remove_duplicates as _remove_duplicates
from smartmarks.extract import PageFetcher
from smartmarks.models import (
    META_KEY,
    BookmarkItem,
    BookmarkMeta,
    OrganizationJobState,
    OrganizationStats,
    dump_meta_map,
    load_meta_map,
    now_ms,
)
from smartmarks.netscape import export_netscape, import_netscape
from smartmarks.providers import RateLimiter, RemoteProvider, build_cascade
from smartmarks.reconcile import (
    ensure_category_folder,
    organized_root_id,
    rename_category as _rename_category,
    update_taxonomy as _update_taxonomy,
)
from smartmarks.rules import RuleSet
from smartmarks.settings import (
    STRATEGIES,
    Settings,
    export_settings,
    import_settings,
    load_settings,
    save_settings,
)
from smartmarks.state import JobStateStore, ProgressChannel
from smartmarks.store import KeyValueStore
from smartmarks.taxonomy import (
    UNCATEGORIZED_SLUG,
    Taxonomy,
    TaxonomyError,
    folder_title,
    friendly_name,
    parse_definitions,
)
from smartmarks.tree import BookmarkTree, TreeError

logger = logging.getLogger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000
_VIEW_TAG_LIMIT = 3

# Display-only tags for bookmarks without stored tags
_TAG_HINTS = (
    ("github",        ("url",)),
    ("stackoverflow", ("url",)),
    ("docs",          ("url", "title")),
    ("api",           ("url", "title")),
    ("tutorial",      ("title",)),
    ("guide",         ("title",)),
)


def _hint_tags(item: BookmarkItem) -> list[str]:
    fields = {"url": (item.url or "").lower(), "title": (item.title or "").lower()}
    return [tag for tag, where in _TAG_HINTS if any(tag in fields[w] for w in where)]


def _parse_tags(tags: Any) -> list[str] | None:
    if tags is None:
        return None
    if isinstance(tags, str):
        return [t.strip() for t in tags.split(",") if t.strip()]
    return [str(t).strip() for t in tags if str(t).strip()]


class Organizer:
    def __init__(
        self,
        conn: sqlite3.Connection,
        cfg_obj: Config | None = None,
        fetcher: PageFetcher | None = None,
        providers: list[RemoteProvider] | None = None,
        channel: ProgressChannel | None = None,
    ) -> None:
        self._cfg = cfg_obj or _module_cfg
        self.conn = conn
        self.store = KeyValueStore(conn)
        self.tree = BookmarkTree(conn)
        self.taxonomy = Taxonomy(self.store, self._cfg.default_emoji)
        self.state = JobStateStore(self.store, channel)
        self.rules = RuleSet.from_config(self._cfg)
        self.limiter = RateLimiter(self._cfg.rate_limit_delay_ms)
        self._fetcher = fetcher
        self._providers = providers
        self._task: asyncio.Task | None = None

    @property
    def channel(self) -> ProgressChannel:
        return self.state.channel

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def settings(self) -> Settings:
        return load_settings(self.store, self._cfg)

    def root_id(self) -> str:
        return organized_root_id(self.tree, self._cfg.root_folder)

    def _existing_root_id(self) -> str | None:
        found = self.tree.find_folders_by_title(self._cfg.root_folder)
        return found[0] if found else None

    def _make_classifier(self, settings: Settings) -> Classifier:
        self.limiter.delay = max(0, settings.rate_limit_delay) / 1000.0
        fetcher = self._fetcher or PageFetcher.from_config(self._cfg)
        if self._providers is not None:
            providers = self._providers if settings.classification_mode != "local" else []
        else:
            providers = build_cascade(settings, self._cfg, self.limiter)
        return Classifier(fetcher, self.rules, providers, self._cfg.summary_max_chars)

    async def _release(self, classifier: Classifier) -> None:
        """Close only the clients built for this run."""
        if self._fetcher is None:
            await classifier.fetcher.aclose()
        if self._providers is None:
            for p in classifier.providers:
                await p.aclose()

    def _load_meta(self) -> dict[str, BookmarkMeta]:
        return load_meta_map(self.store.get_one(META_KEY, {}))

    def _save_meta(self, meta: dict[str, BookmarkMeta]) -> None:
        self.store.set({META_KEY: dump_meta_map(meta)})

    def _event(self, event_type: str, detail: str | None = None,
               bookmark_id: str | None = None) -> None:
        try:
            log_event(self.conn, event_type, detail, bookmark_id)
        except Exception as e:
            logger.warning("could not write %s event: %s", event_type, e)

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    def _eligible(self, items: list[BookmarkItem], root_id: str) -> list[BookmarkItem]:
        title = self._cfg.root_folder
        return [b for b in items if b.parent_id != root_id and title not in b.path]

    def _fail(self, state: OrganizationJobState, error: Exception) -> None:
        state.status = "failed"
        state.error = str(error) or type(error).__name__
        self.state.save_state(state)
        self.state.broadcast(state.progress())
        self._event("job_failed", state.error)

    async def start_job(self, strategy: str | None = None) -> dict[str, Any]:
        state = self.state.load_state()
        if state.status == "running":
            return {"status": "already_running", "done": state.done, "total": state.total}
        if state.status == "failed":
            return {"status": "needs_reset", "error": state.error}
        if self._task is not None and not self._task.done():
            # cancelled run still finishing its current item
            return {"status": "already_running", "done": state.done, "total": state.total}

        try:
            settings = self.settings()
        except Exception as e:
            logger.exception("organize: could not load settings: %s", e)
            self._fail(OrganizationJobState(started_at=now_ms()), e)
            return {"status": "failed", "error": self.state.load_state().error}
        strategy = strategy or settings.organize_strategy
        if strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES!r}")

        all_items = self.tree.flatten()
        root_id = self.root_id()
        items = self._eligible(all_items, root_id)
        if not items:
            logger.info("organize: nothing to do (%d bookmarks, all organized)", len(all_items))
            return {"status": "nothing_to_do", "total": 0}

        state = OrganizationJobState(
            status     = "running",
            total      = len(items),
            done       = 0,
            started_at = now_ms(),
            provider   = settings.classification_mode,
            strategy   = strategy,
        )
        self.state.save_state(state)
        self.state.broadcast({"status": "running", "done": 0, "total": len(items)})
        self._event("job_started", f"{len(items)} items, strategy={strategy}, "
                                   f"mode={settings.classification_mode}")
        logger.info("organize: started %d items (strategy=%s, mode=%s)",
                    len(items), strategy, settings.classification_mode)

        self._task = asyncio.create_task(
            self._run(items, len(all_items), root_id, strategy, settings, state)
        )
        return {"status": "accepted", "total": len(items), "strategy": strategy}

    async def wait_for_job(self) -> dict[str, Any]:
        if self._task is not None:
            await self._task
        return self.get_job_state()

    async def run_job(self, strategy: str | None = None) -> dict[str, Any]:
        """start_job + wait_for_job. Returns {"start": ..., "state": ...}."""
        started = await self.start_job(strategy)
        if started["status"] != "accepted":
            return {"start": started, "state": self.get_job_state()}
        return {"start": started, "state": await self.wait_for_job()}

    def get_job_state(self) -> dict[str, Any]:
        return self.state.load_state().to_dict()

    def get_progress(self) -> dict[str, Any]:
        return self.state.progress_snapshot()

    def get_stats(self) -> dict[str, Any]:
        return self.state.load_stats().to_dict()

    def reset_job_state(self) -> dict[str, Any]:
        """Back to idle. On a running job this is the cancellation request."""
        previous = self.state.load_state().status
        self.state.save_state(OrganizationJobState())
        self.state.clear_progress()
        self.channel.publish({"status": "idle", "done": 0, "total": 0})
        self._event("job_reset", f"from {previous}")
        logger.info("organize: state reset (was %s)", previous)
        return {"status": "idle", "previous": previous}

    def _cancelled(self, state: OrganizationJobState) -> bool:
        """True once the persisted state no longer belongs to this run."""
        current = self.state.load_state()
        return current.status != "running" or current.started_at != state.started_at

    # ------------------------------------------------------------------
    # Job body
    # ------------------------------------------------------------------

    async def _run(
        self,
        items: list[BookmarkItem],
        total_bookmarks: int,
        root_id: str,
        strategy: str,
        settings: Settings,
        state: OrganizationJobState,
    ) -> None:
        classifier: Classifier | None = None
        stats = OrganizationStats(total_bookmarks=total_bookmarks)
        week_ago = now_ms() - self._cfg.recent_days * _DAY_MS
        try:
            classifier = self._make_classifier(settings)
            for i, item in enumerate(items):
                if self._cancelled(state):
                    logger.info("organize: cancelled after %d/%d", i, len(items))
                    self._event("job_cancelled", f"after {i}/{len(items)}")
                    return

                changes = await self._step(item, classifier, stats, strategy, root_id,
                                           week_ago, state)
                if changes is None:
                    logger.info("organize: cancelled during item %d/%d", i + 1, len(items))
                    self._event("job_cancelled", f"during {i + 1}/{len(items)}")
                    return
                self._merge_meta(changes)

                if self._cancelled(state):
                    logger.info("organize: cancelled after %d/%d", i + 1, len(items))
                    self._event("job_cancelled", f"after {i + 1}/{len(items)}")
                    return

                state.done = i + 1
                state.last_title = item.title
                self.state.save_state(state)
                self.state.broadcast({"status": "running", "done": state.done,
                                      "total": state.total})

            if strategy == "clone":
                self.state.broadcast({"status": "running", "done": state.total,
                                      "total": state.total, "message": "Removing duplicates..."})
                result = _remove_duplicates(self.tree, self.store, self._cfg.root_folder, root_id)
                self._event("duplicates_removed", str(result.to_dict()))
                if self._cancelled(state):
                    return

            stats.categories_created = len(stats.categories)
            self.state.save_stats(stats)
            state.status = "done"
            state.completed_at = now_ms()
            state.message = None
            self.state.save_state(state)
            self.state.broadcast({"status": "done", "done": state.total, "total": state.total})
            self._event("job_done", f"{state.total} items, "
                                    f"{stats.categories_created} categories")
            logger.info("organize: done, %d items into %d categories",
                        state.total, stats.categories_created)

        except Exception as e:
            logger.exception("organize: job failed: %s", e)
            if not self._cancelled(state):
                self._fail(state, e)
        finally:
            if classifier is not None:
                await self._release(classifier)

    def _merge_meta(self, changes: dict[str, BookmarkMeta]) -> None:
        """Write back only the given rows over a fresh read of the metadata map."""
        meta = self._load_meta()
        meta.update(changes)
        self._save_meta(meta)

    async def _step(
        self,
        item: BookmarkItem,
        classifier: Classifier,
        stats: OrganizationStats,
        strategy: str,
        root_id: str,
        week_ago: int,
        state: OrganizationJobState,
    ) -> dict[str, BookmarkMeta] | None:
        """
        Classify and place one item. Returns the metadata rows to persist, or
        None when the run was cancelled while the item was being classified
        (nothing is placed in that case).
        """
        m = self._load_meta().get(item.id) or BookmarkMeta()
        changes: dict[str, BookmarkMeta] = {}
        try:
            if m.primary and not m.stale:
                slug, description = m.primary, m.description
            else:
                result = await classifier.classify(
                    item.url, item.title, m, candidates=list(self.taxonomy.load())
                )
                slug, description = result.category, result.description
                if self._cancelled(state):
                    return None
            slug = (slug or "").strip().lower() or "other"

            defn = self.taxonomy.ensure(slug)
            folder_id = ensure_category_folder(self.tree, root_id, defn)

            if strategy == "move":
                self.tree.move(item.id, folder_id)
            else:
                clone_id = self.tree.create(folder_id, item.title, item.url)
                changes[clone_id] = BookmarkMeta(
                    primary      = slug,
                    categories   = [slug],
                    description  = description or "",
                    manual       = False,
                    organized    = True,
                    organized_at = now_ms(),
                    cloned_from  = item.id,
                )

            if not m.manual:
                m.primary = slug
                m.description = description or ""
                m.categories = [slug]
            m.organized = True
            m.organized_at = now_ms()
            m.stale = False
            m.organize_failed = False
            m.last_error = None

            stats.count(slug)
            if item.date_added and item.date_added > week_ago:
                stats.recent += 1

        except Exception as e:
            logger.warning("organize: item %s (%s) failed: %s", item.id, item.url, e)
            m.organize_failed = True
            m.last_error = str(e) or type(e).__name__
            self._event("item_failed", m.last_error, item.id)
        changes[item.id] = m
        return changes

    def mark_stale(self, ids: list[str] | None = None) -> int:
        """Flag metadata for reclassification on the next job. None = every entry."""
        meta = self._load_meta()
        targets = list(meta) if ids is None else [i for i in ids if i in meta]
        for i in targets:
            meta[i].stale = True
        self._save_meta(meta)
        return len(targets)

    # ------------------------------------------------------------------
    # Single-item operations
    # ------------------------------------------------------------------

    async def classify_and_place(
        self,
        url: str,
        title: str = "",
        override: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Classify one url, file a new bookmark under its category folder.

        override: {"category": slug} to force an existing/new slug, or
        {"new_category": {name, emoji?, parent?, slug?}} to create one first.
        """
        if not url or not url.strip():
            raise ValueError("url is required")
        override = override or {}
        forced = override.get("category")
        new_cat = override.get("new_category") or override.get("newCategory")

        settings = self.settings()
        classifier = self._make_classifier(settings)
        try:
            if forced:
                defn = self.taxonomy.ensure(str(forced).strip().lower())
                description = await classifier.describe(url, title)
            elif new_cat:
                defn = self.taxonomy.create(
                    name   = new_cat.get("name") or new_cat.get("slug") or new_cat.get("id") or "",
                    emoji  = new_cat.get("emoji"),
                    parent = new_cat.get("parent"),
                    slug   = new_cat.get("slug") or new_cat.get("id"),
                )
                description = await classifier.describe(url, title)
            else:
                result = await classifier.classify(url, title,
                                                   candidates=list(self.taxonomy.load()))
                defn = self.taxonomy.ensure((result.category or "other").strip().lower())
                description = result.description
        finally:
            await self._release(classifier)

        folder_id = ensure_category_folder(self.tree, self.root_id(), defn)
        new_id = self.tree.create(folder_id, title or url, url)

        meta = self._load_meta()
        meta[new_id] = BookmarkMeta(
            primary      = defn.slug,
            categories   = [defn.slug],
            description  = description or "",
            manual       = bool(forced or new_cat),
            organized    = True,
            organized_at = now_ms(),
        )
        self._save_meta(meta)

        stats = self.state.load_stats()
        stats.count(defn.slug)
        stats.total_bookmarks += 1
        stats.recent += 1
        self.state.save_stats(stats)
        self._event("bookmark_added", f"{url} -> {defn.slug}", new_id)
        return {"id": new_id, "category": defn.slug, "description": description or ""}

    def update_item_category(
        self,
        bookmark_id: str,
        category: str,
        tags: Any = None,
        categories: list[str] | None = None,
    ) -> dict[str, Any]:
        """Manual override: set primary, mark manual, move into the category folder."""
        node = self.tree.get(bookmark_id)
        if node.is_folder:
            raise TreeError(f"{bookmark_id!r} is a folder, not a bookmark")
        slug = (category or "").strip()
        if not slug:
            raise ValueError("category is required")

        defn = self.taxonomy.ensure(slug)
        meta = self._load_meta()
        m = meta.setdefault(bookmark_id, BookmarkMeta())
        m.primary = slug
        m.manual = True
        m.stale = False
        m.categories = list(categories) if categories else [slug]
        parsed = _parse_tags(tags)
        if parsed is not None:
            m.tags = parsed
        self._save_meta(meta)

        try:
            self.tree.move(bookmark_id, ensure_category_folder(self.tree, self.root_id(), defn))
        except TreeError as e:
            logger.warning("update_item_category: move of %s failed: %s", bookmark_id, e)
        self._event("manual_override", slug, bookmark_id)
        return {"id": bookmark_id, "category": slug, "tags": m.tags, "categories": m.categories}

    # ------------------------------------------------------------------
    # Views and maintenance
    # ------------------------------------------------------------------

    def get_organized_view(self) -> dict[str, dict[str, Any]]:
        """display category -> {count, items}. Read-only."""
        defs = self.taxonomy.load()
        meta = self._load_meta()
        root_id = self._existing_root_id()

        title_to_slug = {d.folder_title: s for s, d in defs.items()}
        folder_to_slug: dict[str, str] = {}
        if root_id is not None:
            for child in self.tree.get_children(root_id):
                if child.is_folder and child.title in title_to_slug:
                    folder_to_slug[child.id] = title_to_slug[child.title]

        view: dict[str, dict[str, Any]] = {}
        for b in self.tree.flatten():
            m = meta.get(b.id)
            if b.parent_id in folder_to_slug:
                slug = folder_to_slug[b.parent_id]
                description = m.description if m else ""
            elif m and m.primary:
                slug, description = m.primary, m.description
            else:
                slug, description = UNCATEGORIZED_SLUG, "Not yet organized"

            if slug in defs:
                display = defs[slug].folder_title
            elif slug == UNCATEGORIZED_SLUG:
                display = "❓ Uncategorized"
            else:
                display = f"{self._cfg.default_emoji} {friendly_name(slug)}"

            tags = (m.tags if m and m.tags else _hint_tags(b))[:_VIEW_TAG_LIMIT]
            bucket = view.setdefault(display, {"count": 0, "items": []})
            bucket["count"] += 1
            bucket["items"].append({
                "id": b.id, "title": b.title, "url": b.url,
                "description": description, "tags": tags, "primary": slug,
            })
        return view

    def remove_duplicates(self) -> dict[str, Any]:
        result = _remove_duplicates(
            self.tree, self.store, self._cfg.root_folder, self._existing_root_id()
        )
        self._event("duplicates_removed", str(result.to_dict()))
        return result.to_dict()

    # ------------------------------------------------------------------
    # Taxonomy
    # ------------------------------------------------------------------

    def get_categories(self) -> list[dict[str, Any]]:
        counts = self.state.load_stats().categories
        return [
            {**d.to_dict(), "folder_title": folder_title(d), "count": counts.get(s, 0)}
            for s, d in self.taxonomy.load().items()
        ]

    def update_taxonomy(self, definitions: Any) -> dict[str, Any]:
        new_defs = parse_definitions(definitions)
        result = _update_taxonomy(self.tree, self.store, self.taxonomy, self.root_id(), new_defs)
        self._event("taxonomy_updated", f"removed={result['removed']}")
        return result

    def rename_category(self, slug: str, name: str, emoji: str | None = None) -> dict[str, Any]:
        defn = _rename_category(self.tree, self.store, self.taxonomy, self.root_id(),
                                slug, name, emoji)
        self._event("category_renamed", f"{slug} -> {defn.slug}")
        return {**defn.to_dict(), "folder_title": defn.folder_title, "previous_slug": slug}

    # ------------------------------------------------------------------
    # Settings and bookmark files
    # ------------------------------------------------------------------

    def get_settings(self) -> dict[str, Any]:
        return self.settings().public()

    def save_settings(self, updates: dict[str, Any]) -> dict[str, Any]:
        save_settings(self.store, updates)
        return self.get_settings()

    def export_settings(self) -> dict[str, Any]:
        return export_settings(self.store)

    def import_settings(self, data: dict[str, Any]) -> list[str]:
        if not isinstance(data, dict):
            raise TaxonomyError("settings import must be a JSON object")
        if "userCategories" in data:
            parse_definitions(data["userCategories"])
        return import_settings(self.store, data)

    def import_bookmarks(self, html_text: str) -> dict[str, int]:
        result = import_netscape(self.tree, html_text)
        self._event("netscape_import", str(result))
        return result

    def export_bookmarks(self) -> str:
        return export_netscape(self.tree)

    def recent_events(self, limit: int = 50) -> list[dict[str, Any]]:
        return [dict(r) for r in get_events(self.conn, limit=limit)]
