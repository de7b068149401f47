"""
smartmarks/reconcile.py — Keep folders and metadata in step with the taxonomy.

Category folders live directly under the organized container and are found by
title ("{emoji} {name}"), so any change to a definition's name or emoji must
retitle its folder, and any removed definition must have its folder emptied
into a fallback before the folder goes away. No bookmark is ever deleted here.

Public API
----------
  organized_root_id(tree, title) -> id              find or create the container
  ensure_category_folder(tree, root_id, defn) -> id
  update_taxonomy(tree, store, taxonomy, root_id, new_defs) -> dict
  rename_category(tree, store, taxonomy, root_id, slug, name, emoji=None) -> CategoryDefinition
"""

from __future__ import annotations

import logging
from typing import Any

from smartmarks.db import OTHER_BOOKMARKS_ID
from smartmarks.models import META_KEY, BookmarkMeta, dump_meta_map, load_meta_map
from smartmarks.store import KeyValueStore
from smartmarks.taxonomy import (
    UNCATEGORIZED_SLUG,
    CategoryDefinition,
    Taxonomy,
    TaxonomyError,
    unique_slug,
)
from smartmarks.tree import BookmarkTree

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Folder helpers
# ---------------------------------------------------------------------------

def organized_root_id(tree: BookmarkTree, title: str) -> str:
    existing = tree.find_folders_by_title(title)
    if existing:
        return existing[0]
    folder_id = tree.create(OTHER_BOOKMARKS_ID, title)
    logger.info("created organized container %r (%s)", title, folder_id)
    return folder_id


def ensure_category_folder(tree: BookmarkTree, root_id: str, defn: CategoryDefinition) -> str:
    return tree.get_or_create_folder(root_id, defn.folder_title)


def _retitle_folder(tree: BookmarkTree, root_id: str, old_title: str, new_title: str) -> bool:
    """Rename a category folder; merge into an existing folder of the new title."""
    if old_title == new_title:
        return False
    old_id = tree.find_folder(root_id, old_title)
    if old_id is None:
        return False
    target = tree.find_folder(root_id, new_title)
    if target is None:
        tree.update(old_id, title=new_title)
        return True
    for child in tree.get_children(old_id):
        tree.move(child.id, target)
    tree.remove(old_id)
    return True


# ---------------------------------------------------------------------------
# Bulk update
# ---------------------------------------------------------------------------

def update_taxonomy(
    tree: BookmarkTree,
    store: KeyValueStore,
    taxonomy: Taxonomy,
    root_id: str,
    new_defs: dict[str, CategoryDefinition],
) -> dict[str, Any]:
    """
    Replace the taxonomy with new_defs.

    Bookmarks in a removed category's folder move to a fallback folder
    (other → first remaining → uncategorized) with manual=True so no job
    reclassifies them back. Returns {"removed", "moved", "retitled", "fallback"}.
    """
    old_defs = taxonomy.load()
    new_defs = dict(new_defs)
    removed = [s for s in old_defs if s not in new_defs]
    fallback = Taxonomy.fallback_slug(new_defs)
    meta = load_meta_map(store.get_one(META_KEY, {}))

    retitled: list[str] = []
    for slug, defn in new_defs.items():
        old = old_defs.get(slug)
        if old and _retitle_folder(tree, root_id, old.folder_title, defn.folder_title):
            retitled.append(slug)

    def _ensure_fallback() -> None:
        if fallback not in new_defs:
            new_defs[fallback] = CategoryDefinition(
                UNCATEGORIZED_SLUG, "Uncategorized", "❓", None, len(new_defs) + 1
            )

    moved = 0
    for slug in removed:
        folder_id = tree.find_folder(root_id, old_defs[slug].folder_title)
        if folder_id is None:
            continue
        children = tree.get_children(folder_id)
        if children:
            _ensure_fallback()
        target = ensure_category_folder(tree, root_id, new_defs[fallback]) if children else None
        if target == folder_id:
            logger.warning("fallback folder for %s is the removed folder itself; keeping it", slug)
            continue
        for child in children:
            try:
                if not child.is_folder:
                    m = meta.setdefault(child.id, BookmarkMeta())
                    m.categories = [c for c in m.categories if c != slug and c in new_defs]
                    if m.primary == slug or not m.primary:
                        m.primary = m.categories[0] if m.categories else fallback
                    m.manual = True
                tree.move(child.id, target)
                moved += 1
            except Exception as e:
                logger.warning("taxonomy: could not move %s out of %s: %s", child.id, slug, e)
        if not tree.get_children(folder_id):
            tree.remove(folder_id)
        else:
            logger.warning("taxonomy: folder for %s not empty after move; left in place", slug)

    # Rows outside the removed folders (clone originals) may still name a removed slug
    reassigned = 0
    gone = set(removed)
    for m in meta.values():
        if m.primary not in gone and not gone.intersection(m.categories):
            continue
        m.categories = [c for c in m.categories if c not in gone]
        if m.primary in gone or not m.primary:
            m.primary = next((c for c in m.categories if c in new_defs), None)
            if m.primary is None:
                _ensure_fallback()
                m.primary = fallback
            m.manual = True
            reassigned += 1

    store.set({META_KEY: dump_meta_map(meta)})
    taxonomy.save(new_defs)
    for defn in new_defs.values():
        ensure_category_folder(tree, root_id, defn)

    logger.info("taxonomy updated: %d removed, %d moved, %d reassigned, %d retitled",
                len(removed), moved, reassigned, len(retitled))
    return {"removed": removed, "moved": moved, "reassigned": reassigned,
            "retitled": retitled, "fallback": fallback}


# ---------------------------------------------------------------------------
# Rename
# ---------------------------------------------------------------------------

def rename_category(
    tree: BookmarkTree,
    store: KeyValueStore,
    taxonomy: Taxonomy,
    root_id: str,
    slug: str,
    name: str,
    emoji: str | None = None,
) -> CategoryDefinition:
    """Rename a category; the slug is regenerated from the new name."""
    defs = taxonomy.load()
    if slug not in defs:
        raise KeyError(f"category {slug!r} not found")
    if not name or not name.strip():
        raise TaxonomyError("category name may not be empty")

    old = defs[slug]
    new_slug = unique_slug(name, (s for s in defs if s != slug))
    updated = CategoryDefinition(
        slug   = new_slug,
        name   = name.strip(),
        emoji  = old.emoji if emoji is None else emoji,
        parent = old.parent,
        order  = old.order,
    )
    if updated.parent == new_slug:
        updated.parent = None

    rebuilt: dict[str, CategoryDefinition] = {}
    for s, d in defs.items():
        if s == slug:
            rebuilt[new_slug] = updated
            continue
        if d.parent == slug:
            d.parent = new_slug
        rebuilt[s] = d

    if new_slug != slug:
        meta = load_meta_map(store.get_one(META_KEY, {}))
        for m in meta.values():
            if m.primary == slug:
                m.primary = new_slug
            if slug in m.categories:
                m.categories = [new_slug if c == slug else c for c in m.categories]
        store.set({META_KEY: dump_meta_map(meta)})

    _retitle_folder(tree, root_id, old.folder_title, updated.folder_title)
    taxonomy.save(rebuilt)
    logger.info("category renamed: %s -> %s (%s)", slug, new_slug, updated.folder_title)
    return updated
