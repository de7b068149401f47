"""
smartmarks/taxonomy.py — User category taxonomy (store key: userCategories).

A category is {slug, name, emoji, parent, order}. Slugs are the stable ids that
bookmark metadata refers to; the folder under the organized container is titled
"{emoji} {name}" and is found by that title.

Public API
----------
  slugify(name) -> str
  unique_slug(name, taken) -> str          base, base-1, base-2, ...
  friendly_name(slug) -> str               "developer/devops" -> "Developer Devops"
  folder_title(defn) -> str
  parse_definitions(payload) -> {slug: CategoryDefinition}
  Taxonomy(store)
    load() / save(defs) / get(slug)
    ensure(slug) -> CategoryDefinition     create-on-demand with a friendly name
    create(name, emoji, parent) -> CategoryDefinition
    fallback_slug(defs) -> str             other → first remaining → uncategorized
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import asdict, dataclass
from typing import Any, Iterable

from smartmarks.store import KeyValueStore

logger = logging.getLogger(__name__)

STORE_KEY = "userCategories"
DEFAULT_EMOJI = "📁"
FALLBACK_SLUG = "other"
UNCATEGORIZED_SLUG = "uncategorized"

_NON_ALNUM_RX = re.compile(r"[^a-z0-9]+")
_WORD_SPLIT_RX = re.compile(r"[-_/]+")


class TaxonomyError(ValueError):
    """Raised for invalid category definitions."""


# ---------------------------------------------------------------------------
# Slugs and names
# ---------------------------------------------------------------------------

def slugify(name: str) -> str:
    folded = unicodedata.normalize("NFKD", str(name)).encode("ascii", "ignore").decode()
    s = folded.strip().lower().replace("&", "and")
    return _NON_ALNUM_RX.sub("-", s).strip("-")


def unique_slug(name: str, taken: Iterable[str]) -> str:
    taken = set(taken)
    base = slugify(name) or "category"
    slug, n = base, 1
    while slug in taken:
        slug = f"{base}-{n}"
        n += 1
    return slug


def friendly_name(slug: str) -> str:
    return " ".join(w[:1].upper() + w[1:] for w in _WORD_SPLIT_RX.split(slug) if w)


# ---------------------------------------------------------------------------
# CategoryDefinition
# ---------------------------------------------------------------------------

@dataclass
class CategoryDefinition:
    slug:   str
    name:   str
    emoji:  str = DEFAULT_EMOJI
    parent: str | None = None
    order:  int = 0

    @property
    def folder_title(self) -> str:
        return folder_title(self)

    @classmethod
    def from_dict(cls, slug: str, data: dict[str, Any]) -> "CategoryDefinition":
        return cls(
            slug   = slug,
            name   = data.get("name") or friendly_name(slug),
            emoji  = data.get("emoji", DEFAULT_EMOJI) or "",
            parent = data.get("parent") or None,
            order  = int(data.get("order") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def folder_title(defn: CategoryDefinition) -> str:
    return f"{defn.emoji} {defn.name}" if defn.emoji else defn.name


def _validate(defs: dict[str, CategoryDefinition]) -> None:
    for slug, d in defs.items():
        if not slug:
            raise TaxonomyError("category slug may not be empty")
        if not d.name.strip():
            raise TaxonomyError(f"category {slug!r} has an empty name")
        if d.parent is not None and d.parent == slug:
            raise TaxonomyError(f"category {slug!r} cannot be its own parent")


def parse_definitions(payload: Any) -> dict[str, CategoryDefinition]:
    """
    Accept either {slug: {name, emoji, parent}} or [{slug?, name, emoji, parent}].

    List entries without a slug get one derived from their name; order follows
    position in the payload. Raises TaxonomyError on malformed input.
    """
    if isinstance(payload, dict):
        entries = [dict(v or {}, slug=k) for k, v in payload.items()]
    elif isinstance(payload, list):
        entries = list(payload)
    else:
        raise TaxonomyError("categories must be a mapping or a list")

    out: dict[str, CategoryDefinition] = {}
    for idx, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise TaxonomyError(f"category entry #{idx} is not an object")
        name = str(entry.get("name") or "").strip()
        slug = str(entry.get("slug") or "").strip() or unique_slug(name, out)
        if slug in out:
            raise TaxonomyError(f"duplicate category slug {slug!r}")
        defn = CategoryDefinition.from_dict(slug, {**entry, "name": name or friendly_name(slug)})
        defn.order = idx
        out[slug] = defn
    _validate(out)
    return out


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------

class Taxonomy:
    def __init__(self, store: KeyValueStore, default_emoji: str = DEFAULT_EMOJI) -> None:
        self._store = store
        self.default_emoji = default_emoji

    def load(self) -> dict[str, CategoryDefinition]:
        raw = self._store.get_one(STORE_KEY, {}) or {}
        defs = {slug: CategoryDefinition.from_dict(slug, d or {}) for slug, d in raw.items()}
        return dict(sorted(defs.items(), key=lambda kv: kv[1].order))

    def save(self, defs: dict[str, CategoryDefinition]) -> None:
        _validate(defs)
        self._store.set({STORE_KEY: {slug: d.to_dict() for slug, d in defs.items()}})

    def get(self, slug: str) -> CategoryDefinition | None:
        return self.load().get(slug)

    def ensure(self, slug: str) -> CategoryDefinition:
        """Return the definition for slug, creating a friendly-named one if missing."""
        defs = self.load()
        if slug in defs:
            return defs[slug]
        if slug == UNCATEGORIZED_SLUG:
            defn = CategoryDefinition(slug, "Uncategorized", "❓", None, len(defs) + 1)
        else:
            defn = CategoryDefinition(slug, friendly_name(slug), self.default_emoji, None,
                                      len(defs) + 1)
        defs[slug] = defn
        self.save(defs)
        logger.info("category created on demand: %s", slug)
        return defn

    def create(
        self,
        name: str,
        emoji: str | None = None,
        parent: str | None = None,
        slug: str | None = None,
    ) -> CategoryDefinition:
        if not name or not name.strip():
            raise TaxonomyError("category name may not be empty")
        defs = self.load()
        slug = slug or unique_slug(name, defs)
        if slug in defs:
            return defs[slug]
        if parent is not None and parent == slug:
            raise TaxonomyError(f"category {slug!r} cannot be its own parent")
        defn = CategoryDefinition(
            slug, name.strip(), emoji if emoji is not None else self.default_emoji,
            parent or None, len(defs) + 1,
        )
        defs[slug] = defn
        self.save(defs)
        return defn

    @staticmethod
    def fallback_slug(defs: dict[str, CategoryDefinition]) -> str:
        if FALLBACK_SLUG in defs:
            return FALLBACK_SLUG
        if defs:
            return next(iter(defs))
        return UNCATEGORIZED_SLUG
