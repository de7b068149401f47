"""
smartmarks/models.py — Record types shared by the organizer pipeline.

BookmarkItem          — immutable snapshot of one tree node with a url
BookmarkMeta          — per-bookmark classification metadata (store key: bookmarkMeta)
OrganizationJobState  — persisted job status (store key: org_state)
OrganizationStats     — aggregate counters (store key: organization_stats)
Classification        — classifier output {category, description, source}

All persisted records round-trip through to_dict()/from_dict(); unknown keys in
stored dicts are ignored so older records keep loading.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any

JOB_STATUSES = ("idle", "running", "done", "failed")
META_KEY = "bookmarkMeta"


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def _known(cls, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


# ---------------------------------------------------------------------------
# BookmarkItem
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BookmarkItem:
    id:         str
    title:      str
    url:        str
    parent_id:  str | None
    date_added: int
    path:       tuple[str, ...] = ()   # ancestor folder titles, root first


# ---------------------------------------------------------------------------
# BookmarkMeta
# ---------------------------------------------------------------------------

@dataclass
class BookmarkMeta:
    primary:         str | None = None
    categories:      list[str] = field(default_factory=list)
    description:     str = ""
    manual:          bool = False
    tags:            list[str] = field(default_factory=list)
    organized:       bool = False
    organized_at:    int | None = None
    cloned_from:     str | None = None
    organize_failed: bool = False
    last_error:      str | None = None
    stale:           bool = False   # force reclassification on next job

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BookmarkMeta":
        return cls(**_known(cls, data or {}))

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def load_meta_map(raw: dict[str, Any] | None) -> dict[str, BookmarkMeta]:
    return {bid: BookmarkMeta.from_dict(m) for bid, m in (raw or {}).items()}


def dump_meta_map(meta: dict[str, BookmarkMeta]) -> dict[str, Any]:
    return {bid: m.to_dict() for bid, m in meta.items()}


# ---------------------------------------------------------------------------
# OrganizationJobState
# ---------------------------------------------------------------------------

@dataclass
class OrganizationJobState:
    status:       str = "idle"
    total:        int = 0
    done:         int = 0
    started_at:   int | None = None
    completed_at: int | None = None
    last_title:   str | None = None
    error:        str | None = None
    provider:     str = "local"
    strategy:     str | None = None
    message:      str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OrganizationJobState":
        state = cls(**_known(cls, data or {}))
        if state.status not in JOB_STATUSES:
            state.status = "idle"
        return state

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def progress(self) -> dict[str, Any]:
        """Compact broadcast payload: status/done/total plus error or message."""
        out: dict[str, Any] = {"status": self.status, "done": self.done, "total": self.total}
        if self.error:
            out["error"] = self.error
        if self.message:
            out["message"] = self.message
        return out


# ---------------------------------------------------------------------------
# OrganizationStats
# ---------------------------------------------------------------------------

@dataclass
class OrganizationStats:
    total_bookmarks:    int = 0
    categories_created: int = 0
    categories:         dict[str, int] = field(default_factory=dict)
    recent:             int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OrganizationStats":
        return cls(**_known(cls, data or {}))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def count(self, slug: str) -> None:
        self.categories[slug] = self.categories.get(slug, 0) + 1
        self.categories_created = len(self.categories)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Classification:
    category:    str
    description: str
    source:      str   # manual | domain | path | <provider> | keyword | default
