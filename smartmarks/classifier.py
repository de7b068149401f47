"""
smartmarks/classifier.py — Bookmark classification pipeline.

Classifier.classify() is the primary deliverable:
  Returns Classification(category, description, source) and never raises.

Manual override:
  Metadata with manual=True and a non-empty primary is returned verbatim,
  source "manual", without touching the network.

Stages (only reached if no override), first present result wins:
  1. Domain rule, then path rule               source "domain" / "path"
  2. Remote provider cascade (mode != local)   source = provider name
  3. Keyword heuristic over the text bag       source "keyword"
  4. Default "other"                           source "default"

Description: page meta description, else the first two sentences of the bag,
truncated to summary_max_chars. A remote provider's own description wins when
it gives one.

INVARIANT: never raises. On any exception returns ("other", "", "default").
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from smartmarks.extract import PageContent, PageFetcher, summarize
from smartmarks.models import BookmarkMeta, Classification
from smartmarks.providers import RemoteProvider
from smartmarks.rules import RuleSet, map_to_general, split_url

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "other"


@dataclass
class _Context:
    url:         str
    title:       str
    host:        str
    path:        str
    page:        PageContent
    bag:         str
    description: str
    candidates:  list[str]


Stage = Callable[[_Context], Awaitable["Classification | None"]]


class Classifier:
    def __init__(
        self,
        fetcher: PageFetcher,
        rules: RuleSet | None = None,
        providers: Iterable[RemoteProvider] = (),
        summary_max_chars: int = 240,
    ) -> None:
        self.fetcher = fetcher
        self.rules = rules or RuleSet()
        self.providers = list(providers)
        self.summary_max_chars = summary_max_chars
        self.stages: list[Stage] = [self._rule_stage, self._remote_stage, self._keyword_stage]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _rule_stage(self, ctx: _Context) -> Classification | None:
        match = self.rules.apply_structural(ctx.host, ctx.path)
        if match is None:
            return None
        return Classification(match.category, ctx.description, match.source)

    async def _remote_stage(self, ctx: _Context) -> Classification | None:
        for provider in self.providers:
            result = await provider.classify(ctx.bag, ctx.candidates, url=ctx.url, title=ctx.title)
            if result is not None:
                return Classification(
                    result.category, result.description or ctx.description, provider.name
                )
        return None

    async def _keyword_stage(self, ctx: _Context) -> Classification | None:
        cat = self.rules.best_keyword(ctx.bag)
        return Classification(cat, ctx.description, "keyword") if cat else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def _context(self, url: str, title: str, candidates: list[str]) -> _Context:
        host, path = split_url(url)
        page = await self.fetcher.fetch(url)
        bag = page.bag or f"{title} {host}".strip().lower()
        description = page.meta_description or summarize(page.bag, self.summary_max_chars)
        return _Context(url, title, host, path, page, bag, description, candidates)

    async def describe(self, url: str, title: str = "") -> str:
        """Best-effort description only. Never raises."""
        try:
            ctx = await self._context(url, title, [])
            return ctx.description
        except Exception as e:
            logger.warning("describe failed for %s: %s", url, e)
            return ""

    async def classify(
        self,
        url: str,
        title: str = "",
        meta: BookmarkMeta | None = None,
        candidates: Iterable[str] = (),
    ) -> Classification:
        if meta is not None and meta.manual and meta.primary:
            return Classification(meta.primary, meta.description, "manual")
        try:
            ctx = await self._context(url, title, list(candidates))
            for stage in self.stages:
                result = await stage(ctx)
                if result is not None:
                    return result
            return Classification(map_to_general(DEFAULT_CATEGORY), ctx.description, "default")
        except Exception as e:
            logger.exception("classify failed for %s: %s", url, e)
            return Classification(DEFAULT_CATEGORY, "", "default")

    async def aclose(self) -> None:
        await self.fetcher.aclose()
        for p in self.providers:
            await p.aclose()
