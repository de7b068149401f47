"""
smartmarks/providers.py — Remote classification providers.

A provider takes the page text bag plus the known category slugs and returns a
ProviderResult or None ("no opinion"). Transport errors, bad JSON and empty
answers all collapse to None; the classifier then moves to the next stage.

  OpenAIProvider   — chat completions, strict JSON {category, description}
  OllamaProvider   — local Ollama /api/chat, format=json
  RateLimiter      — one global spacing gate shared by every provider call
  build_cascade(settings, cfg, limiter) -> [RemoteProvider]   ordered by mode

Modes: local → [], api_openai → [openai], api_ollama → [ollama],
api_auto → [openai, ollama]. Unconfigured providers are dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

import httpx
import ollama
from openai import AsyncOpenAI

from config import Config
from smartmarks.rules import map_to_general
from smartmarks.settings import Settings
from smartmarks.taxonomy import slugify

logger = logging.getLogger(__name__)

_CONTENT_SAMPLE = 20_000

_SYSTEM_PROMPT = (
    "Respond with strict JSON of the form {\"category\": \"...\", \"description\": \"...\"}. "
    "Pick ONE best-fit category slug from the provided list; if none fit or the list is "
    "empty, propose a new slugified category. Provide a 1-2 sentence description "
    "written from the page content."
)


@dataclass(frozen=True)
class ProviderResult:
    category:    str
    description: str = ""
    provider:    str = ""


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """Enforce a minimum gap between consecutive remote calls."""

    def __init__(
        self,
        delay_ms: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.delay = max(0, delay_ms) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                gap = self.delay - (self._clock() - self._last)
                if gap > 0:
                    await self._sleep(gap)
            self._last = self._clock()


# ---------------------------------------------------------------------------
# Base provider
# ---------------------------------------------------------------------------

def normalize_category(raw: str, candidates: list[str]) -> str:
    """Keep a known slug as-is; otherwise slugify each path segment and fold."""
    cat = (raw or "").strip().lower()
    if cat in candidates:
        return cat
    cat = "/".join(s for s in (slugify(p) for p in cat.split("/")) if s)
    return map_to_general(cat) if cat else ""


def _parse_answer(text: str, candidates: list[str], provider: str) -> ProviderResult | None:
    try:
        parsed = json.loads((text or "").strip() or "{}")
    except json.JSONDecodeError:
        logger.debug("%s: non-JSON answer %r", provider, (text or "")[:200])
        return None
    if not isinstance(parsed, dict):
        return None
    category = normalize_category(str(parsed.get("category") or ""), candidates)
    if not category:
        return None
    return ProviderResult(category, str(parsed.get("description") or "").strip(), provider)


class RemoteProvider:
    name = "remote"

    def __init__(self, limiter: RateLimiter | None = None) -> None:
        self.limiter = limiter

    @property
    def configured(self) -> bool:
        return False

    async def _complete(self, messages: list[dict[str, str]]) -> str:
        raise NotImplementedError

    async def classify(
        self,
        text: str,
        candidates: list[str],
        url: str = "",
        title: str = "",
    ) -> ProviderResult | None:
        """Never raises. None means no opinion."""
        if not self.configured:
            return None
        user_msg = json.dumps({
            "url":           url,
            "host":          urlsplit(url).hostname or "",
            "title":         title,
            "candidates":    list(candidates),
            "contentSample": (text or "")[:_CONTENT_SAMPLE],
        }, ensure_ascii=False)
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user",   "content": user_msg},
        ]
        try:
            if self.limiter:
                await self.limiter.wait()
            answer = await self._complete(messages)
        except Exception as e:
            logger.warning("%s classification failed: %s", self.name, e)
            return None
        return _parse_answer(answer, list(candidates), self.name)

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

class OpenAIProvider(RemoteProvider):
    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        timeout: float = 20,
        limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(limiter)
        self.api_key = api_key
        self.model = model
        self._client = (
            AsyncOpenAI(
                api_key=api_key, base_url=base_url, timeout=timeout,
                max_retries=0, http_client=http_client,
            )
            if api_key else None
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def _complete(self, messages: list[dict[str, str]]) -> str:
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0,
            response_format={"type": "json_object"},
        )
        return resp.choices[0].message.content or ""

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------

class OllamaProvider(RemoteProvider):
    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "mistral",
        timeout: float = 30,
        enabled: bool = True,
        limiter: RateLimiter | None = None,
        **client_kwargs: Any,
    ) -> None:
        super().__init__(limiter)
        self.enabled = enabled
        self.model = model
        self._client = ollama.AsyncClient(host=base_url, timeout=timeout, **client_kwargs)

    @property
    def configured(self) -> bool:
        return self.enabled

    async def _complete(self, messages: list[dict[str, str]]) -> str:
        resp = await self._client.chat(
            model=self.model,
            messages=messages,
            format="json",
            options={"temperature": 0},
        )
        return resp["message"]["content"]


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------

def build_cascade(
    settings: Settings,
    cfg_obj: Config,
    limiter: RateLimiter | None = None,
) -> list[RemoteProvider]:
    mode = settings.classification_mode
    if mode == "local":
        return []

    def _openai() -> RemoteProvider:
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=cfg_obj.openai_model,
            base_url=cfg_obj.openai_base_url,
            timeout=cfg_obj.openai_timeout,
            limiter=limiter,
        )

    def _ollama() -> RemoteProvider:
        return OllamaProvider(
            base_url=cfg_obj.ollama_base_url,
            model=cfg_obj.chat_model,
            timeout=cfg_obj.ollama_timeout,
            enabled=settings.ollama_enable or mode == "api_ollama",
            limiter=limiter,
        )

    order = {
        "api_openai": [_openai],
        "api_ollama": [_ollama],
        "api_auto":   [_openai, _ollama],
    }.get(mode, [])
    providers = [make() for make in order]
    active = [p for p in providers if p.configured]
    logger.debug("provider cascade for mode %s: %s", mode, [p.name for p in active])
    return active
