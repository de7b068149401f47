"""
smartmarks/extract.py — Page fetch and text-bag extraction.

Two layers
----------
Pure HTML helpers (no network):
  extract_title(html) -> str
  extract_meta_description(html) -> str     name=description, else og:description
  text_bag_from_html(html) -> str           title + every meta content + h1–h3, lowercased
  summarize(text, max_chars) -> str         first two sentences, truncated

PageFetcher.fetch(url) -> PageContent   (fetch_page(url, ...) for one-shot use)
  GET with a hard timeout (default 3.5 s) and a byte cap (default 150 000).
  Non-HTML responses, HTTP errors, timeouts and network failures all yield an
  empty PageContent. Never raises; the classifier keeps going degraded.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

import httpx
from bs4 import BeautifulSoup

from config import Config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT   = 3.5
DEFAULT_MAX_BYTES = 150_000
SUMMARY_MAX_CHARS = 240

_WS_RX       = re.compile(r"\s+")
_SENTENCE_RX = re.compile(r"\.\s+")


# ---------------------------------------------------------------------------
# HTML helpers
# ---------------------------------------------------------------------------

def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _clean(text: str) -> str:
    return _WS_RX.sub(" ", text or "").strip()


def extract_title(html: str) -> str:
    tag = _soup(html).find("title")
    return _clean(tag.get_text()) if tag else ""


def extract_meta_description(html: str) -> str:
    soup = _soup(html)
    for attrs in ({"name": "description"}, {"property": "og:description"}):
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return _clean(tag["content"])
    return ""


def text_bag_from_html(html: str) -> str:
    """Title, all meta contents and h1–h3 headings as one lowercase string."""
    if not html:
        return ""
    soup = _soup(html)
    title = soup.find("title")
    metas = [m["content"] for m in soup.find_all("meta") if m.get("content")]
    headings = [h.get_text(" ") for h in soup.find_all(["h1", "h2", "h3"])]
    parts = [title.get_text() if title else "", " ".join(metas), " ".join(headings)]
    return _clean(" ".join(parts)).lower()


def summarize(text: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    sentences = _SENTENCE_RX.split(text or "")
    return ". ".join(sentences[:2]).strip()[:max_chars]


# ---------------------------------------------------------------------------
# PageContent
# ---------------------------------------------------------------------------

@dataclass
class PageContent:
    url:              str
    html:             str = ""
    title:            str = ""
    meta_description: str = ""
    bag:              str = ""
    status_code:      int | None = None
    error:            str | None = None

    @property
    def empty(self) -> bool:
        return not self.html

    @classmethod
    def from_html(cls, url: str, html: str, status_code: int | None = None) -> "PageContent":
        return cls(
            url              = url,
            html             = html,
            title            = extract_title(html),
            meta_description = extract_meta_description(html),
            bag              = text_bag_from_html(html),
            status_code      = status_code,
        )


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

class PageFetcher:
    """Bounded, never-raising page fetcher. One shared AsyncClient per fetcher."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_BYTES,
        user_agent: str = "Mozilla/5.0 (compatible; SmartBookmarks/1.0)",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=timeout,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    @classmethod
    def from_config(cls, cfg_obj: Config, **kwargs) -> "PageFetcher":
        return cls(
            timeout=cfg_obj.fetch_timeout,
            max_bytes=cfg_obj.fetch_max_bytes,
            user_agent=cfg_obj.user_agent,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _read_capped(self, url: str) -> tuple[str, int]:
        async with self._client.stream("GET", url) as resp:
            if not resp.is_success:
                raise httpx.HTTPStatusError(
                    f"HTTP {resp.status_code}", request=resp.request, response=resp
                )
            ctype = resp.headers.get("content-type", "")
            if ctype and "html" not in ctype.lower():
                logger.debug("fetch %s: non-HTML content-type %r", url, ctype)
                return "", resp.status_code
            buf = bytearray()
            async for chunk in resp.aiter_bytes():
                buf.extend(chunk)
                if len(buf) >= self.max_bytes:
                    break
            encoding = resp.encoding or "utf-8"
            return bytes(buf[: self.max_bytes]).decode(encoding, errors="replace"), resp.status_code

    async def fetch(self, url: str) -> PageContent:
        if not url or not url.lower().startswith(("http://", "https://")):
            return PageContent(url=url or "", error="unsupported url")
        try:
            html, status = await asyncio.wait_for(self._read_capped(url), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.debug("fetch %s: timed out after %.1fs", url, self.timeout)
            return PageContent(url=url, error="timeout")
        except Exception as e:
            logger.debug("fetch %s failed: %s", url, e)
            return PageContent(url=url, error=str(e) or type(e).__name__)
        return PageContent.from_html(url, html, status_code=status)


async def fetch_page(
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    max_bytes: int = DEFAULT_MAX_BYTES,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PageContent:
    """One-shot fetch with a throwaway client. Never raises."""
    fetcher = PageFetcher(timeout=timeout, max_bytes=max_bytes, transport=transport)
    try:
        return await fetcher.fetch(url)
    finally:
        await fetcher.aclose()
