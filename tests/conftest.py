"""
tests/conftest.py — Shared fixtures: temp database, config and an offline fetcher.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from config import load_config
from smartmarks.db import get_connection
from smartmarks.extract import PageContent


class FakeFetcher:
    """Stands in for PageFetcher: serves canned HTML by url, records calls."""

    def __init__(self, pages: dict[str, str] | None = None) -> None:
        self.pages = pages or {}
        self.calls: list[str] = []
        self.closed = False

    async def fetch(self, url: str) -> PageContent:
        self.calls.append(url)
        html = self.pages.get(url)
        if not html:
            return PageContent(url=url, error="offline")
        return PageContent.from_html(url, html, status_code=200)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def conn(tmp_path: Path):
    c = get_connection(tmp_path / "db" / "smartmarks.db")
    yield c
    c.close()


@pytest.fixture
def cfg(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return load_config(work_dir=tmp_path)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()
