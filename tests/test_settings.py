"""
tests/test_settings.py — Runtime settings persistence and export/import.

Run with: pytest tests/test_settings.py -v
"""

from __future__ import annotations

from pathlib import Path

import pytest

from smartmarks.db import get_connection
from smartmarks.settings import export_settings, import_settings, load_settings, save_settings
from smartmarks.store import KeyValueStore


@pytest.fixture
def store(tmp_path: Path):
    conn = get_connection(tmp_path / "db" / "smartmarks.db")
    yield KeyValueStore(conn)
    conn.close()


def test_defaults_come_from_config(store, cfg) -> None:
    s = load_settings(store, cfg)
    assert s.classification_mode == "local"
    assert s.organize_strategy == "clone"
    assert s.rate_limit_delay == 2000
    assert s.openai_api_key == ""
    assert s.ollama_enable is False


def test_saved_values_override_config(store, cfg) -> None:
    save_settings(store, {"classification_mode": "api_openai", "rate_limit_delay": 0,
                          "organize_strategy": "move", "openai_api_key": "sk-1"})
    s = load_settings(store, cfg)
    assert s.classification_mode == "api_openai"
    assert s.rate_limit_delay == 0
    assert s.organize_strategy == "move"
    assert s.public()["openai_api_key"] is True


@pytest.mark.parametrize("updates", [
    {"classification_mode": "api_gemini"},
    {"organize_strategy": "copy"},
    {"rate_limit_delay": -1},
    {"rate_limit_delay": "fast"},
    {"colour": "blue"},
])
def test_invalid_updates_rejected(store, updates) -> None:
    with pytest.raises(ValueError):
        save_settings(store, updates)


def test_export_drops_secrets_and_job_state(store) -> None:
    store.set({
        "openai_api_key": "sk-secret",
        "org_state": {"status": "running"},
        "organize_progress": {"status": "running"},
        "userCategories": {"docs": {"name": "Docs"}},
        "classification_mode": "local",
    })
    data = export_settings(store)
    assert "openai_api_key" not in data
    assert "org_state" not in data
    assert "organize_progress" not in data
    assert data["userCategories"] == {"docs": {"name": "Docs"}}
    assert data["version"] == "2.0"
    assert "exported_at" in data


def test_import_writes_payload(store) -> None:
    written = import_settings(store, {
        "version": "2.0", "exported_at": "x",
        "userCategories": {"media": {"name": "Media"}},
        "org_state": {"status": "running"},
    })
    assert written == ["userCategories"]
    assert store.get_one("userCategories") == {"media": {"name": "Media"}}
    assert store.get_one("org_state") is None


@pytest.mark.parametrize("payload", [
    {"rate_limit_delay": "abc"},
    {"classification_mode": "magic"},
    {"organize_strategy": "copy"},
    {"ollama_enable": "yes"},
])
def test_import_rejects_bad_settings(store, cfg, payload) -> None:
    with pytest.raises(ValueError):
        import_settings(store, {"version": "2.0", **payload})
    assert store.get(list(payload)) == {}
    # settings still load after the rejected import
    assert load_settings(store, cfg).rate_limit_delay == cfg.rate_limit_delay_ms
