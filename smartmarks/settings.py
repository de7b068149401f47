"""
smartmarks/settings.py — Runtime settings persisted in the key-value store.

config.yaml supplies defaults; values saved through the API/CLI live in the
store under flat keys and win over the config file.

  classification_mode  local | api_auto | api_openai | api_ollama
  organize_strategy    clone | move
  rate_limit_delay     ms between remote provider calls
  openai_api_key       never exported
  ollama_enable        bool

Export/import moves the whole store (categories, metadata, stats, settings)
between installs, minus secrets and live job state.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from config import Config
from smartmarks.store import KeyValueStore

logger = logging.getLogger(__name__)

MODES = ("local", "api_auto", "api_openai", "api_ollama")
STRATEGIES = ("clone", "move")

_SECRET_KEYS = ("openai_api_key",)
_TRANSIENT_KEYS = ("org_state", "organize_progress")
_EXPORT_VERSION = "2.0"


@dataclass
class Settings:
    classification_mode: str
    organize_strategy:   str
    rate_limit_delay:    int
    openai_api_key:      str
    ollama_enable:       bool

    def public(self) -> dict[str, Any]:
        """Settings safe to return to a client: key presence only."""
        d = asdict(self)
        d["openai_api_key"] = bool(self.openai_api_key)
        return d


def load_settings(store: KeyValueStore, cfg_obj: Config) -> Settings:
    data = store.get(list(Settings.__dataclass_fields__))
    return Settings(
        classification_mode=data.get("classification_mode") or cfg_obj.classification_mode,
        organize_strategy=data.get("organize_strategy") or cfg_obj.strategy,
        rate_limit_delay=int(data.get("rate_limit_delay", cfg_obj.rate_limit_delay_ms)),
        openai_api_key=data.get("openai_api_key") or cfg_obj.openai_api_key,
        ollama_enable=bool(data.get("ollama_enable", cfg_obj.ollama_enable)),
    )


def _validate(values: dict[str, Any]) -> None:
    """Check the settings keys present in values. Raises ValueError."""
    if "classification_mode" in values and values["classification_mode"] not in MODES:
        raise ValueError(f"classification_mode must be one of {MODES!r}")
    if "organize_strategy" in values and values["organize_strategy"] not in STRATEGIES:
        raise ValueError(f"organize_strategy must be one of {STRATEGIES!r}")
    if "rate_limit_delay" in values:
        delay = values["rate_limit_delay"]
        if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
            raise ValueError("rate_limit_delay must be a non-negative int (ms)")
    if "ollama_enable" in values and not isinstance(values["ollama_enable"], bool):
        raise ValueError("ollama_enable must be true or false")
    if "openai_api_key" in values and not isinstance(values["openai_api_key"], str):
        raise ValueError("openai_api_key must be a string")


def save_settings(store: KeyValueStore, updates: dict[str, Any]) -> None:
    """Validate and persist a partial settings update. Raises ValueError on bad values."""
    allowed = set(Settings.__dataclass_fields__)
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f"unknown settings: {sorted(unknown)}")
    _validate(updates)
    store.set(updates)
    logger.info("settings updated: %s", sorted(k for k in updates if k not in _SECRET_KEYS))


def export_settings(store: KeyValueStore) -> dict[str, Any]:
    data = {
        k: v for k, v in store.dump().items()
        if k not in _SECRET_KEYS and k not in _TRANSIENT_KEYS
    }
    data["exported_at"] = datetime.now(timezone.utc).isoformat()
    data["version"] = _EXPORT_VERSION
    return data


def import_settings(store: KeyValueStore, data: dict[str, Any]) -> list[str]:
    """Persist an export payload. Returns the keys written. Raises ValueError on bad settings."""
    record = {
        k: v for k, v in data.items()
        if k not in ("exported_at", "version") and k not in _TRANSIENT_KEYS
    }
    _validate(record)
    store.set(record)
    return sorted(record)
