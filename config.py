"""
config.py — Smart Bookmarks configuration loader.

Load order:
  1. Determine work_dir: SMARTMARKS_WORK_DIR env var → default ./smartmarks_work
  2. Read {work_dir}/config.yaml (defaults when the discovered file is absent)
  3. Validate value types → raise ConfigError if malformed
  4. Normalize paths via pathlib.Path.resolve()

Public API:
  load_config(config_file, work_dir) -> Config
  ollama_available(base_url) -> bool
  cfg: Config  (module-level singleton, loaded on import)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(Exception):
    """Raised when config.yaml is malformed."""


# ---------------------------------------------------------------------------
# Work directory discovery
# ---------------------------------------------------------------------------

_WORK_DIR_ENV = "SMARTMARKS_WORK_DIR"
_CONFIG_FILENAME = "config.yaml"

_MODES = ("local", "api_auto", "api_openai", "api_ollama")
_STRATEGIES = ("clone", "move")


def _get_work_dir() -> Path:
    env = os.environ.get(_WORK_DIR_ENV)
    if env:
        return Path(env).resolve()
    # Default: ./smartmarks_work relative to repo root (where this file lives)
    return Path(__file__).resolve().parent / "smartmarks_work"


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------

class Config:
    def __init__(
        self,
        data: dict[str, Any],
        work_dir: Path,
        config_file: Path,
    ) -> None:
        self._data = data
        self.work_dir = work_dir
        self.config_file = config_file

        # --- Organizer ---
        org = data.get("organizer", {})
        self.root_folder: str = org.get("root_folder", "🧠 Smart Bookmarks")
        self.strategy: str = org.get("strategy", "clone")
        self.recent_days: int = org.get("recent_days", 7)
        self.default_emoji: str = org.get("default_emoji", "📁")

        # --- Classifier ---
        clf = data.get("classifier", {})
        self.classification_mode: str = clf.get("mode", "local")
        self.rate_limit_delay_ms: int = clf.get("rate_limit_delay_ms", 2000)
        self.fetch_timeout: float = clf.get("fetch_timeout_seconds", 3.5)
        self.fetch_max_bytes: int = clf.get("fetch_max_bytes", 150_000)
        self.summary_max_chars: int = clf.get("summary_max_chars", 240)
        self.user_agent: str = clf.get(
            "user_agent", "Mozilla/5.0 (compatible; SmartBookmarks/1.0)"
        )

        # --- Providers ---
        prov = data.get("providers", {})
        oai = prov.get("openai", {})
        self.openai_api_key: str = (
            oai.get("api_key") or os.environ.get("OPENAI_API_KEY", "")
        )
        self.openai_model: str = oai.get("model", "gpt-4o-mini")
        self.openai_base_url: str = oai.get("base_url", "https://api.openai.com/v1")
        self.openai_timeout: float = oai.get("timeout_seconds", 20)

        oll = prov.get("ollama", {})
        self.ollama_enable: bool = oll.get("enable", False)
        self.ollama_base_url: str = oll.get("base_url", "http://localhost:11434")
        self.chat_model: str = oll.get("chat_model", "mistral")
        self.ollama_timeout: float = oll.get("timeout_seconds", 30)

        # --- Rule table extensions ---
        rules = data.get("rules", {})
        self.extra_domains: dict[str, str] = rules.get("extra_domains", {}) or {}
        self.extra_keywords: dict[str, list[str]] = rules.get("extra_keywords", {}) or {}

        # --- Server ---
        srv = data.get("server", {})
        self.server_host: str = srv.get("host", "127.0.0.1")
        self.server_port: int = srv.get("port", 7870)

        # --- Logging ---
        log = data.get("logging", {})
        self.log_level: str = str(log.get("level", "INFO")).upper()

    # --- Path helpers ---

    def get_db_path(self) -> Path:
        return self.work_dir / "db" / "smartmarks.db"

    def get_log_dir(self) -> Path:
        return self.work_dir / "logs"

    def get_export_dir(self) -> Path:
        return self.work_dir / "exports"

    def ensure_dirs(self) -> None:
        """Create all work subdirectories if they don't exist."""
        for d in [
            self.get_db_path().parent,
            self.get_log_dir(),
            self.get_export_dir(),
        ]:
            d.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _load_yaml(config_file: Path, required: bool) -> dict[str, Any]:
    if not config_file.exists():
        if required:
            raise FileNotFoundError(f"Config file not found: {config_file}")
        return {}
    with config_file.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping at the top level")
    return data


def _validate(data: dict[str, Any]) -> None:
    for section in ("organizer", "classifier", "providers", "rules", "server", "logging"):
        if section in data and not isinstance(data[section], dict):
            raise ConfigError(f"config.yaml section '{section}' must be a mapping")

    mode = data.get("classifier", {}).get("mode", "local")
    if mode not in _MODES:
        raise ConfigError(
            f"config.yaml classifier.mode must be one of {_MODES!r}, got {mode!r}"
        )
    strategy = data.get("organizer", {}).get("strategy", "clone")
    if strategy not in _STRATEGIES:
        raise ConfigError(
            f"config.yaml organizer.strategy must be one of {_STRATEGIES!r}, got {strategy!r}"
        )
    delay = data.get("classifier", {}).get("rate_limit_delay_ms", 2000)
    if not isinstance(delay, int) or delay < 0:
        raise ConfigError("config.yaml classifier.rate_limit_delay_ms must be a non-negative int")


def load_config(
    config_file: Path | None = None,
    work_dir: Path | None = None,
) -> Config:
    """
    Load and return a Config instance.

    Args:
        config_file: Explicit path to config.yaml (overrides discovery; must exist).
        work_dir:    Override work directory (overrides env var + default).
    """
    _work_dir = work_dir or _get_work_dir()
    _config_file = config_file or (_work_dir / _CONFIG_FILENAME)
    data = _load_yaml(_config_file, required=config_file is not None)
    _validate(data)
    return Config(data, _work_dir, _config_file)


# ---------------------------------------------------------------------------
# Ollama availability check
# ---------------------------------------------------------------------------

def ollama_available(base_url: str | None = None) -> bool:
    """
    Ping Ollama's /api/tags endpoint.
    Returns False without raising if Ollama is unreachable.
    """
    import httpx

    url = (base_url or "http://localhost:11434").rstrip("/") + "/api/tags"
    try:
        resp = httpx.get(url, timeout=3.0)
        return resp.status_code == 200
    except Exception:
        return False


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

# Loaded on first import of this module. A missing config.yaml yields defaults.
cfg: Config = load_config()
