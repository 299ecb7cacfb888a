"""
Environment variable loading for Frida.

- FRIDA_DB_PATH: SQLite file for the match node store (default: frida.db)
- DATABASE_URL: SQLAlchemy URL; when set, the SQLAlchemy backend is used
- MATCHER_CONFIGS_PATH: JSON file {"matcher": [confidence, importance]}
- PROCESSOR_THREADS / PROCESSOR_SLEEP_MS: worker pool size and idle sleep
- CONNECTION_MAX_DEPTH / CONNECTION_LIMIT / CONNECTION_MIN_CONFIDENCE /
  CONNECTION_TIMEOUT_SEC: transitive resolver defaults for the worker
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is backend_frida/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

DEFAULT_DB_PATH = "frida.db"


def load_frida_env() -> None:
    """Load .env from project root. Safe to call multiple times; existing env wins."""
    if _ENV_PATH.is_file():
        load_dotenv(_ENV_PATH, override=False)


def _get_str(name: str, default: str | None = None) -> str | None:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def _get_int(name: str, default: int | None) -> int | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _get_float(name: str, default: float | None) -> float | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def get_db_path() -> Path:
    """Return FRIDA_DB_PATH (default frida.db in cwd)."""
    load_frida_env()
    return Path(_get_str("FRIDA_DB_PATH", DEFAULT_DB_PATH))


def get_database_url() -> str | None:
    """Return DATABASE_URL if set; None means use the sqlite3 backend at get_db_path()."""
    load_frida_env()
    return _get_str("DATABASE_URL")


def get_matcher_configs_path() -> Path | None:
    """Return MATCHER_CONFIGS_PATH or None for the built-in matcher configs."""
    load_frida_env()
    raw = _get_str("MATCHER_CONFIGS_PATH")
    return Path(raw) if raw else None


def get_processor_threads(default: int) -> int:
    load_frida_env()
    return _get_int("PROCESSOR_THREADS", default)


def get_processor_sleep_ms(default: int) -> int:
    load_frida_env()
    return _get_int("PROCESSOR_SLEEP_MS", default)


def get_connection_max_depth(default: int) -> int:
    load_frida_env()
    return _get_int("CONNECTION_MAX_DEPTH", default)


def get_connection_limit(default: int | None) -> int | None:
    load_frida_env()
    return _get_int("CONNECTION_LIMIT", default)


def get_connection_min_confidence(default: int) -> int:
    load_frida_env()
    return _get_int("CONNECTION_MIN_CONFIDENCE", default)


def get_connection_timeout_sec(default: float | None) -> float | None:
    load_frida_env()
    return _get_float("CONNECTION_TIMEOUT_SEC", default)
