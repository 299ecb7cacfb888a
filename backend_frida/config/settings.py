"""
Application settings.

Responsibilities:
- Build a typed, immutable Settings object from environment variables (.env
  loaded by config.env) and the optional matcher config JSON file.
- Validate matcher overrides up front so workers never start with a broken
  registry.

Settings are read once per process; tests call reset_settings_for_test().
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from backend_frida.analysis_engine.matcher_registry import (
    DEFAULT_MATCHER_CONFIGS,
    MatcherConfig,
    MatcherRegistry,
)
from backend_frida.config import env
from backend_frida.core.exceptions import ValidationError
from backend_frida.frida_logging import get_logger

logger = get_logger(__name__)

# Worker-side resolver defaults (the processor's historical call site)
DEFAULT_PROCESSOR_THREADS = 4
DEFAULT_PROCESSOR_SLEEP_MS = 500
DEFAULT_CONNECTION_MAX_DEPTH = 3
DEFAULT_CONNECTION_LIMIT = 100
DEFAULT_CONNECTION_MIN_CONFIDENCE = 50


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration; construct once at startup and pass down."""

    db_path: Path = Path(env.DEFAULT_DB_PATH)
    database_url: str | None = None
    matcher_configs: dict[str, MatcherConfig] = field(
        default_factory=lambda: dict(DEFAULT_MATCHER_CONFIGS)
    )
    processor_threads: int = DEFAULT_PROCESSOR_THREADS
    processor_sleep_ms: int = DEFAULT_PROCESSOR_SLEEP_MS
    connection_max_depth: int = DEFAULT_CONNECTION_MAX_DEPTH
    connection_limit: int | None = DEFAULT_CONNECTION_LIMIT
    connection_min_confidence: int = DEFAULT_CONNECTION_MIN_CONFIDENCE
    connection_timeout_sec: float | None = None

    def matcher_registry(self) -> MatcherRegistry:
        return MatcherRegistry(self.matcher_configs)


def load_matcher_configs(path: str | Path) -> dict[str, MatcherConfig]:
    """
    Read matcher overrides from a JSON object.

    Accepted shapes per matcher: [confidence, importance] or
    {"confidence": int, "importance": int}. Raises ValidationError on anything else.
    """
    path = Path(path)
    try:
        raw: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"cannot read matcher configs from {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ValidationError(f"matcher configs in {path} must be a JSON object")

    configs: dict[str, MatcherConfig] = {}
    for matcher, value in raw.items():
        if isinstance(value, dict):
            pair = (value.get("confidence"), value.get("importance"))
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            pair = (value[0], value[1])
        else:
            raise ValidationError(
                f"matcher {matcher!r}: expected [confidence, importance], got {value!r}"
            )
        configs[str(matcher)] = pair  # type: ignore[assignment]
    # MatcherRegistry validates ranges and types
    MatcherRegistry(configs)
    logger.info("matcher_configs_loaded", path=str(path), count=len(configs))
    return configs


def _load_settings_from_env() -> Settings:
    configs_path = env.get_matcher_configs_path()
    matcher_configs = (
        load_matcher_configs(configs_path)
        if configs_path is not None
        else dict(DEFAULT_MATCHER_CONFIGS)
    )
    return Settings(
        db_path=env.get_db_path(),
        database_url=env.get_database_url(),
        matcher_configs=matcher_configs,
        processor_threads=max(1, env.get_processor_threads(DEFAULT_PROCESSOR_THREADS)),
        processor_sleep_ms=max(0, env.get_processor_sleep_ms(DEFAULT_PROCESSOR_SLEEP_MS)),
        connection_max_depth=env.get_connection_max_depth(DEFAULT_CONNECTION_MAX_DEPTH),
        connection_limit=env.get_connection_limit(DEFAULT_CONNECTION_LIMIT),
        connection_min_confidence=env.get_connection_min_confidence(
            DEFAULT_CONNECTION_MIN_CONFIDENCE
        ),
        connection_timeout_sec=env.get_connection_timeout_sec(None),
    )


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Return the current application settings.

    Returns:
        Settings with db_path, database_url, matcher_configs, worker sizing and
        resolver defaults.
    """
    global _settings
    if _settings is None:
        _settings = _load_settings_from_env()
        logger.info(
            "settings_loaded",
            db_path=str(_settings.db_path),
            sqlalchemy=_settings.database_url is not None,
            matcher_count=len(_settings.matcher_configs),
        )
    return _settings


def reset_settings_for_test() -> None:
    """Drop cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
