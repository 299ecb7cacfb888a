"""
Configuration management for Backend Frida.

Loads settings from environment variables, an optional .env file and an
optional matcher config JSON file. Exposes a single Settings object that is
passed explicitly to the store, resolvers and worker.
"""

from backend_frida.config.settings import (  # noqa: F401
    Settings,
    get_settings,
    load_matcher_configs,
    reset_settings_for_test,
)

__all__ = ["Settings", "get_settings", "load_matcher_configs", "reset_settings_for_test"]
