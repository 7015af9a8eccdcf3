"""Configuration services."""

from .settings import DEFAULT_BASE_URL, DEFAULT_MODEL, SessionConfig, SettingsStore

__all__ = ["SessionConfig", "SettingsStore", "DEFAULT_MODEL", "DEFAULT_BASE_URL"]
