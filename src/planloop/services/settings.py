"""Session configuration and its persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..ai.client import ClientSettings
from ..utils.file_io import read_text, write_text

__all__ = ["SessionConfig", "SettingsStore", "DEFAULT_MODEL", "DEFAULT_BASE_URL"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "deepseek-coder-v2:16b"
DEFAULT_BASE_URL = "http://localhost:11434/v1"
_SETTINGS_DIR = Path.home() / ".planloop"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_PATH_FIELDS = ("working_dir", "plan_dir", "log_dir")
_ENV_OVERRIDES: Mapping[str, str] = {
    "PLANLOOP_MODEL": "model",
    "PLANLOOP_BASE_URL": "base_url",
    "PLANLOOP_API_KEY": "api_key",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "PLANLOOP_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "PLANLOOP_REQUEST_TIMEOUT": "request_timeout",
    "PLANLOOP_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "PLANLOOP_MAX_TASK_ITERATIONS": "max_task_iterations",
    "PLANLOOP_HISTORY_TURNS": "history_turns",
    "PLANLOOP_RECOVERY_ATTEMPTS": "recovery_attempts",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True, frozen=True)
class SessionConfig:
    """Static configuration for one session.

    Attributes:
        working_dir: Directory the session operates in.
        model: Model name served by the backend.
        base_url: OpenAI-compatible endpoint.
        api_key: Key sent to the endpoint (Ollama ignores it).
        request_timeout: Seconds before a model call times out.
        max_retries: Transport-level attempts per model call.
        retry_min_seconds: Initial backoff between transport retries.
        retry_max_seconds: Backoff ceiling between transport retries.
        temperature: Sampling temperature.
        max_task_iterations: Model calls allowed per task before it is marked failed.
        history_turns: User turns kept in the context window.
        recovery_attempts: Corrective requests sent for an unreadable plan.
        tool_timeout_seconds: Per tool call timeout.
        max_tool_output_chars: Longest reply text kept in the history window.
        max_replies_per_turn: Replies kept per user turn in the history window.
        plan_dir: Where plan documents are stored; defaults under ``working_dir``.
        log_dir: Log directory override.
        debug_logging: Log full prompt payloads.
        system_prompt: Extra instructions appended to the system prompt.
    """

    working_dir: Path = Path(".")
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: str = "ollama"
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.2
    max_task_iterations: int = 10
    history_turns: int = 5
    recovery_attempts: int = 1
    tool_timeout_seconds: float = 30.0
    max_tool_output_chars: int = 4000
    max_replies_per_turn: int = 24
    plan_dir: Path | None = None
    log_dir: Path | None = None
    debug_logging: bool = False
    system_prompt: str | None = None

    def __post_init__(self) -> None:
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, Path):
                object.__setattr__(self, name, Path(value))
        if self.max_task_iterations < 1:
            raise ValueError("max_task_iterations must be at least 1")
        if self.history_turns < 1:
            raise ValueError("history_turns must be at least 1")
        if self.recovery_attempts < 0:
            raise ValueError("recovery_attempts cannot be negative")

    @property
    def resolved_plan_dir(self) -> Path:
        if self.plan_dir is not None:
            return self.plan_dir.expanduser()
        return self.working_dir.expanduser() / ".planloop" / "plans"

    def with_updates(self, **changes: Any) -> SessionConfig:
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            temperature=self.temperature,
            debug_logging=self.debug_logging,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _PATH_FIELDS:
            if data.get(name) is not None:
                data[name] = str(data[name])
        return data


class SettingsStore:
    """Persistence adapter for :class:`SessionConfig`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> SessionConfig:
        """Load settings from disk, then apply environment and CLI overrides."""

        payload = self._read_payload()
        config = SessionConfig()
        if payload:
            data = _filter_fields(payload)
            try:
                config = SessionConfig(**data)
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                config = SessionConfig()

        config = self._apply_env_overrides(config)
        if overrides:
            config = self._apply_overrides(config, overrides, source="CLI")
        return config

    def save(self, config: SessionConfig) -> Path:
        """Persist settings to disk with atomic file writes."""

        data = config.to_dict()
        data["version"] = _SETTINGS_VERSION
        write_text(self._path, json.dumps(data, indent=2, sort_keys=True))
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        try:
            payload = json.loads(read_text(self._path))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not hold an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        config: SessionConfig,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> SessionConfig:
        allowed = {field.name for field in fields(SessionConfig)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if not filtered:
            return config
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
        try:
            return replace(config, **filtered)
        except ValueError as exc:
            LOGGER.warning("Ignoring invalid %s settings overrides: %s", source, exc)
            return config

    def _apply_env_overrides(self, config: SessionConfig) -> SessionConfig:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            config = self._apply_overrides(config, overrides, source="environment")
        return config


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(SessionConfig)}
    return {key: value for key, value in payload.items() if key in allowed}
