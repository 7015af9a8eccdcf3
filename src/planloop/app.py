"""Bootstrap helpers for embedding a plan loop session."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .ai.client import AIClient
from .ai.orchestration import EventListener, SessionLoop, ToolRegistry
from .plan import PlanStore
from .services.settings import SessionConfig, SettingsStore
from .utils import logging as logging_utils

__all__ = ["configure_logging", "load_settings", "create_session"]

LOGGER = logging.getLogger(__name__)


def configure_logging(config: SessionConfig, *, console: bool = False, force: bool = False) -> Path:
    """Configure logging from the session settings."""

    level = logging.DEBUG if config.debug_logging else logging.INFO
    path = logging_utils.setup_logging(level, log_dir=config.log_dir, console=console, force=force)
    LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), path)
    return path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> SessionConfig:
    """Load persisted settings, then environment and caller overrides."""

    active_store = store or SettingsStore(path)
    return active_store.load(overrides=overrides)


def create_session(
    config: SessionConfig,
    *,
    session_id: str = "default",
    registry: ToolRegistry | None = None,
    store: PlanStore | None = None,
    listeners: Iterable[EventListener] = (),
    backend: Any = None,
) -> SessionLoop:
    """Set up logging and return a session loop talking to the configured model server.

    ``backend`` replaces the default :class:`AIClient`; anything with an async
    ``complete(ModelInput)`` method works.
    """

    configure_logging(config)
    model = backend if backend is not None else AIClient(config.client_settings())
    LOGGER.info("Starting session %s with model %s at %s", session_id, config.model, config.base_url)
    return SessionLoop(
        config,
        model,
        store=store,
        registry=registry,
        session_id=session_id,
        listeners=listeners,
    )
