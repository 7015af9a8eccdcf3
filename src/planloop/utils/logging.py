"""Logging for the plan loop.

Every record carries the session id and loop phase it was written under, so
one log file can hold several sessions and still be read per session. The
terminal belongs to the TUI, so records go to a rotating file unless a
console handler is asked for.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, MutableMapping

__all__ = ["setup_logging", "session_logger", "SessionLogAdapter", "get_log_path", "LOG_FILE_NAME"]

LOG_FILE_NAME = "planloop.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(session)s:%(phase)s | %(name)s | %(message)s"
_DEFAULT_LOG_DIR = Path.home() / ".local" / "share" / "planloop" / "logs"
# Model server chatter is only interesting when something is already wrong.
_QUIET_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai")
_UNBOUND = "-"
_LOG_PATH: Path | None = None


class SessionLogAdapter(logging.LoggerAdapter):
    """Tags records with the session they belong to and the current phase.

    The loop updates :attr:`phase` on every transition; callers may still pass
    their own ``extra`` mapping, which is merged over the session fields.
    """

    def __init__(self, logger: logging.Logger, session_id: str, phase: str = "Idle") -> None:
        super().__init__(logger, {"session": session_id, "phase": phase})

    @property
    def session_id(self) -> str:
        return str(self.extra["session"])

    @property
    def phase(self) -> str:
        return str(self.extra["phase"])

    @phase.setter
    def phase(self, value: str) -> None:
        self.extra = {**self.extra, "phase": value}

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def session_logger(name: str, session_id: str) -> SessionLogAdapter:
    """Return a logger for ``name`` bound to ``session_id``."""

    return SessionLogAdapter(logging.getLogger(name), session_id)


class _SessionFieldsFilter(logging.Filter):
    # Records from plain module loggers have no session; keep the format usable.
    def filter(self, record: logging.LogRecord) -> bool:
        for attribute in ("session", "phase"):
            if not hasattr(record, attribute):
                setattr(record, attribute, _UNBOUND)
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Send planloop records to ``<log_dir>/planloop.log``.

    Args:
        level: Level for planloop's own loggers.
        log_dir: Target directory; ``PLANLOOP_LOG_DIR`` or the per-user data
            directory when omitted.
        console: Also echo records to stderr.
        max_bytes: Size at which the file rotates.
        backup_count: Rotated files kept.
        force: Reconfigure even when logging was already set up.

    Returns:
        Path of the active log file.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    target_dir = Path(log_dir or os.environ.get("PLANLOOP_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILE_NAME

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(_SessionFieldsFilter())

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet_level = max(level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging`."""

    return _LOG_PATH
