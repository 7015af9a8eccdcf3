"""Persistent storage for plan documents with optimistic version checks."""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..errors import VersionConflict
from ..utils.file_io import read_text, write_text
from .deserializer import read_header_version

__all__ = ["PlanStore", "FilePlanStore", "InMemoryPlanStore", "PLAN_SUFFIX"]

LOGGER = logging.getLogger(__name__)

PLAN_SUFFIX = ".plan.md"


@runtime_checkable
class PlanStore(Protocol):
    """Storage contract used by the session loop.

    ``save`` raises :class:`~planloop.errors.VersionConflict` when the stored
    document's header version differs from ``expected_version``. A missing
    document, or one without a header, has version ``None``.
    """

    def load(self, session_id: str) -> str | None:
        ...

    def save(self, session_id: str, text: str, expected_version: int | None) -> int | None:
        ...


def _check_version(session_id: str, current_text: str | None, expected_version: int | None) -> None:
    actual = read_header_version(current_text)
    if actual != expected_version:
        LOGGER.warning(
            "Version conflict for session %s: expected %s, found %s",
            session_id,
            expected_version,
            actual,
        )
        raise VersionConflict(session_id, expected_version=expected_version, actual_version=actual)


class FilePlanStore:
    """Stores each session's plan as ``<plan_dir>/<session_id>.plan.md``."""

    def __init__(self, plan_dir: Path | str) -> None:
        self._plan_dir = Path(plan_dir).expanduser()
        self._lock = threading.Lock()

    @property
    def plan_dir(self) -> Path:
        return self._plan_dir

    def path_for(self, session_id: str) -> Path:
        slug = re.sub(r"[^A-Za-z0-9._-]", "_", session_id).strip("._") or "session"
        return self._plan_dir / f"{slug}{PLAN_SUFFIX}"

    def load(self, session_id: str) -> str | None:
        path = self.path_for(session_id)
        try:
            return read_text(path, errors="replace")
        except FileNotFoundError:
            return None

    def save(self, session_id: str, text: str, expected_version: int | None) -> int | None:
        path = self.path_for(session_id)
        with self._lock:
            _check_version(session_id, self.load(session_id), expected_version)
            write_text(path, text)
        written = read_header_version(text)
        LOGGER.debug("Saved plan for session %s (version %s) to %s", session_id, written, path)
        return written


class InMemoryPlanStore:
    """Dictionary-backed store with the same version semantics as the file store."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self._documents: dict[str, str] = dict(documents or {})
        self._lock = threading.Lock()

    def load(self, session_id: str) -> str | None:
        with self._lock:
            return self._documents.get(session_id)

    def save(self, session_id: str, text: str, expected_version: int | None) -> int | None:
        with self._lock:
            _check_version(session_id, self._documents.get(session_id), expected_version)
            self._documents[session_id] = text
        return read_header_version(text)

    def put(self, session_id: str, text: str) -> None:
        """Overwrite a document without a version check, as an external edit would."""

        with self._lock:
            self._documents[session_id] = text
