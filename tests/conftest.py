"""Shared pytest fixtures."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from planloop.errors import BackendUnavailable
from planloop.plan import InMemoryPlanStore
from planloop.services.settings import SessionConfig


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def memory_store() -> InMemoryPlanStore:
    return InMemoryPlanStore()


@pytest.fixture
def session_config(tmp_path) -> SessionConfig:
    return SessionConfig(working_dir=tmp_path, max_task_iterations=3)


@pytest.fixture
def timeout_error() -> BackendUnavailable:
    return BackendUnavailable("Model request timed out", kind="timeout")


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
