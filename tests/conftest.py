"""Shared fixtures for chain state tests."""

import logging

import pytest

from chainstate.chain_logging import observability_hooks, performance_monitor
from chainstate.config import PROJECT_ROOT_ENV, STATE_DIR_ENV


@pytest.fixture(autouse=True)
def isolated_chainstate(monkeypatch):
    """Reset module-level logging, metrics and hooks around every test."""
    monkeypatch.delenv(PROJECT_ROOT_ENV, raising=False)
    monkeypatch.delenv(STATE_DIR_ENV, raising=False)
    monkeypatch.delenv("CHAINSTATE_LOG_LEVEL", raising=False)
    monkeypatch.delenv("CHAINSTATE_LOG_FILE", raising=False)

    logger = logging.getLogger("chainstate")
    saved_level = logger.level
    saved_handlers = list(logger.handlers)
    performance_monitor.clear()
    observability_hooks.hooks.clear()

    yield

    for handler in logger.handlers:
        if handler not in saved_handlers:
            handler.close()
    logger.handlers[:] = saved_handlers
    logger.setLevel(saved_level)
    performance_monitor.clear()
    observability_hooks.hooks.clear()


@pytest.fixture
def project_root(tmp_path):
    """A project directory with no chains yet."""
    root = tmp_path / "legacy-app"
    root.mkdir()
    return root


@pytest.fixture
def sample_state():
    """A minimal valid stage document."""
    return {
        "chain_id": "a3f7c8d1",
        "timestamp": "2025-01-01T00:00:00Z",
        "stage": "bootstrap",
        "stages_complete": [],
    }
