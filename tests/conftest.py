"""Shared pytest fixtures for codeforge tests.

Factory functions live in ``_helpers.py``; this module re-exports them as
pytest fixtures so tests can receive them via dependency injection.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from codeforge.core.config import ConfigManager
from codeforge.core.registry import ContainerRegistry

from _helpers import (  # noqa: F401 - re-export for fixture use
    FakeClock,
    FakeRuntime,
    RecordingSink,
    RecordingSleep,
    make_config_manager,
    make_fuzzing_dir,
    make_registry,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config_manager(tmp_path: Path) -> ConfigManager:
    """A real ConfigManager backed by default config (no YAML/env file)."""
    return make_config_manager(tmp_path)


@pytest.fixture()
def runtime() -> FakeRuntime:
    """A FakeRuntime whose commands all succeed with no output."""
    return FakeRuntime()


@pytest.fixture()
def registry(runtime: FakeRuntime) -> ContainerRegistry:
    """A ContainerRegistry over the ``runtime`` fixture."""
    return make_registry(runtime)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """A workspace directory with an empty fuzzing directory."""
    ws = tmp_path / "project"
    make_fuzzing_dir(ws)
    return ws
