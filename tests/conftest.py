"""Shared pytest fixtures for fuzzdriver tests.

Factory functions live in ``_helpers.py``; this module re-exports them as
pytest fixtures so tests can receive them via dependency injection.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from fuzzdriver.core.config import ConfigManager, EngineConfig
from fuzzdriver.engines.afl import AFLEngine
from fuzzdriver.engines.libfuzzer import LibFuzzerEngine

from _helpers import (  # noqa: F401 — re-export for fixture use
    make_config_manager,
    make_engine,
    make_engine_config,
    make_task,
    wait_for_status,
    write_script,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def config_manager(tmp_path: Path) -> ConfigManager:
    """A real ConfigManager backed by default config (no YAML/env file)."""
    return make_config_manager(tmp_path)


@pytest.fixture()
def engine_config(tmp_path: Path) -> EngineConfig:
    """EngineConfig rooted in tmp_path, no deadline grace."""
    return make_engine_config(tmp_path)


@pytest.fixture()
def libfuzzer(tmp_path: Path) -> Iterator[LibFuzzerEngine]:
    """An initialized libFuzzer engine; cleaned up after the test."""
    engine = make_engine(LibFuzzerEngine, tmp_path)
    yield engine
    engine.cleanup()


@pytest.fixture()
def afl(tmp_path: Path) -> Iterator[AFLEngine]:
    """An initialized AFL engine whose tools are looked up in tmp_path/bin."""
    engine = make_engine(AFLEngine, tmp_path, engine_binary_path=str(tmp_path / "bin"))
    yield engine
    engine.cleanup()
