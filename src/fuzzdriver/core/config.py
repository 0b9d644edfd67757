"""Engine configuration: ``config/default.yaml`` overlaid with ``.env`` keys."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError

from fuzzdriver.core.exceptions import ConfigError

log = logging.getLogger(__name__)

_ROOT_MARKERS = ("pyproject.toml", "config/default.yaml")


def _find_project_root(start: Path | None = None) -> Path:
    """Nearest ancestor of *start* (default: cwd) holding a root marker."""
    origin = Path(start or Path.cwd()).resolve()
    for candidate in (origin, *origin.parents):
        if any((candidate / marker).exists() for marker in _ROOT_MARKERS):
            return candidate
    return origin


class EngineConfig(BaseModel):
    """Configuration shared by every fuzzing engine."""

    work_directory: str = "/tmp/fuzzdriver/fuzzing"
    max_memory_mb: int = 2048
    default_timeout_seconds: int = 3600
    # Hard kill happens at timeout + grace; the engine's own time limit runs out first.
    deadline_grace_seconds: float = 10.0
    parallel_processes: int = 8
    engine_options: dict[str, str] = Field(default_factory=dict)
    engine_binary_path: str | None = None
    debug_logging: bool = False
    max_crashes_per_session: int = 100
    enable_coverage: bool = True
    corpus_storage_path: str = "/tmp/fuzzdriver/corpus"
    minimize_timeout_seconds: int = 600
    reproduce_timeout_seconds: int = 60
    probe_timeout_seconds: float = 5.0
    session_retention_seconds: float = 3600.0


class AppConfig(BaseModel):
    """Top-level settings: engine preference plus the engine section."""

    default_engine: str = ""
    engine: EngineConfig = Field(default_factory=EngineConfig)


class ConfigManager:
    """Builds an :class:`AppConfig` from the YAML file and ``.env`` overrides.

    ``.env`` is read with python-dotenv into a private dict; the process
    environment is never consulted or modified.
    """

    # Environment key -> (section, field). Section None means top level.
    ENV_MAPPING: dict[str, tuple[str | None, str]] = {
        "FUZZDRIVER_ENGINE": (None, "default_engine"),
        "FUZZDRIVER_WORK_DIR": ("engine", "work_directory"),
        "FUZZDRIVER_CORPUS_DIR": ("engine", "corpus_storage_path"),
        "FUZZDRIVER_ENGINE_BIN": ("engine", "engine_binary_path"),
        "FUZZDRIVER_MAX_MEMORY_MB": ("engine", "max_memory_mb"),
        "FUZZDRIVER_DEFAULT_TIMEOUT": ("engine", "default_timeout_seconds"),
    }

    def __init__(
        self,
        project_root: Path | None = None,
        env_path: Path | None = None,
        config_path: Path | None = None,
    ) -> None:
        self._root = _find_project_root() if project_root is None else Path(project_root).resolve()
        self._env_path = self._root / ".env" if env_path is None else Path(env_path)
        self._config_path = self._root / "config" / "default.yaml" if config_path is None else Path(config_path)
        self._config: AppConfig | None = None
        self._env: dict[str, str] = {}

    def load_env(self) -> dict[str, str]:
        """Read ``.env``; keys without a value are dropped."""
        try:
            values = dotenv_values(self._env_path)
        except OSError as exc:
            log.warning("Cannot read env file %s: %s", self._env_path, exc)
            values = {}
        self._env = {key: value for key, value in values.items() if value is not None}
        return self._env

    def load_yaml(self) -> dict[str, Any]:
        """Parsed YAML mapping, or ``{}`` when the file is absent or unusable."""
        path = self._config_path
        if not path.is_file():
            return {}
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as exc:
            log.warning("Cannot read config file %s: %s", path, exc)
            return {}
        except yaml.YAMLError as exc:
            log.warning("Malformed YAML in %s: %s", path, exc)
            return {}
        if data is None:
            return {}
        if not isinstance(data, dict):
            log.warning("Ignoring config file %s: top level is not a mapping", path)
            return {}
        return data

    def _overrides(self, env: dict[str, str]) -> tuple[dict[str, Any], dict[str, Any]]:
        top: dict[str, Any] = {}
        engine: dict[str, Any] = {}
        for key, (section, field) in self.ENV_MAPPING.items():
            value = env.get(key)
            if value:
                (top if section is None else engine)[field] = value
        return top, engine

    def load(self) -> AppConfig:
        """(Re)load both sources; env keys win over YAML values."""
        raw = self.load_yaml()
        env_top, env_engine = self._overrides(self.load_env())

        top: dict[str, Any] = {}
        if raw.get("default_engine"):
            top["default_engine"] = raw["default_engine"]
        top.update(env_top)
        engine = {**(raw.get("engine") or {}), **env_engine}

        try:
            self._config = AppConfig(engine=EngineConfig(**engine), **top)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration in {self._config_path}: {exc}") from exc
        return self._config

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            return self.load()
        return self._config

    @property
    def env(self) -> dict[str, str]:
        if not self._env and self._env_path.exists():
            self.load_env()
        return self._env

    @property
    def project_root(self) -> Path:
        return self._root
