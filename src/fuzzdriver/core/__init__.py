"""Engine core: schema, configuration, errors, sessions, registry, service."""

from fuzzdriver.core.config import AppConfig, ConfigManager, EngineConfig
from fuzzdriver.core.exceptions import (
    ConfigError,
    EngineError,
    EngineNotFound,
    FuzzDriverError,
    LaunchFailure,
    MinimizationFailed,
    NoEngineAvailable,
    RegistryError,
    ReproductionFailed,
    UnsupportedOperation,
)
from fuzzdriver.core.schema import (
    CoverageInfo,
    CrashInfo,
    EngineIdentity,
    EngineResult,
    FileCoverageInfo,
    FuzzingStatistics,
    FuzzingTask,
    ReproductionResult,
    SessionStatus,
)

__all__ = [
    "AppConfig",
    "ConfigError",
    "ConfigManager",
    "CoverageInfo",
    "CrashInfo",
    "EngineConfig",
    "EngineError",
    "EngineIdentity",
    "EngineNotFound",
    "EngineResult",
    "FileCoverageInfo",
    "FuzzDriverError",
    "FuzzingStatistics",
    "FuzzingTask",
    "LaunchFailure",
    "MinimizationFailed",
    "NoEngineAvailable",
    "RegistryError",
    "ReproductionFailed",
    "SessionStatus",
    "UnsupportedOperation",
]
