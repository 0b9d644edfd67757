"""Custom exception hierarchy for fuzzdriver."""

from __future__ import annotations


class FuzzDriverError(Exception):
    """Base exception for fuzzdriver."""

    pass


class ConfigError(FuzzDriverError):
    """Raised when configuration loading or validation fails."""

    pass


class RegistryError(FuzzDriverError):
    """Raised when a component is not found or registration fails."""

    pass


class EngineNotFound(RegistryError):
    """Raised when an unknown or unregistered engine name is requested."""

    pass


class NoEngineAvailable(RegistryError):
    """Raised when no fuzzing engine passed its availability probe."""

    pass


class EngineError(FuzzDriverError):
    """Base class for failures raised by an engine verb."""

    pass


class LaunchFailure(EngineError):
    """Raised when an executable is missing or cannot be started."""

    pass


class MinimizationFailed(EngineError):
    """Raised when minimization exits non-zero or produces no artifact."""

    pass


class ReproductionFailed(EngineError):
    """Raised when a reproduction attempt cannot be carried out."""

    pass


class UnsupportedOperation(EngineError):
    """Raised when an engine lacks a capability (e.g. pausing a session)."""

    pass
