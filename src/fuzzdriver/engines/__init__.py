"""Built-in fuzzing engines."""

from fuzzdriver.engines.afl import AFLEngine
from fuzzdriver.engines.base import BaseEngine, FuzzingHandle, LaunchPlan, Workspace
from fuzzdriver.engines.libfuzzer import LibFuzzerEngine


def register_builtin_engines(registry) -> None:
    """Register built-in engines on the given registry, in preference order."""
    registry.register_engine("libfuzzer", LibFuzzerEngine)
    registry.register_engine("afl", AFLEngine)


__all__ = [
    "AFLEngine",
    "BaseEngine",
    "FuzzingHandle",
    "LaunchPlan",
    "LibFuzzerEngine",
    "Workspace",
    "register_builtin_engines",
]
