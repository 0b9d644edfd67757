"""Protocol for fuzzing engines."""

from __future__ import annotations

from concurrent.futures import Future
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from fuzzdriver.core.config import EngineConfig
from fuzzdriver.core.schema import (
    CoverageInfo,
    EngineIdentity,
    FuzzingTask,
    ReproductionResult,
    SessionStatus,
)

if TYPE_CHECKING:
    from fuzzdriver.engines.base import FuzzingHandle


class FuzzingEngine(Protocol):
    """Protocol for fuzzing engine families (libFuzzer, AFL, ...)."""

    name: str
    in_process: bool

    def identity(self) -> EngineIdentity:
        """Return engine name and detected version."""
        ...

    def is_available(self) -> bool:
        """Probe the toolchain under a short timeout."""
        ...

    def initialize(self, config: EngineConfig) -> None:
        """Apply shared configuration; running sessions are unaffected."""
        ...

    def start_fuzzing(self, task: FuzzingTask) -> FuzzingHandle:
        """Start a fuzzing session in the background."""
        ...

    def stop_fuzzing(self, session_id: str) -> None:
        """Kill a session's process; unknown or finished ids are a no-op."""
        ...

    def pause_fuzzing(self, session_id: str) -> None:
        """Suspend a session, if the engine supports it."""
        ...

    def get_fuzzing_status(self, session_id: str) -> SessionStatus:
        """Current status, or ``SessionStatus.UNKNOWN`` for absent sessions."""
        ...

    def minimize_test_case(self, testcase: Path, target: Path, args: list[str] | None = None) -> Future[Path]:
        """Shrink a crashing input; resolves to the minimized file."""
        ...

    def reproduce_crash(
        self, testcase: Path, target: Path, args: list[str] | None = None
    ) -> Future[ReproductionResult]:
        """Run the target once against a crashing input."""
        ...

    def generate_coverage(self, testcase: Path, target: Path, args: list[str] | None = None) -> Future[CoverageInfo]:
        """Measure coverage of a single input."""
        ...

    def get_supported_platforms(self) -> list[str]:
        ...

    def get_supported_formats(self) -> list[str]:
        ...

    def cleanup(self) -> None:
        """Kill every session this engine still owns."""
        ...
