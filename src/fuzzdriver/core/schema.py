"""Pydantic models and data structures for the engine core."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Lifecycle state of a fuzzing session.

    ``UNKNOWN`` is never stored; it is what status queries answer for a
    session id that is not (or no longer) tracked.
    """

    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.TIMED_OUT,
        SessionStatus.STOPPED,
    }
)


class FuzzingTask(BaseModel):
    """A fuzzing assignment already resolved to this host.

    Zero values for ``timeout_seconds``, ``memory_limit_mb`` and
    ``max_crashes`` mean "use the configured default".
    """

    model_config = ConfigDict(frozen=True)

    task_id: str = ""
    target_name: str = ""
    target_path: Path
    arguments: list[str] = Field(default_factory=list)
    corpus_path: Path | None = None
    timeout_seconds: int = 0
    memory_limit_mb: int = 0
    engine_name: str = ""
    engine_options: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
    working_directory: Path | None = None
    enable_coverage: bool = False
    enable_minimization: bool = False
    max_crashes: int = 0

    @property
    def display_name(self) -> str:
        return self.target_name or self.task_id or self.target_path.name


class CrashInfo(BaseModel):
    """A crash reported by an engine while it was running."""

    model_config = ConfigDict(frozen=True)

    crash_type: str
    location: str = ""

    def describe(self) -> str:
        if self.location:
            return f"{self.crash_type} at {self.location}"
        return self.crash_type


class FuzzingStatistics(BaseModel):
    """Aggregate counters reported by the engine at the end of a run."""

    model_config = ConfigDict(frozen=True)

    total_execs: int = 0
    crashes_found: int = 0
    timeouts_found: int = 0
    ooms: int = 0
    execs_per_second: float = 0.0
    peak_memory_mb: int = 0
    corpus_size: int = 0
    features_found: int = 0


class EngineResult(BaseModel):
    """Outcome of one fuzzing session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    engine_name: str
    status: SessionStatus = SessionStatus.COMPLETED
    start_time: datetime | None = None
    end_time: datetime | None = None
    executions: int = 0
    coverage: int = 0
    crashes: list[CrashInfo] = Field(default_factory=list)
    crash_files: list[Path] = Field(default_factory=list)
    minimized_crash_files: list[Path] = Field(default_factory=list)
    exit_code: int | None = None
    successful: bool = True
    error_message: str = ""
    statistics: FuzzingStatistics = Field(default_factory=FuzzingStatistics)
    final_corpus_path: Path | None = None
    final_corpus_size: int = 0

    @property
    def crash_count(self) -> int:
        return len(self.crashes)

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class ReproductionResult(BaseModel):
    """Result of running a target once against a crashing input."""

    model_config = ConfigDict(frozen=True)

    reproduced: bool
    exit_code: int
    output: str = ""
    crash_type: str = "unknown"
    stack_trace: str = ""
    signal: int | None = None
    crash_address: str = ""


class FileCoverageInfo(BaseModel):
    """Line coverage for a single source file."""

    model_config = ConfigDict(frozen=True)

    filename: str
    total_lines: int = 0
    covered_lines: int = 0

    @property
    def coverage_percentage(self) -> float:
        return _percent(self.covered_lines, self.total_lines)


class CoverageInfo(BaseModel):
    """Coverage measured for a test case.

    ``available`` is False when the engine or binary cannot produce
    coverage; all counters are then zero.
    """

    model_config = ConfigDict(frozen=True)

    available: bool = True
    total_lines: int = 0
    covered_lines: int = 0
    total_functions: int = 0
    covered_functions: int = 0
    total_branches: int = 0
    covered_branches: int = 0
    file_coverage: dict[str, FileCoverageInfo] = Field(default_factory=dict)
    raw_coverage_data: str | None = None

    @classmethod
    def unavailable(cls) -> CoverageInfo:
        return cls(available=False)

    @property
    def coverage_percentage(self) -> float:
        return _percent(self.covered_lines, self.total_lines)

    @property
    def function_coverage_percentage(self) -> float:
        return _percent(self.covered_functions, self.total_functions)

    @property
    def branch_coverage_percentage(self) -> float:
        return _percent(self.covered_branches, self.total_branches)


class EngineIdentity(BaseModel):
    """Name and version of an engine family."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str = "unknown"


def _percent(covered: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(100.0 * covered / total, 2)
