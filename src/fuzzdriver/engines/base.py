"""Behaviour shared by every engine family.

An engine drives its fuzzer as a child process: it allocates a workspace
per session, builds the command line, streams the output through the
engine's pattern set and turns the accumulated signals into an
:class:`EngineResult`. Subclasses supply the command lines, crash-artifact
conventions and toolchain probes.
"""

from __future__ import annotations

import logging
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from signal import Signals
from typing import Any, Callable, TypeVar

from fuzzdriver.core.config import EngineConfig
from fuzzdriver.core.exceptions import (
    ConfigError,
    EngineError,
    LaunchFailure,
    MinimizationFailed,
    ReproductionFailed,
    UnsupportedOperation,
)
from fuzzdriver.core.schema import (
    CoverageInfo,
    CrashInfo,
    EngineIdentity,
    EngineResult,
    FuzzingTask,
    ReproductionResult,
    SessionStatus,
)
from fuzzdriver.core.sessions import SessionRegistry
from fuzzdriver.parsing.output_parser import (
    CrashDetected,
    SignalAccumulator,
    extract_crash_address,
    extract_crash_type,
    extract_stack_trace,
)
from fuzzdriver.process.runner import CompletedRun, ProcessOutcome, ProcessRunner
from fuzzdriver.process.session_log import session_log_context
from fuzzdriver.utils import copy_corpus, count_files, is_launchable, resolve_tool

T = TypeVar("T")

log = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0

_OUTCOME_STATUS = {
    ProcessOutcome.EXITED: SessionStatus.COMPLETED,
    ProcessOutcome.TIMED_OUT: SessionStatus.TIMED_OUT,
    ProcessOutcome.CANCELLED: SessionStatus.STOPPED,
}


class FuzzingHandle:
    """Future-like handle for a fuzzing session started in the background."""

    def __init__(self, session_id: str, engine_name: str, future: Future[EngineResult]) -> None:
        self.session_id = session_id
        self.engine_name = engine_name
        self.future = future

    def result(self, timeout: float | None = None) -> EngineResult:
        return self.future.result(timeout)

    def done(self) -> bool:
        return self.future.done()

    def __repr__(self) -> str:
        return f"FuzzingHandle(engine={self.engine_name!r}, session_id={self.session_id!r})"


@dataclass(frozen=True)
class Workspace:
    """``<work-root>/<session-id>/{corpus,crashes}``, owned by one session."""

    root: Path
    corpus: Path
    crashes: Path

    @classmethod
    def allocate(cls, work_root: Path, session_id: str) -> Workspace:
        root = Path(work_root) / session_id
        ws = cls(root=root, corpus=root / "corpus", crashes=root / "crashes")
        ws.corpus.mkdir(parents=True, exist_ok=True)
        ws.crashes.mkdir(parents=True, exist_ok=True)
        return ws


@dataclass
class LaunchPlan:
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)


def effective_timeout(task: FuzzingTask, config: EngineConfig) -> int:
    return task.timeout_seconds or config.default_timeout_seconds


def effective_memory_limit(task: FuzzingTask, config: EngineConfig) -> int:
    return task.memory_limit_mb or config.max_memory_mb


class BaseEngine:
    """Common implementation of the :class:`FuzzingEngine` protocol."""

    name = ""
    display_name = ""
    in_process = False
    supported_platforms: tuple[str, ...] = ()
    supported_formats: tuple[str, ...] = ()
    success_exit_codes: tuple[int, ...] = (0,)

    def __init__(
        self,
        sessions: SessionRegistry | None = None,
        runner: ProcessRunner | None = None,
        **kwargs: object,
    ) -> None:
        self._sessions = sessions if sessions is not None else SessionRegistry()
        self._runner = runner or ProcessRunner()
        self._config: EngineConfig | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Identity and configuration
    # ------------------------------------------------------------------

    def identity(self) -> EngineIdentity:
        return EngineIdentity(name=self.display_name, version=self.get_version())

    def get_version(self) -> str:
        return "unknown"

    def initialize(self, config: EngineConfig) -> None:
        self._config = config.model_copy(deep=True)
        log.info("Initialized %s engine (work directory: %s)", self.display_name, config.work_directory)

    @property
    def config(self) -> EngineConfig:
        if self._config is None:
            raise ConfigError(f"{self.display_name} engine used before initialize()")
        return self._config

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    def is_available(self) -> bool:
        try:
            run = self._run_probe()
        except LaunchFailure as e:
            log.debug("%s not available: %s", self.display_name, e)
            return False
        return self._probe_ok(run)

    def _run_probe(self) -> CompletedRun:
        timeout = self._config.probe_timeout_seconds if self._config else DEFAULT_PROBE_TIMEOUT
        return self._runner.run(self._probe_command(), timeout=timeout)

    def _probe_command(self) -> list[str]:
        raise NotImplementedError

    def _probe_ok(self, run: CompletedRun) -> bool:
        return run.outcome is ProcessOutcome.EXITED and run.exit_code == 0

    def _tool(self, name: str) -> str:
        search_dir = self._config.engine_binary_path if self._config else None
        return resolve_tool(name, search_dir)

    def get_supported_platforms(self) -> list[str]:
        return list(self.supported_platforms)

    def get_supported_formats(self) -> list[str]:
        return list(self.supported_formats)

    # ------------------------------------------------------------------
    # Fuzzing sessions
    # ------------------------------------------------------------------

    def start_fuzzing(self, task: FuzzingTask) -> FuzzingHandle:
        """Validate *task*, register a session and run it in the background.

        Raises:
            ConfigError: the engine was never initialized.
            LaunchFailure: the target or engine executable cannot be run.
        """
        config = self.config
        for executable in self._required_executables(task):
            if not is_launchable(executable):
                raise LaunchFailure(f"Not an executable file: {executable}")

        session = self._sessions.create(self.name)
        log.info("Starting %s session %s for task: %s", self.display_name, session.session_id, task.display_name)
        future = self._submit(self._run_session, session.session_id, task, config)
        return FuzzingHandle(session.session_id, self.name, future)

    def _required_executables(self, task: FuzzingTask) -> list[str | Path]:
        return [task.target_path]

    def _run_session(self, session_id: str, task: FuzzingTask, config: EngineConfig) -> EngineResult:
        try:
            return self._execute(session_id, task, config)
        except OSError as e:
            log.error("Error during %s session %s: %s", self.display_name, session_id, e)
            raise EngineError(f"{self.display_name} session {session_id} failed: {e}") from e
        finally:
            # No-op unless the session is still live, i.e. we are failing.
            if self._sessions.finish(session_id, SessionStatus.FAILED):
                log.error("%s session %s failed", self.display_name, session_id)

    def _execute(self, session_id: str, task: FuzzingTask, config: EngineConfig) -> EngineResult:
        start_time = datetime.now()
        workspace = Workspace.allocate(Path(config.work_directory), session_id)
        if task.corpus_path is not None:
            corpus_source = self._resolve_corpus(task.corpus_path, config)
            copied = copy_corpus(corpus_source, workspace.corpus)
            log.info("Seeded session %s with %d corpus file(s) from %s", session_id, copied, corpus_source)

        plan = self.build_launch(task, workspace, config)
        if self._sessions.is_stop_requested(session_id):
            self._sessions.finish(session_id, SessionStatus.STOPPED)
            log.info("%s session %s stopped before launch", self.display_name, session_id)
            return EngineResult(
                session_id=session_id,
                engine_name=self.display_name,
                status=SessionStatus.STOPPED,
                start_time=start_time,
                end_time=datetime.now(),
                successful=False,
                error_message="Stopped before launch",
            )

        timeout = effective_timeout(task, config)
        deadline = timeout + config.deadline_grace_seconds if timeout > 0 else None
        max_crashes = task.max_crashes or config.max_crashes_per_session
        signals = SignalAccumulator(max_crashes)

        log.info("Executing %s command: %s", self.display_name, " ".join(plan.command))
        with session_log_context(workspace.root / "engine.log", session_id, verbose=config.debug_logging) as output_log:
            handle = self._runner.start(
                plan.command,
                cwd=task.working_directory or workspace.root,
                env=plan.env,
                timeout=deadline,
            )
            with handle:
                if not self._sessions.attach_process(session_id, handle):
                    handle.cancel()
                for line in handle.lines():
                    output_log.info(line)
                    log.debug("[%s] %s", session_id, line)
                    for signal in signals.feed(self.name, line):
                        if isinstance(signal, CrashDetected):
                            log.info("Crash detected in session %s: %s", session_id, signal.crash_type)
                exit_info = handle.wait()

        self.collect_post_run(workspace, signals)
        crash_files = self.collect_crash_files(workspace)
        if max_crashes:
            crash_files = crash_files[:max_crashes]
        minimized = self._minimize_all(crash_files, task, config) if task.enable_minimization else []

        status = _OUTCOME_STATUS[exit_info.outcome]
        final_corpus = self.final_corpus_path(workspace)
        result = EngineResult(
            session_id=session_id,
            engine_name=self.display_name,
            status=status,
            start_time=start_time,
            end_time=datetime.now(),
            executions=signals.executions,
            coverage=signals.coverage,
            crashes=self.describe_crashes(crash_files, signals),
            crash_files=crash_files,
            minimized_crash_files=minimized,
            exit_code=exit_info.exit_code,
            successful=status is SessionStatus.COMPLETED and exit_info.exit_code in self.success_exit_codes,
            error_message=_describe_outcome(exit_info.outcome, deadline),
            statistics=signals.statistics(),
            final_corpus_path=final_corpus,
            final_corpus_size=count_files(final_corpus),
        )
        self._sessions.finish(session_id, status)
        log.info(
            "%s session %s finished: status=%s exit=%d execs=%d cov=%d crashes=%d",
            self.display_name, session_id, status.value, exit_info.exit_code,
            result.executions, result.coverage, result.crash_count,
        )
        return result

    def _resolve_corpus(self, corpus_path: Path, config: EngineConfig) -> Path:
        path = Path(corpus_path)
        if not path.is_absolute() and not path.exists():
            return Path(config.corpus_storage_path) / path
        return path

    def build_launch(self, task: FuzzingTask, workspace: Workspace, config: EngineConfig) -> LaunchPlan:
        """Build the engine command line and environment for *task*."""
        raise NotImplementedError

    def collect_post_run(self, workspace: Workspace, signals: SignalAccumulator) -> None:
        """Fold any on-disk statistics written by the engine into *signals*."""

    def collect_crash_files(self, workspace: Workspace) -> list[Path]:
        """Crash artifacts (``crash-*``) written to the crash directory."""
        if not workspace.crashes.is_dir():
            return []
        return sorted(p for p in workspace.crashes.rglob("crash-*") if p.is_file())

    def describe_crashes(self, crash_files: list[Path], signals: SignalAccumulator) -> list[CrashInfo]:
        """Crash descriptors for the result; by default those parsed from the output."""
        return signals.crashes

    def final_corpus_path(self, workspace: Workspace) -> Path:
        return workspace.corpus

    def stop_fuzzing(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.engine_name != self.name:
            return
        process = self._sessions.request_stop(session_id)
        log.info("Stopping %s session: %s", self.display_name, session_id)
        if process is not None:
            process.cancel()

    def pause_fuzzing(self, session_id: str) -> None:
        raise UnsupportedOperation(f"{self.display_name} does not support pausing sessions")

    def get_fuzzing_status(self, session_id: str) -> SessionStatus:
        session = self._sessions.get(session_id)
        if session is None or session.engine_name != self.name:
            return SessionStatus.UNKNOWN
        return session.status

    # ------------------------------------------------------------------
    # One-shot verbs
    # ------------------------------------------------------------------

    def minimize_test_case(self, testcase: Path, target: Path, args: list[str] | None = None) -> Future[Path]:
        return self._submit(self._minimize, Path(testcase), Path(target), list(args or []), self.config)

    def _minimize(self, testcase: Path, target: Path, args: list[str], config: EngineConfig) -> Path:
        if not testcase.is_file():
            raise MinimizationFailed(f"Test case not found: {testcase}")
        work_dir = self._scratch_dir("minimize_", config)
        output = work_dir / f"minimized_{testcase.name}"
        plan = self.build_minimize(testcase, target, args, output, config)
        log.info("Minimizing %s with %s", testcase.name, self.display_name)
        run = self._runner.run(
            plan.command,
            cwd=work_dir,
            env=plan.env,
            timeout=config.minimize_timeout_seconds + config.deadline_grace_seconds,
        )
        if run.outcome is not ProcessOutcome.EXITED or run.exit_code != 0 or not output.is_file():
            raise MinimizationFailed(
                f"{self.display_name} minimization of {testcase.name} failed "
                f"({run.outcome.value}, exit code {run.exit_code})"
            )
        return output

    def build_minimize(
        self, testcase: Path, target: Path, args: list[str], output: Path, config: EngineConfig
    ) -> LaunchPlan:
        raise NotImplementedError

    def _minimize_all(self, crash_files: list[Path], task: FuzzingTask, config: EngineConfig) -> list[Path]:
        minimized: list[Path] = []
        for crash_file in crash_files:
            try:
                minimized.append(self._minimize(crash_file, task.target_path, list(task.arguments), config))
            except (MinimizationFailed, LaunchFailure) as e:
                log.warning("Skipping minimization of %s: %s", crash_file.name, e)
        return minimized

    def reproduce_crash(
        self, testcase: Path, target: Path, args: list[str] | None = None
    ) -> Future[ReproductionResult]:
        return self._submit(self._reproduce, Path(testcase), Path(target), list(args or []), self.config)

    def _reproduce(self, testcase: Path, target: Path, args: list[str], config: EngineConfig) -> ReproductionResult:
        if not testcase.is_file():
            raise ReproductionFailed(f"Test case not found: {testcase}")
        plan = self.build_reproduce(testcase, target, args)
        log.info("Reproducing crash with %s using %s", testcase.name, self.display_name)
        run = self._runner.run(plan.command, env=plan.env, timeout=config.reproduce_timeout_seconds)
        if run.outcome is ProcessOutcome.TIMED_OUT:
            raise ReproductionFailed(
                f"Reproduction of {testcase.name} did not finish within {config.reproduce_timeout_seconds}s"
            )
        signal_number = -run.exit_code if run.exit_code < 0 else None
        crash_type = extract_crash_type(self.name, run.output)
        if crash_type == "unknown" and signal_number is not None:
            crash_type = signal_name(signal_number)
        return ReproductionResult(
            reproduced=run.exit_code != 0,
            exit_code=run.exit_code,
            output=run.output,
            crash_type=crash_type,
            stack_trace=extract_stack_trace(run.output),
            signal=signal_number,
            crash_address=extract_crash_address(run.output),
        )

    def build_reproduce(self, testcase: Path, target: Path, args: list[str]) -> LaunchPlan:
        return LaunchPlan(command=[str(target), str(testcase), *args])

    def generate_coverage(self, testcase: Path, target: Path, args: list[str] | None = None) -> Future[CoverageInfo]:
        return self._submit(self._coverage, Path(testcase), Path(target), list(args or []), self.config)

    def _coverage(self, testcase: Path, target: Path, args: list[str], config: EngineConfig) -> CoverageInfo:
        log.info("%s cannot measure coverage; returning an empty report", self.display_name)
        return CoverageInfo.unavailable()

    def _scratch_dir(self, prefix: str, config: EngineConfig) -> Path:
        work_root = Path(config.work_directory)
        work_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=work_root))

    # ------------------------------------------------------------------
    # Workers and shutdown
    # ------------------------------------------------------------------

    def _submit(self, fn: Callable[..., T], *args: Any) -> Future[T]:
        with self._executor_lock:
            if self._executor is None:
                workers = self._config.parallel_processes if self._config else 1
                self._executor = ThreadPoolExecutor(
                    max_workers=max(1, workers),
                    thread_name_prefix=f"{self.name}-worker",
                )
            return self._executor.submit(fn, *args)

    def cleanup(self) -> None:
        """Kill every session still owned by this engine and forget them."""
        processes = self._sessions.clear(self.name)
        for process in processes:
            process.cancel()
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        log.info("%s engine cleaned up (%d live process(es) killed)", self.display_name, len(processes))


def _describe_outcome(outcome: ProcessOutcome, deadline: float | None) -> str:
    if outcome is ProcessOutcome.TIMED_OUT:
        return f"Killed after exceeding the {deadline:.0f}s deadline"
    if outcome is ProcessOutcome.CANCELLED:
        return "Stopped on request"
    return ""


def signal_name(number: int) -> str:
    """``SIGSEGV`` for 11; unknown numbers are spelled out."""
    try:
        return Signals(number).name
    except ValueError:
        return f"signal {number}"
