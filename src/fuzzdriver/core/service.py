"""Engine service: discovers available engines and dispatches work to them."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, TypeVar

from fuzzdriver.core.config import AppConfig, EngineConfig
from fuzzdriver.core.exceptions import EngineNotFound, NoEngineAvailable
from fuzzdriver.core.registry import ComponentRegistry
from fuzzdriver.core.schema import (
    CoverageInfo,
    EngineResult,
    FuzzingTask,
    ReproductionResult,
    SessionStatus,
)
from fuzzdriver.core.sessions import SessionRegistry
from fuzzdriver.engines import register_builtin_engines
from fuzzdriver.engines.afl import FILE_PLACEHOLDER
from fuzzdriver.engines.base import BaseEngine, FuzzingHandle

T = TypeVar("T")

log = logging.getLogger(__name__)

# In-process engines first: lower per-execution overhead.
ENGINE_PREFERENCE = ("libfuzzer", "afl")


class EngineService:
    """Front door for callers: owns the available engines and the session registry.

    Call :meth:`start` once before use and :meth:`shutdown` when done.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        registry: ComponentRegistry | None = None,
        sessions: SessionRegistry | None = None,
    ) -> None:
        self._config = config or AppConfig()
        if registry is None:
            registry = ComponentRegistry()
            register_builtin_engines(registry)
        self._registry = registry
        self._sessions = sessions or SessionRegistry(
            retention_seconds=self._config.engine.session_retention_seconds
        )
        self._engines: dict[str, BaseEngine] = {}

    def start(self) -> list[str]:
        """Probe every registered engine family and keep the available ones.

        Returns the names of the available engines.

        Raises:
            NoEngineAvailable: no registered engine passed its probe.
        """
        self._engines.clear()
        for name in self._registry.list_engines():
            engine = self._registry.get_engine(name, sessions=self._sessions)
            engine.initialize(self._config.engine)
            if engine.is_available():
                self._engines[name] = engine
                log.info("Engine available: %s (%s)", engine.display_name, engine.get_version())
            else:
                log.warning("Engine not available, skipping: %s", name)
        if not self._engines:
            raise NoEngineAvailable(
                f"No fuzzing engine available (tried: {', '.join(self._registry.list_engines()) or 'none'})"
            )
        return list(self._engines)

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def engine_config(self) -> EngineConfig:
        return self._config.engine

    def get_available_engines(self) -> list[str]:
        return list(self._engines)

    def is_engine_available(self, name: str) -> bool:
        return name.lower() in self._engines

    def get_engine(self, name: str) -> BaseEngine:
        """Return the available engine called *name* (case-insensitive)."""
        if not self._engines:
            raise NoEngineAvailable("No fuzzing engine available; was start() called?")
        engine = self._engines.get(name.lower())
        if engine is None:
            if self._registry.has_engine(name):
                raise EngineNotFound(f"Fuzzing engine not available on this host: {name}")
            raise EngineNotFound(f"Unknown fuzzing engine: {name}")
        return engine

    def select_default_engine(self, task: FuzzingTask | None = None) -> BaseEngine:
        """Engine named by *task*, else the configured default, else by preference."""
        if task is not None and task.engine_name:
            return self.get_engine(task.engine_name)
        if self._config.default_engine:
            return self.get_engine(self._config.default_engine)
        if not self._engines:
            raise NoEngineAvailable("No fuzzing engine available; was start() called?")
        for name in ENGINE_PREFERENCE:
            if name in self._engines:
                return self._engines[name]
        return next(iter(self._engines.values()))

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    def start_fuzzing(self, task: FuzzingTask) -> FuzzingHandle:
        engine = self.select_default_engine(task)
        handle = engine.start_fuzzing(task)
        log.info("Fuzzing session %s started on %s for %s", handle.session_id, engine.display_name, task.display_name)
        future = self._chain(handle.future, lambda r: self._log_result(r, task))
        return FuzzingHandle(handle.session_id, handle.engine_name, future)

    def stop_fuzzing(self, engine_name: str, session_id: str) -> None:
        self.get_engine(engine_name).stop_fuzzing(session_id)

    def get_fuzzing_status(self, engine_name: str, session_id: str) -> SessionStatus:
        return self.get_engine(engine_name).get_fuzzing_status(session_id)

    def minimize_test_case(
        self, engine_name: str, testcase: Path, target: Path, args: list[str] | None = None
    ) -> Future[Path]:
        engine = self.get_engine(engine_name)
        return self._chain(
            engine.minimize_test_case(testcase, target, args),
            lambda path: log.info("Minimized %s -> %s (%s)", Path(testcase).name, path, engine.display_name),
        )

    def reproduce_crash(
        self, engine_name: str, testcase: Path, target: Path, args: list[str] | None = None
    ) -> Future[ReproductionResult]:
        engine = self.get_engine(engine_name)
        return self._chain(
            engine.reproduce_crash(testcase, target, args),
            lambda r: log.info(
                "Reproduction of %s with %s: reproduced=%s type=%s exit=%d",
                Path(testcase).name, engine.display_name, r.reproduced, r.crash_type, r.exit_code,
            ),
        )

    def generate_coverage(
        self, engine_name: str, testcase: Path, target: Path, args: list[str] | None = None
    ) -> Future[CoverageInfo]:
        engine = self.get_engine(engine_name)
        return self._chain(
            engine.generate_coverage(testcase, target, args),
            lambda c: log.info(
                "Coverage of %s with %s: available=%s lines=%.2f%%",
                Path(testcase).name, engine.display_name, c.available, c.coverage_percentage,
            ),
        )

    def get_engine_recommendations(self, target_path: Path, args: list[str] | None = None) -> list[str]:
        """Available engines ordered by suitability for *target_path* run with *args*.

        A file placeholder among the arguments means the target reads its
        input from a file, so file-based engines come first.
        """
        wants_file = FILE_PLACEHOLDER in (args or [])
        ordered = sorted(
            self._engines.values(),
            key=lambda e: (e.in_process if wants_file else not e.in_process),
        )
        names = [e.name for e in ordered]
        log.debug("Recommendations for %s: %s", Path(target_path).name, names)
        return names

    # ------------------------------------------------------------------
    # Configuration and shutdown
    # ------------------------------------------------------------------

    def update_engine_config(self, config: EngineConfig) -> None:
        """Re-initialize every engine; running sessions keep their snapshot."""
        self._config = self._config.model_copy(update={"engine": config})
        for engine in self._engines.values():
            engine.initialize(config)

    def shutdown(self) -> None:
        for engine in self._engines.values():
            engine.cleanup()
        log.info("Engine service shut down")

    def _chain(self, source: Future[T], on_result: Callable[[T], None]) -> Future[T]:
        """Future that resolves after *source*, once completion has been logged."""
        target: Future[T] = Future()

        def _finalize(done: Future[T]) -> None:
            if done.cancelled():
                target.cancel()
                return
            error = done.exception()
            if error is not None:
                log.error("Engine operation failed: %s", error)
                target.set_exception(error)
                return
            result = done.result()
            try:
                on_result(result)
            finally:
                target.set_result(result)

        source.add_done_callback(_finalize)
        return target

    def _log_result(self, result: EngineResult, task: FuzzingTask) -> None:
        log.info(
            "Fuzzing %s on %s ended %s after %.1fs: %d crash(es), coverage %d",
            task.display_name, result.engine_name, result.status.value,
            result.duration_seconds, result.crash_count, result.coverage,
        )
