"""Health checks for engine toolchains and the work directory."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path

from fuzzdriver.core.config import ConfigManager
from fuzzdriver.core.registry import ComponentRegistry
from fuzzdriver.engines import register_builtin_engines

_ENGINE_SUGGESTIONS = {
    "libfuzzer": "Install LLVM/clang (e.g. apt install clang llvm), or set FUZZDRIVER_ENGINE_BIN to its bin/ directory.",
    "afl": "Install AFL++ (e.g. apt install afl++), or set FUZZDRIVER_ENGINE_BIN to the directory holding afl-fuzz.",
}


@dataclass
class HealthCheckResult:
    """Result of a single health check."""

    name: str
    ok: bool
    message: str = ""
    suggestion: str = ""


class HealthChecker:
    """Run health checks for fuzzing engines and the configured work directory."""

    def __init__(
        self,
        config: ConfigManager | None = None,
        registry: ComponentRegistry | None = None,
    ) -> None:
        self._config = config or ConfigManager()
        if registry is None:
            registry = ComponentRegistry()
            register_builtin_engines(registry)
        self._registry = registry

    def check_engines(self) -> list[HealthCheckResult]:
        """Probe every registered engine family (one result per engine)."""
        results: list[HealthCheckResult] = []
        for name in self._registry.list_engines():
            engine = self._registry.get_engine(name)
            engine.initialize(self._config.config.engine)
            if engine.is_available():
                results.append(HealthCheckResult(
                    name=name,
                    ok=True,
                    message=f"{engine.display_name} {engine.get_version()}",
                ))
            else:
                results.append(HealthCheckResult(
                    name=name,
                    ok=False,
                    message=f"{engine.display_name} toolchain not found.",
                    suggestion=_ENGINE_SUGGESTIONS.get(name, ""),
                ))
        return results

    def check_work_directory(self) -> HealthCheckResult:
        """Check that the work directory exists (or can be created) and is writable."""
        work_dir = Path(self._config.config.engine.work_directory)
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=work_dir):
                pass
        except OSError as e:
            return HealthCheckResult(
                name="work_directory",
                ok=False,
                message=f"{work_dir} is not writable: {e}",
                suggestion="Set FUZZDRIVER_WORK_DIR (or engine.work_directory in config/default.yaml) to a writable path.",
            )
        return HealthCheckResult(name="work_directory", ok=True, message=str(work_dir))

    def check_all(self, *, skip_engines: bool = False) -> list[HealthCheckResult]:
        """Run all enabled checks."""
        results = [self.check_work_directory()]
        if not skip_engines:
            results.extend(self.check_engines())
        return results
