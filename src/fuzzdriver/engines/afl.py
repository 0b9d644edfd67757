"""AFL engine.

Runs ``afl-fuzz`` headless on a binary compiled with afl-clang-fast (or
equivalent), folds ``fuzzer_stats`` into the session statistics and
collects crash artifacts from the output directory.

Requires ``afl-fuzz`` (and ``afl-tmin`` for minimization) on PATH or in the
configured engine binary directory.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from fuzzdriver.core.config import EngineConfig
from fuzzdriver.core.schema import CrashInfo, FuzzingTask
from fuzzdriver.engines.base import (
    BaseEngine,
    LaunchPlan,
    Workspace,
    effective_memory_limit,
    effective_timeout,
    signal_name,
)
from fuzzdriver.parsing.output_parser import CrashDetected, SignalAccumulator, parse_line
from fuzzdriver.process.runner import CompletedRun, ProcessOutcome

log = logging.getLogger(__name__)

FILE_PLACEHOLDER = "@@"

AFL_ENV = {
    "AFL_NO_UI": "1",
    "AFL_SKIP_CPUFREQ": "1",
    "AFL_I_DONT_CARE_ABOUT_MISSING_CRASHES": "1",
}

_SIG_FIELD = re.compile(r"(?:^|,)sig:(\d+)")


def _with_input_file(args: list[str]) -> list[str]:
    return args if FILE_PLACEHOLDER in args else [*args, FILE_PLACEHOLDER]


class AFLEngine(BaseEngine):
    """FuzzingEngine implementation for AFL / AFL++."""

    name = "afl"
    display_name = "AFL"
    in_process = False
    supported_platforms = ("linux", "macos")
    supported_formats = ("binary", "file-based")

    def _required_executables(self, task: FuzzingTask) -> list[str | Path]:
        return [task.target_path, self._tool("afl-fuzz")]

    def _probe_command(self) -> list[str]:
        return [self._tool("afl-fuzz"), "-h"]

    def _probe_ok(self, run: CompletedRun) -> bool:
        # afl-fuzz -h exits non-zero on most versions but still prints usage.
        if run.outcome is not ProcessOutcome.EXITED:
            return False
        return run.exit_code == 0 or "afl-fuzz" in run.output

    def get_version(self) -> str:
        return "AFL++"

    def build_launch(self, task: FuzzingTask, workspace: Workspace, config: EngineConfig) -> LaunchPlan:
        if not any(workspace.corpus.iterdir()):
            (workspace.corpus / "seed_0").write_bytes(b"A")

        output_dir = workspace.root / "output"
        output_dir.mkdir(parents=True, exist_ok=True)

        cmd = [self._tool("afl-fuzz"), "-i", str(workspace.corpus), "-o", str(output_dir)]
        memory = effective_memory_limit(task, config)
        if memory > 0:
            cmd += ["-m", str(memory)]
        timeout = effective_timeout(task, config)
        if timeout > 0:
            cmd += ["-V", str(timeout)]
        cmd.append("-d")
        options = {**config.engine_options, **task.engine_options}
        for key, value in options.items():
            cmd += [f"-{key.lstrip('-')}", str(value)]
        cmd += ["--", str(task.target_path), *_with_input_file(list(task.arguments))]

        return LaunchPlan(command=cmd, env={**AFL_ENV, **task.environment})

    def collect_post_run(self, workspace: Workspace, signals: SignalAccumulator) -> None:
        stats_file = self._afl_dir(workspace) / "fuzzer_stats"
        if not stats_file.is_file():
            log.debug("No fuzzer_stats written in %s", workspace.root)
            return
        try:
            text = stats_file.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.warning("Failed to read %s: %s", stats_file, e)
            return
        for line in text.splitlines():
            for signal in parse_line(self.name, line):
                if not isinstance(signal, CrashDetected):
                    signals.add(signal)

    def collect_crash_files(self, workspace: Workspace) -> list[Path]:
        crash_dir = self._afl_dir(workspace) / "crashes"
        if not crash_dir.is_dir():
            return []
        return sorted(
            f for f in crash_dir.iterdir()
            if f.is_file() and f.name != "README.txt" and f.name.startswith("id:")
        )

    def describe_crashes(self, crash_files: list[Path], signals: SignalAccumulator) -> list[CrashInfo]:
        """One crash per saved artifact, typed by the signal in its ``sig:NN`` field.

        afl-fuzz does not echo target output, so the artifacts are the record.
        """
        crashes = []
        for path in crash_files:
            m = _SIG_FIELD.search(path.name)
            crash_type = signal_name(int(m.group(1))) if m else "crash"
            crashes.append(CrashInfo(crash_type=crash_type, location=path.name))
        return crashes

    def final_corpus_path(self, workspace: Workspace) -> Path:
        queue = self._afl_dir(workspace) / "queue"
        return queue if queue.is_dir() else workspace.corpus

    def _afl_dir(self, workspace: Workspace) -> Path:
        """AFL++ writes to ``<output>/default``; classic AFL directly to ``<output>``."""
        output_dir = workspace.root / "output"
        default = output_dir / "default"
        return default if default.is_dir() else output_dir

    def build_minimize(
        self, testcase: Path, target: Path, args: list[str], output: Path, config: EngineConfig
    ) -> LaunchPlan:
        return LaunchPlan(
            command=[
                self._tool("afl-tmin"),
                "-i", str(testcase),
                "-o", str(output),
                "--", str(target), *_with_input_file(args),
            ],
            env=dict(AFL_ENV),
        )

    def build_reproduce(self, testcase: Path, target: Path, args: list[str]) -> LaunchPlan:
        if FILE_PLACEHOLDER in args:
            argv = [str(testcase) if a == FILE_PLACEHOLDER else a for a in args]
        else:
            argv = [*args, str(testcase)]
        return LaunchPlan(command=[str(target), *argv])
