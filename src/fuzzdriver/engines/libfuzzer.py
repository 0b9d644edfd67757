"""libFuzzer engine.

Runs instrumented in-process fuzz targets with libFuzzer flags, collects
``crash-*`` artifacts, and measures coverage via llvm-profdata / llvm-cov.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from fuzzdriver.core.config import EngineConfig
from fuzzdriver.core.exceptions import LaunchFailure
from fuzzdriver.core.schema import CoverageInfo, FileCoverageInfo, FuzzingTask
from fuzzdriver.engines.base import (
    BaseEngine,
    LaunchPlan,
    Workspace,
    effective_memory_limit,
    effective_timeout,
)
from fuzzdriver.process.runner import ProcessOutcome

log = logging.getLogger(__name__)

_CLANG_VERSION_RE = re.compile(r"clang version (\S+)")


class LibFuzzerEngine(BaseEngine):
    """FuzzingEngine implementation for LLVM libFuzzer."""

    name = "libfuzzer"
    display_name = "libFuzzer"
    in_process = True
    supported_platforms = ("linux", "macos", "windows")
    supported_formats = ("binary", "text", "structured")
    # 0 = normal exit, 1 = crash found
    success_exit_codes = (0, 1)

    def _probe_command(self) -> list[str]:
        return [self._tool("clang"), "--version"]

    def get_version(self) -> str:
        try:
            run = self._run_probe()
        except LaunchFailure:
            return "unknown"
        m = _CLANG_VERSION_RE.search(run.output)
        return m.group(1) if m else "unknown"

    def build_launch(self, task: FuzzingTask, workspace: Workspace, config: EngineConfig) -> LaunchPlan:
        cmd = [
            str(task.target_path),
            str(workspace.corpus),
            f"-artifact_prefix={workspace.crashes}/",
        ]
        timeout = effective_timeout(task, config)
        if timeout > 0:
            cmd.append(f"-max_total_time={timeout}")
        cmd += ["-print_final_stats=1", "-print_corpus_stats=1"]
        memory = effective_memory_limit(task, config)
        if memory > 0:
            cmd.append(f"-rss_limit_mb={memory}")
        options = {**config.engine_options, **task.engine_options}
        cmd += [f"-{key.lstrip('-')}={value}" for key, value in options.items()]
        cmd += task.arguments

        env = dict(task.environment)
        if task.enable_coverage and config.enable_coverage:
            env["LLVM_PROFILE_FILE"] = str(workspace.root / "default.profraw")
        return LaunchPlan(command=cmd, env=env)

    def build_minimize(
        self, testcase: Path, target: Path, args: list[str], output: Path, config: EngineConfig
    ) -> LaunchPlan:
        return LaunchPlan(
            command=[
                str(target),
                "-minimize_crash=1",
                f"-max_total_time={config.minimize_timeout_seconds}",
                f"-exact_artifact_path={output}",
                str(testcase),
                *args,
            ]
        )

    def _coverage(self, testcase: Path, target: Path, args: list[str], config: EngineConfig) -> CoverageInfo:
        """Run *target* once on *testcase* and summarize the resulting profile.

        Any missing piece (uninstrumented binary, llvm tools not installed)
        degrades to ``CoverageInfo.unavailable()``.
        """
        work_dir = self._scratch_dir("coverage_", config)
        profraw = work_dir / "default.profraw"
        profdata = work_dir / "default.profdata"
        try:
            self._runner.run(
                [str(target), str(testcase), *args],
                cwd=work_dir,
                env={"LLVM_PROFILE_FILE": str(profraw)},
                timeout=config.reproduce_timeout_seconds,
            )
            if not profraw.exists():
                log.warning("No profile written by %s; is it built with -fprofile-instr-generate?", target.name)
                return CoverageInfo.unavailable()

            merge = self._runner.run(
                [self._tool("llvm-profdata"), "merge", "-sparse", str(profraw), "-o", str(profdata)],
                timeout=60,
            )
            if merge.outcome is not ProcessOutcome.EXITED or merge.exit_code != 0:
                log.warning("llvm-profdata merge failed: %s", merge.output.strip())
                return CoverageInfo.unavailable()

            export = self._runner.run(
                [self._tool("llvm-cov"), "export", "-summary-only", f"-instr-profile={profdata}", str(target)],
                timeout=60,
            )
        except LaunchFailure as e:
            log.warning("Coverage collection unavailable: %s", e)
            return CoverageInfo.unavailable()

        if export.outcome is not ProcessOutcome.EXITED or export.exit_code != 0:
            log.warning("llvm-cov export failed: %s", export.output.strip())
            return CoverageInfo.unavailable()
        return parse_llvm_cov_export(export.output)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_llvm_cov_export(output: str) -> CoverageInfo:
    """Build a CoverageInfo from ``llvm-cov export -summary-only`` JSON.

    Warnings printed ahead of the JSON document are skipped.
    """
    start = output.find("{")
    if start < 0:
        return CoverageInfo.unavailable()
    try:
        data, _ = json.JSONDecoder().raw_decode(output[start:])
    except ValueError as e:
        log.warning("Coverage parsing failed: %s", e)
        return CoverageInfo.unavailable()

    exports = data.get("data") or [{}]
    totals: dict[str, Any] = exports[0].get("totals", {})
    files: dict[str, FileCoverageInfo] = {}
    for entry in exports[0].get("files", []):
        filename = entry.get("filename")
        if not filename:
            continue
        lines = entry.get("summary", {}).get("lines", {})
        files[filename] = FileCoverageInfo(
            filename=filename,
            total_lines=lines.get("count", 0),
            covered_lines=lines.get("covered", 0),
        )

    return CoverageInfo(
        available=True,
        total_lines=totals.get("lines", {}).get("count", 0),
        covered_lines=totals.get("lines", {}).get("covered", 0),
        total_functions=totals.get("functions", {}).get("count", 0),
        covered_functions=totals.get("functions", {}).get("covered", 0),
        total_branches=totals.get("branches", {}).get("count", 0),
        covered_branches=totals.get("branches", {}).get("covered", 0),
        file_coverage=files,
        raw_coverage_data=output[start:],
    )
