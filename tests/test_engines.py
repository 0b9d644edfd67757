"""Tests for the libFuzzer and AFL engines driving stub executables."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from fuzzdriver.core.config import EngineConfig
from fuzzdriver.core.exceptions import (
    ConfigError,
    LaunchFailure,
    MinimizationFailed,
    ReproductionFailed,
    UnsupportedOperation,
)
from fuzzdriver.core.schema import CoverageInfo, SessionStatus
from fuzzdriver.engines.afl import AFLEngine
from fuzzdriver.engines.base import Workspace
from fuzzdriver.engines.libfuzzer import LibFuzzerEngine, parse_llvm_cov_export
from fuzzdriver.parsing.output_parser import SignalAccumulator
from fuzzdriver.process.runner import CompletedRun, ProcessOutcome

from _helpers import (
    ASAN_TARGET,
    CLEAN_TARGET,
    HANGING_TARGET,
    make_engine_config,
    make_task,
    process_gone,
    wait_for_status,
    write_script,
)


# ---------------------------------------------------------------------------
# libFuzzer sessions
# ---------------------------------------------------------------------------


class TestLibFuzzerSessions:
    def test_clean_run_reports_coverage_and_executions(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)

        handle = libfuzzer.start_fuzzing(make_task(target))
        result = handle.result(timeout=20)

        assert result.session_id == handle.session_id
        assert result.engine_name == "libFuzzer"
        assert result.status is SessionStatus.COMPLETED
        assert result.exit_code == 0
        assert result.successful is True
        assert result.coverage == 120
        assert result.executions == 50
        assert result.crashes == []
        assert result.statistics.total_execs == 50
        assert result.statistics.peak_memory_mb == 30
        assert libfuzzer.get_fuzzing_status(handle.session_id) is SessionStatus.COMPLETED

    def test_sanitizer_crash_is_reported(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_asan", ASAN_TARGET)

        result = libfuzzer.start_fuzzing(make_task(target)).result(timeout=20)

        assert result.status is SessionStatus.COMPLETED
        assert result.exit_code == 1
        assert result.successful is True  # exit 1 = crash found
        assert result.crash_count == 1
        assert result.crashes[0].crash_type == "heap-buffer-overflow"
        assert result.crashes[0].location == "/src/lib/parse.c:42:7 in parse_header"
        assert [p.name for p in result.crash_files] == ["crash-deadbeef"]
        assert result.crash_files[0].read_bytes() == b"boom"

    def test_deadline_kills_hanging_target(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_hang", HANGING_TARGET)

        start = time.monotonic()
        result = libfuzzer.start_fuzzing(make_task(target, timeout_seconds=1)).result(timeout=20)
        elapsed = time.monotonic() - start

        assert result.status is SessionStatus.TIMED_OUT
        assert result.successful is False
        assert result.executions == 1
        assert elapsed < 10

    def test_deadline_includes_grace(self, tmp_path: Path) -> None:
        engine = LibFuzzerEngine()
        engine.initialize(make_engine_config(tmp_path, deadline_grace_seconds=1.5))
        target = write_script(tmp_path / "fuzz_hang", HANGING_TARGET)

        start = time.monotonic()
        result = engine.start_fuzzing(make_task(target, timeout_seconds=1)).result(timeout=20)
        elapsed = time.monotonic() - start
        engine.cleanup()

        assert result.status is SessionStatus.TIMED_OUT
        assert 2.5 <= elapsed < 10

    def test_stop_running_session(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_hang", HANGING_TARGET)
        handle = libfuzzer.start_fuzzing(make_task(target, timeout_seconds=60))

        assert wait_for_status(libfuzzer, handle.session_id, SessionStatus.RUNNING)
        libfuzzer.stop_fuzzing(handle.session_id)
        result = handle.result(timeout=20)

        assert result.status is SessionStatus.STOPPED
        assert libfuzzer.get_fuzzing_status(handle.session_id) is SessionStatus.STOPPED

    def test_deadline_kills_children_outliving_target(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        pid_file = tmp_path / "child.pid"
        target = write_script(
            tmp_path / "fuzz_forks",
            'echo "#1	INITED cov: 5 ft: 5 corp: 1/1b exec/s: 0 rss: 20Mb"\n'
            f'sleep 30 &\necho $! > "{pid_file}"\nexit 0',
        )

        start = time.monotonic()
        result = libfuzzer.start_fuzzing(make_task(target, timeout_seconds=1)).result(timeout=20)
        elapsed = time.monotonic() - start

        assert elapsed < 10
        assert result.status is SessionStatus.TIMED_OUT
        assert result.coverage == 5
        assert process_gone(int(pid_file.read_text()))

    def test_timed_out_target_is_not_left_running(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        pid_file = tmp_path / "target.pid"
        target = write_script(tmp_path / "fuzz_hang", f'echo $$ > "{pid_file}"\n' + HANGING_TARGET)

        result = libfuzzer.start_fuzzing(make_task(target, timeout_seconds=1)).result(timeout=20)

        assert result.status is SessionStatus.TIMED_OUT
        assert process_gone(int(pid_file.read_text()))

    def test_stopping_one_session_leaves_the_other_running(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        hang = write_script(tmp_path / "fuzz_hang", HANGING_TARGET)
        slow = write_script(
            tmp_path / "fuzz_slow",
            'echo "#10	NEW    cov: 7 ft: 7 corp: 2/2b exec/s: 0 rss: 20Mb"\n'
            "sleep 2\n"
            'echo "#20	NEW    cov: 9 ft: 9 corp: 3/3b exec/s: 0 rss: 20Mb"\n'
            "exit 0",
        )
        stopped = libfuzzer.start_fuzzing(make_task(hang, timeout_seconds=60))
        survivor = libfuzzer.start_fuzzing(make_task(slow, timeout_seconds=60))
        assert wait_for_status(libfuzzer, stopped.session_id, SessionStatus.RUNNING)
        assert wait_for_status(libfuzzer, survivor.session_id, SessionStatus.RUNNING)

        libfuzzer.stop_fuzzing(stopped.session_id)

        assert stopped.result(timeout=20).status is SessionStatus.STOPPED
        result = survivor.result(timeout=20)
        assert result.status is SessionStatus.COMPLETED
        assert result.executions == 20
        assert result.coverage == 9
        assert libfuzzer.get_fuzzing_status(survivor.session_id) is SessionStatus.COMPLETED

    def test_crashes_kept_in_emission_order(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(
            tmp_path / "fuzz_two_crashes",
            'echo "SUMMARY: AddressSanitizer: heap-use-after-free /src/a.c:3:5 in free_node"\n'
            'echo "#5	NEW    cov: 11 ft: 11 corp: 2/2b exec/s: 0 rss: 20Mb"\n'
            'echo "SUMMARY: AddressSanitizer: stack-overflow /src/b.c:7:1 in recurse"\n'
            "exit 1",
        )

        result = libfuzzer.start_fuzzing(make_task(target)).result(timeout=20)

        assert [c.crash_type for c in result.crashes] == ["heap-use-after-free", "stack-overflow"]
        assert [c.location for c in result.crashes] == [
            "/src/a.c:3:5 in free_node",
            "/src/b.c:7:1 in recurse",
        ]

    def test_stop_before_launch_prevents_spawn(self, tmp_path: Path) -> None:
        class _StopDuringSetup(LibFuzzerEngine):
            def build_launch(self, task, workspace, config):
                self.stop_fuzzing(workspace.root.name)
                return super().build_launch(task, workspace, config)

        engine = _StopDuringSetup()
        engine.initialize(make_engine_config(tmp_path))
        target = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)

        with patch("subprocess.Popen") as popen:
            result = engine.start_fuzzing(make_task(target)).result(timeout=20)

        popen.assert_not_called()
        assert result.status is SessionStatus.STOPPED
        assert result.exit_code is None
        assert result.executions == 0

    def test_corpus_is_copied_not_modified(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        corpus = tmp_path / "seeds"
        (corpus / "nested").mkdir(parents=True)
        (corpus / "a.bin").write_bytes(b"\x00\x01")
        (corpus / "nested" / "b.txt").write_text("hello")
        target = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)

        result = libfuzzer.start_fuzzing(make_task(target, corpus_path=corpus)).result(timeout=20)

        copied = result.final_corpus_path
        assert copied is not None and copied != corpus
        assert (copied / "a.bin").read_bytes() == b"\x00\x01"
        assert (copied / "b.txt").read_text() == "hello"
        assert result.final_corpus_size == 2
        assert sorted(p.name for p in corpus.rglob("*") if p.is_file()) == ["a.bin", "b.txt"]

    def test_relative_corpus_resolves_against_storage_root(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        stored = tmp_path / "corpus_store" / "png"
        stored.mkdir(parents=True)
        (stored / "seed.png").write_bytes(b"\x89PNG")
        target = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)

        result = libfuzzer.start_fuzzing(make_task(target, corpus_path=Path("png"))).result(timeout=20)

        assert result.final_corpus_size == 1

    def test_crash_cutoff_caps_descriptors_and_files(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(
            tmp_path / "fuzz_many",
            """
prefix="${2#-artifact_prefix=}"
for i in 1 2 3 4 5; do
  printf "$i" > "${prefix}crash-$i"
  echo "SUMMARY: AddressSanitizer: SEGV /src/f.c:$i in f"
done
exit 1
""",
        )

        result = libfuzzer.start_fuzzing(make_task(target, max_crashes=2)).result(timeout=20)

        assert result.crash_count == 2
        assert [c.location for c in result.crashes] == ["/src/f.c:1 in f", "/src/f.c:2 in f"]
        assert len(result.crash_files) == 2
        assert result.statistics.crashes_found == 5

    def test_engine_output_written_to_session_log(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)

        handle = libfuzzer.start_fuzzing(make_task(target))
        handle.result(timeout=20)

        log_file = tmp_path / "work" / handle.session_id / "engine.log"
        assert log_file.exists()
        assert "Done 50 runs" in log_file.read_text(encoding="utf-8")

    def test_minimization_after_run(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(
            tmp_path / "fuzz_min",
            """
for a in "$@"; do
  case "$a" in
    -minimize_crash=1) minimizing=1 ;;
    -exact_artifact_path=*) out="${a#-exact_artifact_path=}" ;;
    -artifact_prefix=*) prefix="${a#-artifact_prefix=}" ;;
  esac
done
if [ -n "$minimizing" ]; then
  printf 'x' > "$out"
  exit 0
fi
printf 'xxxxxxxx' > "${prefix}crash-1"
echo "SUMMARY: libFuzzer: deadly signal"
exit 1
""",
        )

        result = libfuzzer.start_fuzzing(make_task(target, enable_minimization=True)).result(timeout=20)

        assert result.crashes[0].crash_type == "deadly signal"
        assert len(result.minimized_crash_files) == 1
        assert result.minimized_crash_files[0].read_bytes() == b"x"

    def test_coverage_profile_env_only_when_enabled(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_env", 'echo "profile=$LLVM_PROFILE_FILE"')
        config = libfuzzer.config
        ws = Workspace.allocate(tmp_path / "ws", "s1")

        plain = libfuzzer.build_launch(make_task(target), ws, config)
        with_cov = libfuzzer.build_launch(make_task(target, enable_coverage=True), ws, config)

        assert "LLVM_PROFILE_FILE" not in plain.env
        assert with_cov.env["LLVM_PROFILE_FILE"] == str(ws.root / "default.profraw")


class TestLibFuzzerPreflight:
    def test_missing_target_raises_launch_failure(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        with pytest.raises(LaunchFailure):
            libfuzzer.start_fuzzing(make_task(tmp_path / "missing"))
        assert len(libfuzzer.sessions) == 0

    def test_non_executable_target_raises_launch_failure(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = tmp_path / "not_exec"
        target.write_text("data")
        with pytest.raises(LaunchFailure):
            libfuzzer.start_fuzzing(make_task(target))

    def test_uninitialized_engine_raises_config_error(self, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)
        with pytest.raises(ConfigError):
            LibFuzzerEngine().start_fuzzing(make_task(target))


class TestLibFuzzerCommandLine:
    def test_build_launch(self, tmp_path: Path) -> None:
        engine = LibFuzzerEngine()
        config = make_engine_config(tmp_path, engine_options={"dict": "/d/png.dict"})
        engine.initialize(config)
        ws = Workspace.allocate(tmp_path / "ws", "s1")
        task = make_task(
            tmp_path / "fuzz",
            timeout_seconds=60,
            memory_limit_mb=512,
            engine_options={"max_len": "128"},
            arguments=["-seed=1"],
        )

        plan = engine.build_launch(task, ws, config)

        assert plan.command == [
            str(tmp_path / "fuzz"),
            str(ws.corpus),
            f"-artifact_prefix={ws.crashes}/",
            "-max_total_time=60",
            "-print_final_stats=1",
            "-print_corpus_stats=1",
            "-rss_limit_mb=512",
            "-dict=/d/png.dict",
            "-max_len=128",
            "-seed=1",
        ]

    def test_defaults_from_config(self, tmp_path: Path) -> None:
        engine = LibFuzzerEngine()
        config = make_engine_config(tmp_path, default_timeout_seconds=120, max_memory_mb=1024)
        engine.initialize(config)
        ws = Workspace.allocate(tmp_path / "ws", "s1")

        plan = engine.build_launch(make_task(tmp_path / "fuzz", timeout_seconds=0), ws, config)

        assert "-max_total_time=120" in plan.command
        assert "-rss_limit_mb=1024" in plan.command


class TestLibFuzzerVerbs:
    def test_minimize_failure_raises(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_fail", "exit 1")
        testcase = tmp_path / "crash-1"
        testcase.write_bytes(b"abc")

        future = libfuzzer.minimize_test_case(testcase, target)

        with pytest.raises(MinimizationFailed):
            future.result(timeout=20)

    def test_minimize_missing_testcase_raises(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_ok", "exit 0")
        with pytest.raises(MinimizationFailed):
            libfuzzer.minimize_test_case(tmp_path / "nope", target).result(timeout=20)

    def test_minimize_success(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(
            tmp_path / "fuzz_min",
            """
for a in "$@"; do
  case "$a" in -exact_artifact_path=*) printf 'ab' > "${a#-exact_artifact_path=}" ;; esac
done
exit 0
""",
        )
        testcase = tmp_path / "crash-abc"
        testcase.write_bytes(b"abcdefgh")

        minimized = libfuzzer.minimize_test_case(testcase, target).result(timeout=20)

        assert minimized.name == "minimized_crash-abc"
        assert minimized.read_bytes() == b"ab"
        assert testcase.read_bytes() == b"abcdefgh"

    def test_reproduce_crash(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_asan", ASAN_TARGET)
        testcase = tmp_path / "crash-1"
        testcase.write_bytes(b"boom")

        result = libfuzzer.reproduce_crash(testcase, target).result(timeout=20)

        assert result.reproduced is True
        assert result.exit_code == 1
        assert result.crash_type == "heap-buffer-overflow"
        assert result.crash_address == "0x602000000011"
        assert "#0 0x4f3a21 in parse_header" in result.stack_trace
        assert result.signal is None

    def test_reproduce_no_crash(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_ok", 'echo "Executed $1 in 1 ms"')
        testcase = tmp_path / "input"
        testcase.write_bytes(b"fine")

        result = libfuzzer.reproduce_crash(testcase, target).result(timeout=20)

        assert result.reproduced is False
        assert result.exit_code == 0
        assert result.crash_type == "unknown"
        assert f"Executed {testcase}" in result.output

    def test_reproduce_signal_death(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_segv", "kill -SEGV $$")
        testcase = tmp_path / "input"
        testcase.write_bytes(b"x")

        result = libfuzzer.reproduce_crash(testcase, target).result(timeout=20)

        assert result.reproduced is True
        assert result.signal == 11
        assert result.crash_type == "SIGSEGV"

    def test_reproduce_timeout_raises(self, tmp_path: Path) -> None:
        engine = LibFuzzerEngine()
        engine.initialize(make_engine_config(tmp_path, reproduce_timeout_seconds=1))
        target = write_script(tmp_path / "fuzz_hang", "sleep 30")
        testcase = tmp_path / "input"
        testcase.write_bytes(b"x")

        with pytest.raises(ReproductionFailed):
            engine.reproduce_crash(testcase, target).result(timeout=20)
        engine.cleanup()

    def test_coverage_unavailable_without_profile(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_ok", "exit 0")
        testcase = tmp_path / "input"
        testcase.write_bytes(b"x")

        info = libfuzzer.generate_coverage(testcase, target).result(timeout=20)

        assert isinstance(info, CoverageInfo)
        assert info.available is False
        assert info.total_lines == 0

    def test_pause_is_unsupported(self, libfuzzer: LibFuzzerEngine) -> None:
        with pytest.raises(UnsupportedOperation):
            libfuzzer.pause_fuzzing("any")


class TestLibFuzzerAvailability:
    def test_probe_and_version(self, tmp_path: Path) -> None:
        runner = MagicMock()
        runner.run.return_value = CompletedRun(
            exit_code=0, outcome=ProcessOutcome.EXITED, output="Ubuntu clang version 17.0.6\nTarget: x86_64\n"
        )
        engine = LibFuzzerEngine(runner=runner)

        assert engine.is_available() is True
        assert engine.is_available() is True
        assert engine.get_version() == "17.0.6"
        assert engine.identity().name == "libFuzzer"

    def test_missing_toolchain(self) -> None:
        runner = MagicMock()
        runner.run.side_effect = LaunchFailure("Cannot execute clang")
        engine = LibFuzzerEngine(runner=runner)

        assert engine.is_available() is False
        assert engine.get_version() == "unknown"

    def test_metadata(self) -> None:
        engine = LibFuzzerEngine()
        assert engine.in_process is True
        assert engine.get_supported_platforms() == ["linux", "macos", "windows"]
        assert engine.get_supported_formats() == ["binary", "text", "structured"]


class TestSessionBookkeeping:
    def test_unknown_session_is_unknown(self, libfuzzer: LibFuzzerEngine) -> None:
        assert libfuzzer.get_fuzzing_status("no-such-session") is SessionStatus.UNKNOWN
        libfuzzer.stop_fuzzing("no-such-session")  # no-op

    def test_stop_after_completion_is_noop(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)
        handle = libfuzzer.start_fuzzing(make_task(target))
        handle.result(timeout=20)

        libfuzzer.stop_fuzzing(handle.session_id)

        assert libfuzzer.get_fuzzing_status(handle.session_id) is SessionStatus.COMPLETED

    def test_concurrent_sessions_are_independent(self, libfuzzer: LibFuzzerEngine, tmp_path: Path) -> None:
        clean = write_script(tmp_path / "fuzz_clean", CLEAN_TARGET)
        asan = write_script(tmp_path / "fuzz_asan", ASAN_TARGET)

        handles = [libfuzzer.start_fuzzing(make_task(t)) for t in (clean, asan, clean)]
        results = [h.result(timeout=30) for h in handles]

        assert len({h.session_id for h in handles}) == 3
        assert [r.crash_count for r in results] == [0, 1, 0]
        assert [r.coverage for r in results] == [120, 42, 120]

    def test_cleanup_kills_live_sessions(self, tmp_path: Path) -> None:
        engine = LibFuzzerEngine()
        engine.initialize(make_engine_config(tmp_path))
        target = write_script(tmp_path / "fuzz_hang", HANGING_TARGET)
        handle = engine.start_fuzzing(make_task(target, timeout_seconds=60))
        assert wait_for_status(engine, handle.session_id, SessionStatus.RUNNING)

        engine.cleanup()
        result = handle.result(timeout=20)

        assert result.status is SessionStatus.STOPPED
        assert engine.get_fuzzing_status(handle.session_id) is SessionStatus.UNKNOWN

    def test_other_engine_sessions_are_invisible(self, tmp_path: Path) -> None:
        libfuzzer = LibFuzzerEngine()
        afl = AFLEngine(sessions=libfuzzer.sessions)
        session = libfuzzer.sessions.create("libfuzzer")

        assert afl.get_fuzzing_status(session.session_id) is SessionStatus.UNKNOWN
        assert libfuzzer.get_fuzzing_status(session.session_id) is SessionStatus.INITIALIZING


# ---------------------------------------------------------------------------
# Coverage export parsing
# ---------------------------------------------------------------------------


LLVM_COV_EXPORT = """warning: 1 functions have mismatched data
{"data": [{"files": [{"filename": "/src/parse.c", "summary": {"lines": {"count": 40, "covered": 30}}}],
"totals": {"lines": {"count": 100, "covered": 75}, "functions": {"count": 10, "covered": 4},
"branches": {"count": 20, "covered": 5}}}], "type": "llvm.coverage.json.export", "version": "2.0.1"}
"""


class TestLlvmCovExport:
    def test_parse_totals_and_files(self) -> None:
        info = parse_llvm_cov_export(LLVM_COV_EXPORT)

        assert info.available is True
        assert (info.covered_lines, info.total_lines) == (75, 100)
        assert info.coverage_percentage == 75.0
        assert info.function_coverage_percentage == 40.0
        assert info.branch_coverage_percentage == 25.0
        assert info.file_coverage["/src/parse.c"].coverage_percentage == 75.0

    def test_garbage_is_unavailable(self) -> None:
        assert parse_llvm_cov_export("error: no profile").available is False
        assert parse_llvm_cov_export("{not json").available is False


# ---------------------------------------------------------------------------
# AFL
# ---------------------------------------------------------------------------


AFL_FUZZ_STUB = """
# afl-fuzz -i <corpus> -o <output> ...
out="$4"
mkdir -p "$out/default/crashes" "$out/default/queue"
cp "$2"/* "$out/default/queue/"
printf 'boom' > "$out/default/crashes/id:000000,sig:11,src:000000,op:havoc"
printf 'readme' > "$out/default/crashes/README.txt"
printf 'execs_done        : 777\\nedges_found       : 9\\nsaved_crashes     : 1\\nexecs_per_sec     : 1500.25\\n' > "$out/default/fuzzer_stats"
echo "[+] All set and ready to roll!"
exit 0
"""


class TestAFLEngine:
    def test_session_with_stub_afl_fuzz(self, afl: AFLEngine, tmp_path: Path) -> None:
        write_script(tmp_path / "bin" / "afl-fuzz", AFL_FUZZ_STUB)
        target = write_script(tmp_path / "target", "exit 0")

        result = afl.start_fuzzing(make_task(target)).result(timeout=20)

        assert result.engine_name == "AFL"
        assert result.status is SessionStatus.COMPLETED
        assert result.successful is True
        assert result.executions == 777
        assert result.coverage == 9
        assert [p.name for p in result.crash_files] == ["id:000000,sig:11,src:000000,op:havoc"]
        assert result.crash_count == 1
        assert result.crashes[0].crash_type == "SIGSEGV"
        assert result.crashes[0].location == "id:000000,sig:11,src:000000,op:havoc"
        assert result.statistics.execs_per_second == 1500.25
        assert result.statistics.crashes_found == 1
        # Empty corpus gets a single seed which ends up in the queue.
        assert result.final_corpus_path is not None and result.final_corpus_path.name == "queue"
        assert result.final_corpus_size == 1

    def test_crashes_described_from_artifact_names(self, tmp_path: Path) -> None:
        files = [
            tmp_path / "id:000000,sig:06,src:000001,op:flip1",
            tmp_path / "id:000001,sig:11,src:000002,op:havoc",
            tmp_path / "id:000002,src:000003",
        ]

        crashes = AFLEngine().describe_crashes(files, SignalAccumulator())

        assert [c.crash_type for c in crashes] == ["SIGABRT", "SIGSEGV", "crash"]
        assert [c.location for c in crashes] == [f.name for f in files]

    def test_missing_afl_fuzz_raises_launch_failure(self, afl: AFLEngine, tmp_path: Path) -> None:
        target = write_script(tmp_path / "target", "exit 0")
        with patch("fuzzdriver.engines.base.is_launchable", side_effect=lambda p: Path(p) == target):
            with pytest.raises(LaunchFailure):
                afl.start_fuzzing(make_task(target))

    def test_build_launch(self, tmp_path: Path) -> None:
        engine = AFLEngine()
        config = make_engine_config(tmp_path, engine_binary_path=str(tmp_path / "bin"))
        write_script(tmp_path / "bin" / "afl-fuzz", "exit 0")
        engine.initialize(config)
        ws = Workspace.allocate(tmp_path / "ws", "s1")
        task = make_task(
            tmp_path / "target",
            timeout_seconds=60,
            memory_limit_mb=256,
            engine_options={"t": "1000"},
            arguments=["--strict"],
            environment={"ASAN_OPTIONS": "abort_on_error=1"},
        )

        plan = engine.build_launch(task, ws, config)

        assert plan.command == [
            str(tmp_path / "bin" / "afl-fuzz"),
            "-i", str(ws.corpus),
            "-o", str(ws.root / "output"),
            "-m", "256",
            "-V", "60",
            "-d",
            "-t", "1000",
            "--", str(tmp_path / "target"), "--strict", "@@",
        ]
        assert plan.env["AFL_NO_UI"] == "1"
        assert plan.env["AFL_SKIP_CPUFREQ"] == "1"
        assert plan.env["AFL_I_DONT_CARE_ABOUT_MISSING_CRASHES"] == "1"
        assert plan.env["ASAN_OPTIONS"] == "abort_on_error=1"
        assert [p.name for p in ws.corpus.iterdir()] == ["seed_0"]

    def test_placeholder_not_duplicated(self, tmp_path: Path) -> None:
        engine = AFLEngine()
        config = make_engine_config(tmp_path)
        engine.initialize(config)
        ws = Workspace.allocate(tmp_path / "ws", "s1")
        (ws.corpus / "seed").write_bytes(b"x")

        plan = engine.build_launch(make_task(tmp_path / "target", arguments=["-f", "@@"]), ws, config)

        assert plan.command[-3:] == [str(tmp_path / "target"), "-f", "@@"]
        assert plan.command.count("@@") == 1
        assert [p.name for p in ws.corpus.iterdir()] == ["seed"]

    def test_stats_from_classic_layout(self, tmp_path: Path) -> None:
        ws = Workspace.allocate(tmp_path / "ws", "s1")
        out = ws.root / "output"
        (out / "crashes").mkdir(parents=True)
        (out / "fuzzer_stats").write_text("execs_done : 12\nedges_found : 3\n")
        (out / "crashes" / "id:000001,sig:06").write_bytes(b"x")

        engine = AFLEngine()
        signals = SignalAccumulator()
        engine.collect_post_run(ws, signals)

        assert signals.executions == 12
        assert signals.coverage == 3
        assert [p.name for p in engine.collect_crash_files(ws)] == ["id:000001,sig:06"]

    def test_reproduce_substitutes_placeholder(self, afl: AFLEngine, tmp_path: Path) -> None:
        target = write_script(
            tmp_path / "target",
            """
if [ "$1" = "-f" ] && grep -q crash "$2"; then
  echo "SUMMARY: AddressSanitizer: SEGV on unknown address 0x000000000000"
  exit 1
fi
exit 0
""",
        )
        testcase = tmp_path / "id:000000"
        testcase.write_text("crash")

        result = afl.reproduce_crash(testcase, target, ["-f", "@@"]).result(timeout=20)

        assert result.reproduced is True
        assert result.crash_type == "SEGV"
        assert result.crash_address == "0x000000000000"

    def test_reproduce_appends_testcase(self) -> None:
        plan = AFLEngine().build_reproduce(Path("/tmp/tc"), Path("/bin/target"), ["-v"])
        assert plan.command == ["/bin/target", "-v", "/tmp/tc"]

    def test_minimize_with_stub_tmin(self, afl: AFLEngine, tmp_path: Path) -> None:
        # afl-tmin -i <in> -o <out> -- target @@
        write_script(tmp_path / "bin" / "afl-tmin", "head -c 1 \"$2\" > \"$4\"")
        target = write_script(tmp_path / "target", "exit 0")
        testcase = tmp_path / "id:000000"
        testcase.write_bytes(b"abcdef")

        minimized = afl.minimize_test_case(testcase, target).result(timeout=20)

        assert minimized.read_bytes() == b"a"

    def test_coverage_is_degraded(self, afl: AFLEngine, tmp_path: Path) -> None:
        info = afl.generate_coverage(tmp_path / "tc", tmp_path / "target").result(timeout=20)
        assert info == CoverageInfo.unavailable()

    def test_probe_accepts_usage_output(self) -> None:
        runner = MagicMock()
        runner.run.return_value = CompletedRun(
            exit_code=1, outcome=ProcessOutcome.EXITED, output="afl-fuzz++4.09c based on afl by Michal Zalewski\n"
        )
        assert AFLEngine(runner=runner).is_available() is True

        runner.run.return_value = CompletedRun(exit_code=127, outcome=ProcessOutcome.EXITED, output="")
        assert AFLEngine(runner=runner).is_available() is False

    def test_metadata(self) -> None:
        engine = AFLEngine()
        assert engine.in_process is False
        assert engine.get_supported_platforms() == ["linux", "macos"]
        assert engine.get_supported_formats() == ["binary", "file-based"]

    def test_uses_config_snapshot(self, tmp_path: Path) -> None:
        engine = AFLEngine()
        config = make_engine_config(tmp_path)
        engine.initialize(config)
        assert engine.config == config
        assert engine.config is not config
        assert isinstance(engine.config, EngineConfig)
