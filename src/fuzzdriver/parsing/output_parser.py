"""Line-oriented parsing of fuzzing engine output into structured signals.

Engine output is not a stable format, so parsing is best effort: an
unrecognized or malformed line yields no signals and never raises.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Union

from fuzzdriver.core.schema import CrashInfo, FuzzingStatistics

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrashDetected:
    crash_type: str
    location: str = ""


@dataclass(frozen=True)
class CoverageSample:
    count: int


@dataclass(frozen=True)
class ExecutionSample:
    count: int


@dataclass(frozen=True)
class StatSample:
    """Auxiliary figure such as exec/s or peak RSS."""

    key: str
    value: float


Signal = Union[CrashDetected, CoverageSample, ExecutionSample, StatSample]


@dataclass(frozen=True)
class PatternMatcher:
    """A regex bound to the signal it produces."""

    kind: str
    pattern: re.Pattern[str]
    build: Callable[[re.Match[str]], Signal]


@dataclass
class PatternSet:
    """Ordered matchers for one engine family."""

    engine: str
    matchers: list[PatternMatcher] = field(default_factory=list)

    def parse(self, line: str) -> list[Signal]:
        signals: list[Signal] = []
        seen: set[str] = set()
        for matcher in self.matchers:
            if matcher.kind in seen:
                continue
            m = matcher.pattern.search(line)
            if not m:
                continue
            try:
                signal = matcher.build(m)
            except ValueError:
                continue
            if isinstance(signal, CrashDetected):
                return [signal]
            seen.add(matcher.kind)
            signals.append(signal)
        return signals


def _crash(m: re.Match[str]) -> CrashDetected:
    return CrashDetected(crash_type=m.group("type").strip(), location=(m.group("loc") or "").strip())


def _stat(key: str) -> Callable[[re.Match[str]], StatSample]:
    return lambda m: StatSample(key=key, value=float(m.group(1)))


def _named_stat(m: re.Match[str]) -> StatSample:
    return StatSample(key=m.group(1), value=float(m.group(2)))


_SANITIZER_SUMMARY = re.compile(r"SUMMARY: \S*Sanitizer: (?P<type>\S+)(?:\s+(?P<loc>.*))?")

LIBFUZZER_PATTERNS = PatternSet(
    engine="libfuzzer",
    matchers=[
        PatternMatcher("crash", _SANITIZER_SUMMARY, _crash),
        PatternMatcher("crash", re.compile(r"SUMMARY: libFuzzer: (?P<type>.+?)(?P<loc>)\s*$"), _crash),
        PatternMatcher("exec", re.compile(r"^#(\d+)(?:\s|$)"), lambda m: ExecutionSample(int(m.group(1)))),
        PatternMatcher("cov", re.compile(r"\bcov: (\d+)"), lambda m: CoverageSample(int(m.group(1)))),
        PatternMatcher("stat", re.compile(r"^stat::(\w+):\s+(\d+(?:\.\d+)?)"), _named_stat),
        PatternMatcher("speed", re.compile(r"exec/s: (\d+)"), _stat("execs_per_sec")),
        PatternMatcher("rss", re.compile(r"rss: (\d+)Mb"), _stat("peak_rss_mb")),
    ],
)

AFL_PATTERNS = PatternSet(
    engine="afl",
    matchers=[
        PatternMatcher("crash", _SANITIZER_SUMMARY, _crash),
        PatternMatcher(
            "crash",
            re.compile(r"\b(?P<type>SIGSEGV|SIGABRT|SIGFPE|SIGILL|SIGBUS)\b(?P<loc>)"),
            _crash,
        ),
        PatternMatcher("exec", re.compile(r"^execs_done\s*:\s*(\d+)"), lambda m: ExecutionSample(int(m.group(1)))),
        PatternMatcher("cov", re.compile(r"^edges_found\s*:\s*(\d+)"), lambda m: CoverageSample(int(m.group(1)))),
        PatternMatcher("stat", re.compile(r"^(\w+)\s*:\s*(\d+(?:\.\d+)?)%?\s*$"), _named_stat),
    ],
)

_PATTERN_SETS: dict[str, PatternSet] = {
    LIBFUZZER_PATTERNS.engine: LIBFUZZER_PATTERNS,
    AFL_PATTERNS.engine: AFL_PATTERNS,
}


def register_pattern_set(patterns: PatternSet) -> None:
    """Register (or replace) the pattern set for an engine family."""
    _PATTERN_SETS[patterns.engine.lower()] = patterns


def parse_line(engine: str, line: str) -> list[Signal]:
    """Convert one line of engine output into zero or more signals."""
    patterns = _PATTERN_SETS.get(engine.lower())
    if patterns is None:
        return []
    return patterns.parse(line.rstrip("\r\n"))


def extract_crash_type(engine: str, output: str) -> str:
    """Return the crash type of the first crash line in *output*, or "unknown"."""
    for line in output.splitlines():
        for signal in parse_line(engine, line):
            if isinstance(signal, CrashDetected):
                return signal.crash_type
    return "unknown"


_STACK_FRAME = re.compile(r"^\s*#\d+\s+0x[0-9a-fA-F]+")
_CRASH_ADDRESS = re.compile(r"on (?:unknown )?address (0x[0-9a-fA-F]+)")


def extract_stack_trace(output: str) -> str:
    """Return the sanitizer stack frames ("#N 0x... in fn file:line") found in *output*."""
    return "\n".join(line.strip() for line in output.splitlines() if _STACK_FRAME.match(line))


def extract_crash_address(output: str) -> str:
    """Return the faulting address reported by a sanitizer, or ""."""
    m = _CRASH_ADDRESS.search(output)
    return m.group(1) if m else ""


# Stat keys as printed by libFuzzer's -print_final_stats and AFL's fuzzer_stats.
_STAT_FIELDS: dict[str, str] = {
    "number_of_executed_units": "total_execs",
    "execs_done": "total_execs",
    "average_exec_per_sec": "execs_per_second",
    "execs_per_sec": "execs_per_second",
    "peak_rss_mb": "peak_memory_mb",
    "new_units_added": "corpus_size",
    "corpus_count": "corpus_size",
    "saved_crashes": "crashes_found",
    "unique_crashes": "crashes_found",
    "saved_hangs": "timeouts_found",
    "unique_hangs": "timeouts_found",
    "edges_found": "features_found",
}


class SignalAccumulator:
    """Folds signals into the running counters of a fuzzing session.

    Crashes are kept in emission order; once ``max_crashes`` descriptors
    have been recorded further crashes are counted but not stored.
    """

    def __init__(self, max_crashes: int = 0) -> None:
        self.max_crashes = max_crashes
        self.executions = 0
        self.coverage = 0
        self.crashes: list[CrashInfo] = []
        self.dropped_crashes = 0
        self.stats: dict[str, float] = {}

    def add(self, signal: Signal) -> None:
        if isinstance(signal, CrashDetected):
            if self.max_crashes and len(self.crashes) >= self.max_crashes:
                self.dropped_crashes += 1
                return
            self.crashes.append(CrashInfo(crash_type=signal.crash_type, location=signal.location))
        elif isinstance(signal, CoverageSample):
            self.coverage = signal.count
        elif isinstance(signal, ExecutionSample):
            self.executions = signal.count
        elif isinstance(signal, StatSample):
            self.stats[signal.key] = signal.value

    def feed(self, engine: str, line: str) -> list[Signal]:
        """Parse *line* and accumulate its signals; return them."""
        signals = parse_line(engine, line)
        for signal in signals:
            self.add(signal)
        return signals

    def statistics(self) -> FuzzingStatistics:
        values: dict[str, float] = {}
        for key, value in self.stats.items():
            target = _STAT_FIELDS.get(key)
            if target:
                values[target] = value
        if self.executions and "total_execs" not in values:
            values["total_execs"] = self.executions
        if "crashes_found" not in values:
            values["crashes_found"] = len(self.crashes) + self.dropped_crashes
        return FuzzingStatistics(
            total_execs=int(values.get("total_execs", 0)),
            crashes_found=int(values.get("crashes_found", 0)),
            timeouts_found=int(values.get("timeouts_found", 0)),
            execs_per_second=float(values.get("execs_per_second", 0.0)),
            peak_memory_mb=int(values.get("peak_memory_mb", 0)),
            corpus_size=int(values.get("corpus_size", 0)),
            features_found=int(values.get("features_found", 0)),
        )
