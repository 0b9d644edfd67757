"""Engine output parsing."""

from fuzzdriver.parsing.output_parser import (
    AFL_PATTERNS,
    LIBFUZZER_PATTERNS,
    CoverageSample,
    CrashDetected,
    ExecutionSample,
    PatternMatcher,
    PatternSet,
    Signal,
    SignalAccumulator,
    StatSample,
    extract_crash_address,
    extract_crash_type,
    extract_stack_trace,
    parse_line,
    register_pattern_set,
)

__all__ = [
    "AFL_PATTERNS",
    "LIBFUZZER_PATTERNS",
    "CoverageSample",
    "CrashDetected",
    "ExecutionSample",
    "PatternMatcher",
    "PatternSet",
    "Signal",
    "SignalAccumulator",
    "StatSample",
    "extract_crash_address",
    "extract_crash_type",
    "extract_stack_trace",
    "parse_line",
    "register_pattern_set",
]
