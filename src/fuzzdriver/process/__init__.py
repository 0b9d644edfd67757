"""Child process execution and session output logging."""

from fuzzdriver.process.runner import (
    CompletedRun,
    ProcessExit,
    ProcessHandle,
    ProcessOutcome,
    ProcessRunner,
)
from fuzzdriver.process.session_log import session_log_context

__all__ = [
    "CompletedRun",
    "ProcessExit",
    "ProcessHandle",
    "ProcessOutcome",
    "ProcessRunner",
    "session_log_context",
]
