"""Run external processes under a wall-clock deadline with forceful cancellation."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Mapping, Sequence

import psutil

from fuzzdriver.core.exceptions import LaunchFailure

log = logging.getLogger(__name__)


class ProcessOutcome(str, Enum):
    """How a process came to an end."""

    EXITED = "exited"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProcessExit:
    exit_code: int
    outcome: ProcessOutcome

    @property
    def timed_out(self) -> bool:
        return self.outcome is ProcessOutcome.TIMED_OUT

    @property
    def cancelled(self) -> bool:
        return self.outcome is ProcessOutcome.CANCELLED


@dataclass(frozen=True)
class CompletedRun:
    """A process run to completion with its combined output captured."""

    exit_code: int
    outcome: ProcessOutcome
    output: str


def _group_alive(pgid: int) -> bool:
    """True while any process remains in the process group *pgid*."""
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _kill_tree(pid: int, leader_alive: bool = True) -> None:
    """SIGKILL a process, its descendants and the rest of its process group.

    Children re-parented to init after the leader exited are no longer
    reachable through ``children()`` but keep the leader's group id. Once the
    leader is reaped its pid may be reused, so only the group is signalled.
    """
    procs: list[psutil.Process] = []
    if leader_alive:
        try:
            parent = psutil.Process(pid)
            procs = parent.children(recursive=True)
            procs.append(parent)
        except psutil.NoSuchProcess:
            procs = []
    _kill_group(pid)
    for proc in procs:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


class ProcessHandle:
    """A running child process.

    The process ends exactly once: naturally, on deadline expiry, or on
    :meth:`cancel`. Whichever cause comes first is reported by :meth:`wait`.
    """

    def __init__(
        self,
        proc: subprocess.Popen[str],
        command: Sequence[str],
        timeout: float | None = None,
    ) -> None:
        self._proc = proc
        self.command = list(command)
        self.timeout = timeout
        self._lock = threading.Lock()
        self._outcome: ProcessOutcome | None = None
        self._exit: ProcessExit | None = None
        self._timer: threading.Timer | None = None
        if timeout is not None and timeout > 0:
            self._timer = threading.Timer(timeout, self._expire)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pid(self) -> int:
        return self._proc.pid

    def is_alive(self) -> bool:
        """True while the process or anything left in its process group runs."""
        if self._proc.poll() is None:
            return True
        return self._exit is None and _group_alive(self._proc.pid)

    def lines(self) -> Iterator[str]:
        """Yield output lines (stdout and stderr merged) in emission order.

        The iterator ends once the process and its descendants have closed
        the output pipe. It can only be consumed once.
        """
        stream = self._proc.stdout
        if stream is None:
            return
        try:
            for line in stream:
                yield line.rstrip("\r\n")
        except ValueError:
            # Stream closed underneath us by wait().
            return

    def cancel(self) -> bool:
        """Kill the process group. Returns False if it had already ended."""
        killed = self._terminate(ProcessOutcome.CANCELLED)
        if killed:
            log.info("Cancelled process %d (%s)", self.pid, self.command[0])
        return killed

    def _expire(self) -> None:
        if self._terminate(ProcessOutcome.TIMED_OUT):
            log.warning(
                "Process %d (%s) exceeded its %.1fs deadline; killed",
                self.pid, self.command[0], self.timeout or 0.0,
            )

    def _terminate(self, outcome: ProcessOutcome) -> bool:
        with self._lock:
            if self._outcome is not None or self._exit is not None:
                return False
            leader_alive = self._proc.poll() is None
            if not leader_alive and not _group_alive(self._proc.pid):
                return False
            self._outcome = outcome
        _kill_tree(self._proc.pid, leader_alive)
        return True

    def wait(self, timeout: float | None = None) -> ProcessExit:
        """Block until the process ends, release its resources, return the exit.

        Raises ``subprocess.TimeoutExpired`` if *timeout* elapses first; the
        process deadline is unaffected by this argument.
        """
        exit_code = self._proc.wait(timeout)
        with self._lock:
            if self._exit is None:
                if self._timer is not None:
                    self._timer.cancel()
                if self._outcome is None:
                    self._outcome = ProcessOutcome.EXITED
                # Descendants that outlived the leader go with it.
                _kill_group(self._proc.pid)
                self._close_streams()
                self._exit = ProcessExit(exit_code=exit_code, outcome=self._outcome)
            return self._exit

    def _close_streams(self) -> None:
        for stream in (self._proc.stdout, self._proc.stdin):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as e:
                log.debug("Closing pipe of process %d failed: %s", self.pid, e)

    def __enter__(self) -> ProcessHandle:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        if self._exit is None:
            self.cancel()
            self.wait()


class ProcessRunner:
    """Spawns child processes with a working directory, env overlay and deadline."""

    def start(
        self,
        command: Sequence[str | os.PathLike[str]],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProcessHandle:
        """Spawn *command* and return its handle.

        Raises:
            LaunchFailure: the executable is missing, not executable, or the
                working directory does not exist.
        """
        argv = [str(c) for c in command]
        if not argv:
            raise LaunchFailure("Empty command")
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        log.debug("Spawning: %s (cwd=%s, timeout=%s)", " ".join(argv), cwd, timeout)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise LaunchFailure(f"Cannot execute {argv[0]}: {e}") from e
        except OSError as e:
            raise LaunchFailure(f"Failed to launch {argv[0]}: {e}") from e
        return ProcessHandle(proc, argv, timeout)

    def run(
        self,
        command: Sequence[str | os.PathLike[str]],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CompletedRun:
        """Run *command* to completion, capturing combined output."""
        with self.start(command, cwd=cwd, env=env, timeout=timeout) as handle:
            output = "".join(line + "\n" for line in handle.lines())
            result = handle.wait()
        return CompletedRun(exit_code=result.exit_code, outcome=result.outcome, output=output)
