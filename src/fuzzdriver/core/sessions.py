"""Thread-safe tracking of in-flight fuzzing sessions."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from fuzzdriver.core.schema import SessionStatus
from fuzzdriver.process.runner import ProcessHandle

log = logging.getLogger(__name__)


@dataclass
class Session:
    """One tracked engine invocation."""

    session_id: str
    engine_name: str
    status: SessionStatus = SessionStatus.INITIALIZING
    created_at: datetime | None = None
    finished_at: datetime | None = None
    process: ProcessHandle | None = None
    stop_requested: bool = False


class SessionRegistry:
    """Map of session id -> :class:`Session`, guarded by a single lock.

    Only the worker driving a session moves its status forward; transitions
    are monotonic and a terminal status is never left. Readers receive
    snapshots. The lock is never held across process I/O.
    """

    def __init__(self, retention_seconds: float = 3600.0) -> None:
        self.retention_seconds = retention_seconds
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, engine_name: str) -> Session:
        """Register a new INITIALIZING session with a fresh id."""
        self.purge_expired()
        session = Session(
            session_id=str(uuid.uuid4()),
            engine_name=engine_name,
            created_at=datetime.now(),
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return replace(session)

    def attach_process(self, session_id: str, process: ProcessHandle) -> bool:
        """Move an INITIALIZING session to RUNNING with its live process.

        Returns False when the session is gone, no longer initializing, or a
        stop was requested meanwhile; the caller then owns killing *process*.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status is not SessionStatus.INITIALIZING or session.stop_requested:
                return False
            session.process = process
            session.status = SessionStatus.RUNNING
            return True

    def finish(self, session_id: str, status: SessionStatus) -> bool:
        """Record a terminal status and release the process handle."""
        if not status.is_terminal:
            raise ValueError(f"Not a terminal status: {status.value}")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status.is_terminal:
                return False
            session.status = status
            session.process = None
            session.finished_at = datetime.now()
        log.debug("Session %s finished: %s", session_id, status.value)
        return True

    def request_stop(self, session_id: str) -> ProcessHandle | None:
        """Flag a live session for stopping; return its process if one is attached."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.status.is_terminal:
                return None
            session.stop_requested = True
            return session.process

    def is_stop_requested(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            return session is not None and session.stop_requested

    def status(self, session_id: str) -> SessionStatus:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.status if session is not None else SessionStatus.UNKNOWN

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session is not None else None

    def sessions_for(self, engine_name: str) -> list[Session]:
        with self._lock:
            return [replace(s) for s in self._sessions.values() if s.engine_name == engine_name]

    def discard(self, session_id: str) -> bool:
        """Forget a terminal session (e.g. once its result has been collected)."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.status.is_terminal:
                return False
            del self._sessions[session_id]
            return True

    def clear(self, engine_name: str | None = None) -> list[ProcessHandle]:
        """Drop every session (of *engine_name*, if given); return their live processes."""
        with self._lock:
            doomed = [
                sid for sid, s in self._sessions.items()
                if engine_name is None or s.engine_name == engine_name
            ]
            processes = [self._sessions[sid].process for sid in doomed]
            for sid in doomed:
                del self._sessions[sid]
        return [p for p in processes if p is not None]

    def purge_expired(self, now: datetime | None = None) -> int:
        """Remove terminal sessions older than the retention window."""
        cutoff = (now or datetime.now()) - timedelta(seconds=self.retention_seconds)
        with self._lock:
            expired = [
                sid for sid, s in self._sessions.items()
                if s.status.is_terminal and s.finished_at is not None and s.finished_at < cutoff
            ]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
