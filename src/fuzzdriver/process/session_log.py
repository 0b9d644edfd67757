"""Per-session log files capturing raw engine output.

All sessions share the one ``fuzzdriver.session`` logger; each open context
adds a file handler that only accepts records tagged with its session id.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

LOGGER_NAME = "fuzzdriver.session"

_FORMATTER = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def get_logger() -> logging.Logger:
    """Return the logger that receives engine output of every session.

    It never propagates; engine output only ends up in session log files.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


class _SessionFilter(logging.Filter):
    def __init__(self, session_id: str) -> None:
        super().__init__()
        self.session_id = session_id

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "session_id", None) == self.session_id


def _file_handler(path: Path, session_id: str, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(_FORMATTER)
    handler.addFilter(_SessionFilter(session_id))
    return handler


@contextmanager
def session_log_context(
    log_file: Path, session_id: str, verbose: bool = False
) -> Iterator[logging.LoggerAdapter[logging.Logger]]:
    """Write records for *session_id* into *log_file* while the context is open.

    Yields an adapter that tags every record with the session id. DEBUG
    records are written only when *verbose*.
    """
    logger = get_logger()
    handler = _file_handler(log_file, session_id, logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(handler)
    try:
        yield logging.LoggerAdapter(logger, {"session_id": session_id})
    finally:
        logger.removeHandler(handler)
        handler.close()
