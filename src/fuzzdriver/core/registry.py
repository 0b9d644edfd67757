"""Registry of fuzzing engine families."""

from __future__ import annotations

import logging
from typing import Any

from fuzzdriver.core.exceptions import EngineNotFound
from fuzzdriver.engines.base import BaseEngine

log = logging.getLogger(__name__)


class ComponentRegistry:
    """Engine families by name, in registration order.

    Names are case-insensitive. Order matters: it is the order in which the
    service probes engines and falls back when selecting a default.
    """

    def __init__(self) -> None:
        self._engines: dict[str, type[BaseEngine]] = {}

    def register_engine(self, name: str, cls: type[BaseEngine]) -> None:
        """Register a fuzzing engine class."""
        key = name.lower()
        if key in self._engines:
            log.warning("Overwriting engine registration: %s", name)
        self._engines[key] = cls

    def get_engine(self, name: str, **kwargs: Any) -> BaseEngine:
        """Get a new engine instance by name; *kwargs* go to the constructor."""
        key = name.lower()
        if key not in self._engines:
            raise EngineNotFound(f"Unknown fuzzing engine: {name}")
        return self._engines[key](**kwargs)

    def has_engine(self, name: str) -> bool:
        return name.lower() in self._engines

    def list_engines(self) -> list[str]:
        return list(self._engines)
