"""Protocol interfaces for pluggable components."""

from fuzzdriver.protocols.fuzzing_engine import FuzzingEngine

__all__ = [
    "FuzzingEngine",
]
