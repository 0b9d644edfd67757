"""Built-in reporters for fuzzing, reproduction and coverage results."""

from fuzzdriver.reporters.json_reporter import JsonReporter, to_json

__all__ = [
    "JsonReporter",
    "to_json",
]
