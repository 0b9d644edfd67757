"""fuzzdriver: drive libFuzzer and AFL fuzzing sessions as managed child processes."""

__version__ = "0.1.0"
