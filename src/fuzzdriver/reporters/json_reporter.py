"""JSON reporter: write fuzzing results, reproductions and coverage as JSON."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel

from fuzzdriver.core.schema import CoverageInfo, EngineResult, ReproductionResult


class JsonReporter:
    """Reporter that writes JSON output for engine results."""

    format_name: str = "json"

    def report_result(self, result: EngineResult, output: Path) -> None:
        """Write a fuzzing session result, with its duration, to the output path."""
        data = result.model_dump(mode="json")
        data["duration_seconds"] = result.duration_seconds
        data["crash_count"] = result.crash_count
        self._write(data, output)

    def report_reproduction(self, result: ReproductionResult, output: Path) -> None:
        """Write a crash reproduction result as JSON to the output path."""
        self._write(result.model_dump(mode="json"), output)

    def report_coverage(self, data: CoverageInfo, output: Path) -> None:
        """Write coverage as JSON to the output path (raw llvm-cov data omitted)."""
        payload = data.model_dump(mode="json", exclude={"raw_coverage_data"})
        payload["coverage_percentage"] = data.coverage_percentage
        self._write(payload, output)

    def report_results(self, results: list[EngineResult], output: Path) -> None:
        """Write several session results as a JSON array to the output path."""
        self._write([r.model_dump(mode="json") for r in results], output)

    def _write(self, data: dict | list, output: Path) -> None:
        output = Path(output).resolve()
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(data, indent=2), encoding="utf-8")


def to_json(model: BaseModel) -> str:
    """Indented JSON for a single result model (used for stdout output)."""
    return json.dumps(model.model_dump(mode="json"), indent=2)
