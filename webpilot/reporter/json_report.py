"""JSON report output."""

from __future__ import annotations

import json
from pathlib import Path

from webpilot.models.run_result import BatchSummary, RunState


def generate_json_report(summary: BatchSummary, output_path: Path) -> None:
    """Write a machine-readable JSON report for a batch."""
    report = summary.model_dump(mode="json")
    report["failures"] = [
        {
            "test_id": r.test_id,
            "test_name": r.test_name,
            "status": r.status.value,
            "errors": r.errors,
        }
        for r in summary.test_results
        if r.status in (RunState.FAILED, RunState.ERRORED)
    ]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(report, f, indent=2, default=str)
