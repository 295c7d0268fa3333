"""Batch reporter — a sink that collects per-test outcomes into a summary."""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path

from webpilot.models.messages import SinkEvent, TestFinished, TestStarted
from webpilot.models.run_result import BatchSummary, RunState, TestRunSummary

from .json_report import generate_json_report

logger = logging.getLogger(__name__)


class BatchReporter:
    """Collects ``testStarted`` / ``testFinished`` events for one batch."""

    def __init__(self, folder_name: str = "", expected_tests: dict[str, str] | None = None):
        self.batch_id = f"batch_{uuid.uuid4().hex[:8]}"
        self.folder_name = folder_name
        self.started_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self._start = time.time()
        # Insertion order follows launch order.
        self.results: dict[str, TestRunSummary] = {
            test_id: TestRunSummary(test_id=test_id, test_name=name)
            for test_id, name in (expected_tests or {}).items()
        }

    def emit(self, event: SinkEvent) -> None:
        if isinstance(event, TestStarted):
            entry = self.results.setdefault(event.test_id, TestRunSummary(test_id=event.test_id))
            entry.test_name = event.test_name or entry.test_name
            entry.url = event.url
            entry.total_steps = event.total_steps
            entry.status = RunState.RUNNING
        elif isinstance(event, TestFinished):
            entry = self.results.setdefault(event.test_id, TestRunSummary(test_id=event.test_id))
            entry.status = event.result.status
            entry.errors = list(event.result.errors)
            entry.steps_executed = event.result.steps_executed
            entry.duration_ms = event.duration

    @property
    def is_complete(self) -> bool:
        return all(r.status.is_terminal for r in self.results.values())

    def build_summary(self) -> BatchSummary:
        results = list(self.results.values())

        def count(state: RunState) -> int:
            return sum(1 for r in results if r.status == state)

        return BatchSummary(
            batch_id=self.batch_id,
            folder_name=self.folder_name,
            started_at=self.started_at,
            completed_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            total_tests=len(results),
            passed=count(RunState.PASSED),
            failed=count(RunState.FAILED),
            stopped=count(RunState.STOPPED),
            errored=count(RunState.ERRORED),
            duration_seconds=round(time.time() - self._start, 2),
            test_results=results,
        )

    def write_report(self, output_dir: Path) -> Path:
        summary = self.build_summary()
        path = output_dir / f"report_{summary.batch_id}.json"
        generate_json_report(summary, path)
        logger.info("JSON report: %s", path)
        return path
