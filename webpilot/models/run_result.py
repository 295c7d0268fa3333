"""Run state and result structures produced by the executor."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {RunState.PASSED, RunState.FAILED, RunState.STOPPED, RunState.ERRORED}
)


class RunResult(BaseModel):
    """Terminal outcome of a single run. Set at most once per run."""
    status: RunState
    success: bool = False
    steps_executed: int = 0
    errors: list[str] = Field(default_factory=list)


class TestRunSummary(BaseModel):
    test_id: str
    test_name: str = ""
    url: str = ""
    status: RunState = RunState.PENDING
    steps_executed: int = 0
    total_steps: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class BatchSummary(BaseModel):
    batch_id: str
    folder_name: str = ""
    started_at: str
    completed_at: Optional[str] = None
    total_tests: int = 0
    passed: int = 0
    failed: int = 0
    stopped: int = 0
    errored: int = 0
    duration_seconds: float = 0.0
    test_results: list[TestRunSummary] = Field(default_factory=list)
