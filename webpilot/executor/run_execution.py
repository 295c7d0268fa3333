"""Per-run state machine for one test execution."""

from __future__ import annotations

import logging
import signal
import time
from typing import Literal, Optional

from webpilot.models.events import (
    AbstractingEvent,
    BugEvent,
    CodeEvent,
    LocatingEvent,
    LogEvent,
    NewTabEvent,
    OtherEvent,
    ProposingActionEvent,
    ReIdentifyingEvent,
    StepEvent,
    VerificationEvent,
)
from webpilot.models.messages import StatusUpdate, StepUpdate, TestFinished
from webpilot.models.run_result import RunResult, RunState
from webpilot.models.workspace import TestItem
from webpilot.parser.log_parser import parse_bug_reports

from .interfaces import AgentProcessHandle, BrowserTab, CaptureStream
from .run_log import RunLog

logger = logging.getLogger(__name__)

Channel = Literal["stdout", "stderr"]

# Exit by one of these signals means the run was stopped, not failed.
STOP_SIGNALS = frozenset(
    getattr(signal, name) for name in ("SIGTERM", "SIGKILL") if hasattr(signal, name)
)


class RunExecution:
    """Tracks the lifecycle of a single test run.

    States: ``pending -> running -> passed | failed | stopped | errored``.
    The terminal ``result`` is set at most once: the first terminal signal
    wins, and later exit notifications only release resources.

    The run owns its agent process, its browser tab, its capture stream and
    its log channel. It never touches any other run.
    """

    def __init__(self, test: TestItem):
        self.test = test
        self.test_id = test.id
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self.current_step = 0
        self.total_steps = len(test.actions)
        self.verified_steps: set[int] = set()
        self.completed_steps: set[int] = set()
        self.state = RunState.PENDING
        self.result: Optional[RunResult] = None
        self.is_running = False
        self.stop_requested = False

        self.stdout: list[str] = []
        self.stderr: list[str] = []
        self.bug_reports: list[str] = []
        self.step_errors: list[str] = []

        self.process: Optional[AgentProcessHandle] = None
        self.tab: Optional[BrowserTab] = None
        self.capture: Optional[CaptureStream] = None
        self.log: Optional[RunLog] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_finished(self) -> bool:
        return self.result is not None

    @property
    def is_launching(self) -> bool:
        """True between creation and the agent being spawned or the launch failing."""
        return self.state == RunState.PENDING

    @property
    def duration_ms(self) -> int:
        end = self.end_time if self.end_time is not None else time.time()
        return int((end - self.start_time) * 1000)

    @property
    def stdout_text(self) -> str:
        return "".join(self.stdout)

    @property
    def stderr_text(self) -> str:
        return "".join(self.stderr)

    def attach_tab(self, tab: BrowserTab) -> None:
        self.tab = tab

    def mark_running(self, process: AgentProcessHandle) -> None:
        """Enter ``running`` once the agent is spawned and a tab is attached."""
        if self.tab is None:
            raise RuntimeError(f"Run {self.test_id} has no tab attached")
        self.process = process
        self.is_running = True
        if self.state == RunState.PENDING:
            self.state = RunState.RUNNING

    def request_stop(self) -> bool:
        """Flag the run as stopped by the user. Returns False if already flagged."""
        if self.stop_requested:
            return False
        self.stop_requested = True
        self._log_line(f"[{self.test.name}] Stopping test...")
        return True

    def fail_to_launch(self, message: str) -> TestFinished:
        """Terminal transition for a run that never reached ``running``."""
        self.is_running = False
        self.end_time = time.time()
        self._finish(RunState.ERRORED, [message or "Failed to start test"], steps_executed=0)
        self._log_line(f"[{self.test.name}] Failed to start: {message}")
        return self._finished_message(duration=0)

    def on_exit(self, returncode: Optional[int]) -> Optional[TestFinished]:
        """Handle agent exit. Returns the finish message, or None if already terminal."""
        self.is_running = False
        self.end_time = time.time()
        if self.is_finished:
            logger.debug("Run %s exited (code=%s) after terminal result %s",
                         self.test_id, returncode, self.state.value)
            return None

        if self.stop_requested or _killed_by_stop_signal(returncode):
            self._log_line(f"[{self.test.name}] Test stopped by user")
            self._finish(RunState.STOPPED, [], steps_executed=len(self.completed_steps))
        elif returncode == 0:
            self._log_line(f"[{self.test.name}] Test completed successfully")
            self._finish(RunState.PASSED, [], steps_executed=len(self.completed_steps),
                         success=True)
        else:
            errors = self._failure_errors(returncode)
            self._log_line(f"[{self.test.name}] Test failed: {'; '.join(errors)}")
            self._finish(RunState.FAILED, errors, steps_executed=len(self.completed_steps))
        return self._finished_message()

    def _failure_errors(self, returncode: Optional[int]) -> list[str]:
        bugs = parse_bug_reports(self.stdout_text)
        if bugs:
            return bugs
        if self.step_errors:
            return list(self.step_errors)
        stderr = self.stderr_text.strip()
        if stderr:
            return [stderr]
        return [f"Process exited with code {returncode}"]

    def _finish(
        self, state: RunState, errors: list[str], steps_executed: int, success: bool = False,
    ) -> None:
        self.state = state
        self.result = RunResult(
            status=state, success=success, steps_executed=steps_executed, errors=errors,
        )

    def _finished_message(self, duration: Optional[int] = None) -> TestFinished:
        if self.result is None:
            raise RuntimeError(f"Run {self.test_id} has no result yet")
        return TestFinished(
            test_id=self.test_id,
            result=self.result,
            duration=self.duration_ms if duration is None else duration,
        )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def append_output(self, channel: Channel, text: str) -> None:
        if channel == "stdout":
            self.stdout.append(text)
        else:
            self.stderr.append(text)
        if self.log is not None:
            self.log.write(text)

    def apply(self, event: LogEvent) -> list[StepUpdate | StatusUpdate | TestFinished]:
        """Apply a parsed event and return the UI messages it produces."""
        if isinstance(event, StepEvent):
            return [self._apply_step(event)]
        if isinstance(event, VerificationEvent):
            return self._apply_verification(event)
        if isinstance(event, BugEvent):
            self.bug_reports.append(event.message)
            self._log_line(f"Bug reported: {event.message}")
            return [self._status(f"Bug reported: {event.message}", "bug")]
        if isinstance(event, NewTabEvent):
            return [self._status(f"New tab opened: {event.target_id}", "newTab")]
        if isinstance(event, (LocatingEvent, AbstractingEvent, OtherEvent)):
            return [self._status(event.raw, event.kind)]
        if isinstance(event, ReIdentifyingEvent):
            return [self._status("Checking page re-identification...", event.kind)]
        if isinstance(event, CodeEvent):
            return [self._status(f"Executing proposed code, {event.raw}", event.kind)]
        if isinstance(event, ProposingActionEvent):
            return [self._status("Reasoning next action...", event.kind)]
        raise TypeError(f"Unhandled log event: {event!r}")

    def _apply_step(self, ev: StepEvent) -> StepUpdate:
        update = StepUpdate(
            test_id=self.test_id, step_number=ev.step, status=ev.status, action=ev.action,
        )
        if ev.status == "started":
            self.current_step = ev.step
            update.message = f"Step {ev.step}: {ev.action or ''}"
        elif ev.status == "passed":
            self.completed_steps.add(ev.step)
            update.message = f"✅ Step {ev.step} passed"
        else:
            self.completed_steps.add(ev.step)
            if ev.error:
                self.step_errors.append(ev.error)
            update.message = f"❌ Step {ev.step} failed: {ev.error or ''}"
            update.error = ev.error
        return update

    def _apply_verification(
        self, ev: VerificationEvent,
    ) -> list[StepUpdate | StatusUpdate | TestFinished]:
        update = StepUpdate(test_id=self.test_id, step_number=ev.step, status=ev.status)
        if ev.status == "verifying":
            update.message = f"Step {ev.step}: Verifying - {ev.expectation or ''}"
            return [update]
        if ev.status == "verifyPassed":
            self.verified_steps.add(ev.step)
            update.message = f"✅ Step {ev.step} verification passed"
            return [update]

        error = ev.error or "Verification failed"
        self.step_errors.append(error)
        update.message = f"❌ Step {ev.step} verification failed: {ev.error or ''}"
        update.error = error
        messages: list[StepUpdate | StatusUpdate | TestFinished] = [update]

        # Early termination: the run is failed now, even though the agent
        # may still be running. A pending user stop wins instead.
        if self.is_finished or self.stop_requested:
            return messages
        self._log_line(
            f"[{self.test.name}] Test FAILED - verification failed at step {ev.step}: {error}"
        )
        self._finish(RunState.FAILED, [error], steps_executed=ev.step)
        messages.append(self._finished_message())
        return messages

    def _status(self, message: str, event_type: str) -> StatusUpdate:
        return StatusUpdate(test_id=self.test_id, message=message, event_type=event_type)

    def _log_line(self, line: str) -> None:
        if self.log is not None:
            self.log.write_line(line)


def _killed_by_stop_signal(returncode: Optional[int]) -> bool:
    # asyncio reports death-by-signal as a negative return code.
    if returncode is None or returncode >= 0:
        return False
    try:
        return signal.Signals(-returncode) in STOP_SIGNALS
    except ValueError:
        return False
