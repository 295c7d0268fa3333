"""Tests for the per-run state machine."""

import signal
from unittest.mock import Mock

import pytest

from webpilot.executor.run_execution import RunExecution
from webpilot.executor.run_log import RunLog
from webpilot.models.events import (
    AbstractingEvent,
    BugEvent,
    CodeEvent,
    NewTabEvent,
    ProposingActionEvent,
    ReIdentifyingEvent,
    StepEvent,
    VerificationEvent,
)
from webpilot.models.messages import StatusUpdate, StepUpdate, TestFinished
from webpilot.models.run_result import RunState


def _running(test_item) -> RunExecution:
    run = RunExecution(test_item)
    run.attach_tab(Mock(target_id="T1"))
    run.mark_running(Mock())
    return run


class TestLifecycle:
    """State transitions before any output arrives."""

    def test_initial_state(self, test_item):
        run = RunExecution(test_item)
        assert run.state == RunState.PENDING
        assert run.total_steps == 2
        assert run.current_step == 0
        assert run.result is None
        assert not run.is_running

    def test_running_requires_tab(self, test_item):
        run = RunExecution(test_item)
        with pytest.raises(RuntimeError):
            run.mark_running(Mock())
        assert run.state == RunState.PENDING

    def test_mark_running(self, test_item):
        run = _running(test_item)
        assert run.state == RunState.RUNNING
        assert run.is_running

    def test_launching_until_running_or_failed(self, test_item):
        run = RunExecution(test_item)
        assert run.is_launching
        assert not _running(test_item).is_launching
        run.fail_to_launch("boom")
        assert not run.is_launching

    def test_stop_before_spawn_finishes_stopped(self, test_item):
        run = RunExecution(test_item)
        run.request_stop()
        finished = run.on_exit(None)
        assert finished.result.status == RunState.STOPPED
        assert not run.is_launching

    def test_finished_message_requires_result(self, test_item):
        with pytest.raises(RuntimeError, match="no result"):
            RunExecution(test_item)._finished_message()

    def test_launch_failure_is_errored(self, test_item):
        run = RunExecution(test_item)
        finished = run.fail_to_launch("Tab creation failed")
        assert run.state == RunState.ERRORED
        assert isinstance(finished, TestFinished)
        assert finished.duration == 0
        assert finished.result.success is False
        assert finished.result.steps_executed == 0
        assert finished.result.errors == ["Tab creation failed"]

    def test_launch_failure_without_message(self, test_item):
        finished = RunExecution(test_item).fail_to_launch("")
        assert finished.result.errors == ["Failed to start test"]

    def test_request_stop_once(self, test_item):
        run = _running(test_item)
        assert run.request_stop() is True
        assert run.request_stop() is False


class TestEventApplication:
    """Parsed events mutate progress and yield UI messages."""

    def test_step_started_sets_current_step(self, test_item):
        run = _running(test_item)
        messages = run.apply(StepEvent(step=2, action="click buy", status="started"))
        assert run.current_step == 2
        assert len(messages) == 1
        assert isinstance(messages[0], StepUpdate)
        assert messages[0].message == "Step 2: click buy"

    def test_step_passed_and_failed_complete_step(self, test_item):
        run = _running(test_item)
        run.apply(StepEvent(step=1, status="passed"))
        messages = run.apply(StepEvent(step=2, status="failed", error="timeout"))
        assert run.completed_steps == {1, 2}
        assert run.step_errors == ["timeout"]
        assert messages[0].error == "timeout"
        assert messages[0].message == "❌ Step 2 failed: timeout"

    def test_verify_passed_records_step(self, test_item):
        run = _running(test_item)
        messages = run.apply(VerificationEvent(step=1, status="verifyPassed"))
        assert run.verified_steps == {1}
        assert messages[0].message == "✅ Step 1 verification passed"
        assert run.result is None

    def test_verify_failed_finishes_early(self, test_item):
        run = _running(test_item)
        messages = run.apply(VerificationEvent(step=2, status="verifyFailed", error="wrong title"))

        assert [type(m) for m in messages] == [StepUpdate, TestFinished]
        finished = messages[1]
        assert finished.result.status == RunState.FAILED
        assert finished.result.steps_executed == 2
        assert finished.result.errors == ["wrong title"]
        assert run.state == RunState.FAILED

    def test_second_verify_failure_does_not_refinish(self, test_item):
        run = _running(test_item)
        run.apply(VerificationEvent(step=1, status="verifyFailed", error="first"))
        messages = run.apply(VerificationEvent(step=2, status="verifyFailed", error="second"))
        assert [type(m) for m in messages] == [StepUpdate]
        assert run.result.errors == ["first"]

    def test_verify_failure_after_stop_request_is_not_terminal(self, test_item):
        run = _running(test_item)
        run.request_stop()
        messages = run.apply(VerificationEvent(step=1, status="verifyFailed", error="late"))
        assert [type(m) for m in messages] == [StepUpdate]
        assert run.result is None

    def test_bug_event_is_recorded(self, test_item):
        run = _running(test_item)
        messages = run.apply(BugEvent(message="Cart empty"))
        assert run.bug_reports == ["Cart empty"]
        assert run.state == RunState.RUNNING
        assert isinstance(messages[0], StatusUpdate)
        assert messages[0].event_type == "bug"
        assert messages[0].message == "Bug reported: Cart empty"

    def test_display_events(self, test_item):
        run = _running(test_item)
        texts = [
            run.apply(CodeEvent(raw="page.click('#x')"))[0].message,
            run.apply(ProposingActionEvent(raw="Reasoning next action..."))[0].message,
            run.apply(ReIdentifyingEvent(raw="Checking page re-identification"))[0].message,
            run.apply(AbstractingEvent(raw="Abstracting page..."))[0].message,
            run.apply(NewTabEvent(target_id="T2"))[0].message,
        ]
        assert texts == [
            "Executing proposed code, page.click('#x')",
            "Reasoning next action...",
            "Checking page re-identification...",
            "Abstracting page...",
            "New tab opened: T2",
        ]
        assert run.result is None


class TestProcessExit:
    """Terminal outcome on agent exit."""

    def test_exit_zero_passes(self, test_item):
        run = _running(test_item)
        run.apply(StepEvent(step=1, status="passed"))
        run.apply(StepEvent(step=2, status="passed"))
        finished = run.on_exit(0)
        assert finished.result.status == RunState.PASSED
        assert finished.result.success is True
        assert finished.result.steps_executed == 2
        assert not run.is_running
        assert run.end_time is not None

    def test_exit_zero_after_verify_failure_keeps_failure(self, test_item):
        run = _running(test_item)
        run.apply(VerificationEvent(step=1, status="verifyFailed", error="mismatch"))
        assert run.on_exit(0) is None
        assert run.result.status == RunState.FAILED
        assert run.result.errors == ["mismatch"]

    def test_nonzero_exit_prefers_bug_reports(self, test_item):
        run = _running(test_item)
        run.append_output("stdout", "STEP_1: x\nBug reported: total wrong\nBug reported: no tax\n")
        run.apply(StepEvent(step=1, status="failed", error="timeout"))
        run.append_output("stderr", "Traceback ...")
        finished = run.on_exit(1)
        assert finished.result.status == RunState.FAILED
        assert finished.result.errors == ["total wrong", "no tax"]

    def test_nonzero_exit_uses_step_errors(self, test_item):
        run = _running(test_item)
        run.apply(StepEvent(step=1, status="failed", error="timeout"))
        run.append_output("stderr", "Traceback ...")
        assert run.on_exit(1).result.errors == ["timeout"]

    def test_nonzero_exit_uses_stderr(self, test_item):
        run = _running(test_item)
        run.append_output("stderr", "  ModuleNotFoundError: baml  \n")
        assert run.on_exit(2).result.errors == ["ModuleNotFoundError: baml"]

    def test_nonzero_exit_generic_message(self, test_item):
        run = _running(test_item)
        assert run.on_exit(3).result.errors == ["Process exited with code 3"]

    def test_killed_by_sigterm_is_stopped(self, test_item):
        run = _running(test_item)
        finished = run.on_exit(-signal.SIGTERM)
        assert finished.result.status == RunState.STOPPED
        assert finished.result.errors == []

    def test_killed_by_other_signal_is_failed(self, test_item):
        run = _running(test_item)
        assert run.on_exit(-signal.SIGSEGV).result.status == RunState.FAILED

    def test_stop_request_beats_exit_code(self, test_item):
        run = _running(test_item)
        run.request_stop()
        assert run.on_exit(1).result.status == RunState.STOPPED

    def test_second_exit_is_ignored(self, test_item):
        run = _running(test_item)
        run.on_exit(0)
        assert run.on_exit(1) is None
        assert run.result.status == RunState.PASSED


class TestOutputBuffers:
    """stdout/stderr accumulation and the per-run log."""

    def test_buffers_accumulate_in_order(self, test_item):
        run = _running(test_item)
        run.append_output("stdout", "a")
        run.append_output("stdout", "b")
        run.append_output("stderr", "c")
        assert run.stdout_text == "ab"
        assert run.stderr_text == "c"

    def test_output_mirrored_to_run_log(self, test_item, tmp_path):
        run = _running(test_item)
        run.log = RunLog(tmp_path / "logs", test_item.id, test_item.name)
        run.append_output("stdout", "STEP_1: open\n")
        run.on_exit(0)
        run.log.close()

        content = run.log.path.read_text()
        assert "STEP_1: open" in content
        assert "Test completed successfully" in content
        assert "channel closing" in content
