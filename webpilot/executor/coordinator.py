"""Execution coordinator — runs many tests in parallel, one browser tab each.

Every test gets its own tab in the shared browser session and its own agent
process. The coordinator pumps each process's output through the log parser
into that run's ``RunExecution`` and forwards the derived events to the
subscribed sinks. Everything runs on one asyncio loop, so the run map needs
no locking. After any ``await``, though, a run must be looked up again by
test id and checked against the map before it is used.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Sequence

from webpilot.models.config import RunnerConfig
from webpilot.models.messages import (
    ClearTabs,
    Connected,
    ErrorMessage,
    LogMessage,
    Ready,
    Screenshot,
    SinkEvent,
    StopAll,
    StopTest,
    TabsCleared,
    TestLogs,
    TestStarted,
    ViewLogs,
)
from webpilot.models.workspace import TestItem
from webpilot.parser.log_parser import LogEventParser

from .agent_process import terminate_gracefully
from .interfaces import (
    AgentProcessHandle,
    BrowserNotConnectedError,
    BrowserSession,
    BrowserSessionProvider,
    ByteStream,
    DefinitionStore,
    EventSink,
    FrameAck,
    FrameCaptureProvider,
    ProcessLauncher,
)
from .run_execution import Channel, RunExecution
from .run_log import RunLog

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class ExecutionCoordinator:
    """Owns the run map and drives every run's lifecycle."""

    def __init__(
        self,
        config: RunnerConfig,
        browser_provider: BrowserSessionProvider,
        launcher: ProcessLauncher,
        capture_provider: FrameCaptureProvider | None = None,
        store: DefinitionStore | None = None,
        parser: LogEventParser | None = None,
    ):
        self.config = config
        self.browser_provider = browser_provider
        self.launcher = launcher
        self.capture_provider = capture_provider
        self.store = store
        self.parser = parser or LogEventParser(config.parser_mode)

        self._session: Optional[BrowserSession] = None
        self._executions: dict[str, RunExecution] = {}
        self._retired: list[RunExecution] = []
        self._sinks: list[EventSink] = []
        self._watchers: set[asyncio.Task] = set()
        self._stoppers: set[asyncio.Task] = set()
        self._disposed = False
        # Bumped by every clear; launches from an older batch stop at their next await.
        self._generation = 0

    # ------------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------------

    def subscribe(self, sink: EventSink) -> Callable[[], None]:
        """Register a sink. Returns a callable that unsubscribes it."""
        self._sinks.append(sink)

        def unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return unsubscribe

    def _emit(self, event: SinkEvent) -> None:
        for sink in list(self._sinks):
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning("Sink %r failed on %s: %s", sink, event.type, e)

    def _emit_for(self, run: RunExecution, event: SinkEvent) -> None:
        """Emit on behalf of a run, unless the run has been replaced or cleared."""
        if self._executions.get(run.test_id) is not run:
            logger.debug("Discarding %s for retired run %s", event.type, run.test_id)
            return
        self._emit(event)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def executions(self) -> Mapping[str, RunExecution]:
        """Read-only view of the run map, in launch order."""
        return MappingProxyType(self._executions)

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    def running_test_ids(self) -> list[str]:
        return [test_id for test_id, run in self._executions.items() if run.is_running]

    # ------------------------------------------------------------------
    # Browser connection
    # ------------------------------------------------------------------

    async def connect(self, folder_name: str = "") -> bool:
        """Attach to the shared browser session. Emits ``connected`` or ``error``."""
        try:
            self._session = await self.browser_provider.connect(self.config.cdp_endpoint)
        except Exception as e:
            logger.error("Failed to connect to browser at %s: %s", self.config.cdp_endpoint, e)
            self._emit(ErrorMessage(message=f"Connection failed: {e}"))
            return False

        logger.info("Connected to browser at %s", self.config.cdp_endpoint)
        self._emit(Connected(folder_name=folder_name))
        return True

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def start_folder(self, folder_id: str) -> list[str]:
        """Start a batch with every test under a folder, sub-folders included."""
        if self.store is None:
            raise RuntimeError("No definition store configured")
        tests = self.store.get_by_folder(folder_id)
        if not tests:
            folder = self.store.get_folder(folder_id)
            name = folder.name if folder else folder_id
            self._emit(ErrorMessage(message=f'No test cases found in folder "{name}"'))
            return []
        await self.start_batch(tests)
        return [t.id for t in tests]

    async def start_batch(self, tests: Sequence[TestItem]) -> None:
        """Clear previous runs and tabs, then launch each test in order.

        Launches are separated by a fixed delay; once launched, runs proceed
        fully in parallel. A failed launch is recorded and the batch goes on.
        """
        generation = await self._clear()

        logger.info("Starting parallel execution of %d tests", len(tests))
        for index, test in enumerate(tests):
            if index > 0:
                await asyncio.sleep(self.config.launch_delay_seconds)
            if not self._batch_is_current(generation):
                logger.info("Batch superseded, %d tests not started", len(tests) - index)
                return
            logger.info("Starting test %d/%d: %s", index + 1, len(tests), test.name)
            await self._start_single(test, generation)
        logger.info("All test processes started")

    def _batch_is_current(self, generation: int) -> bool:
        return not self._disposed and generation == self._generation

    def _launch_is_current(self, run: RunExecution, generation: int) -> bool:
        return self._batch_is_current(generation) and self._executions.get(run.test_id) is run

    async def _start_single(self, test: TestItem, generation: Optional[int] = None) -> None:
        if generation is None:
            generation = self._generation

        previous = self._executions.get(test.id)
        if previous is not None:
            self._retire(previous)
            if previous.is_running or previous.is_launching:
                await self._stop(previous)
            if not self._batch_is_current(generation):
                return

        run = RunExecution(test)
        self._executions[test.id] = run

        try:
            if self._session is None:
                raise BrowserNotConnectedError("Browser not connected")
            tab = await self._session.new_tab()
            run.attach_tab(tab)
            if run.stop_requested or not self._launch_is_current(run, generation):
                await self._abandon_launch(run)
                return
            logger.info("[%s] Tab target: %s", test.name, tab.target_id)

            run.log = RunLog(self.config.log_path, test.id, test.name)
            process = await self.launcher.spawn(test, tab.target_id)
            if run.stop_requested or not self._launch_is_current(run, generation):
                await self._abandon_launch(run, process)
                return
            run.mark_running(process)
        except Exception as e:
            logger.error("[%s] Failed to start: %s", test.name, e)
            finished = run.fail_to_launch(str(e) or type(e).__name__)
            await self._release(run)
            self._emit_for(run, finished)
            return

        self._emit_for(run, TestStarted(
            test_id=test.id,
            test_name=test.name,
            url=test.url,
            target_id=tab.target_id,
            total_steps=run.total_steps,
        ))
        await self._start_capture(run)

        task = asyncio.create_task(self._watch(run), name=f"watch-{test.id}")
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _abandon_launch(self, run: RunExecution, process: Optional[AgentProcessHandle] = None) -> None:
        """Undo a launch that was stopped, cleared or disposed while it was in flight."""
        logger.info("[%s] Launch cancelled, releasing its tab", run.test.name)
        run.request_stop()
        returncode: Optional[int] = None
        if process is not None:
            run.process = process
            returncode = await terminate_gracefully(process, self.config.stop_grace_seconds)
        finished = run.on_exit(returncode)
        await self._release(run)
        if run in self._retired:
            self._retired.remove(run)
        if finished is not None:
            self._emit_for(run, finished)

    async def wait_for_all(self) -> None:
        """Wait until every launched agent has exited and been accounted for."""
        while self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)

    # ------------------------------------------------------------------
    # Output multiplexing
    # ------------------------------------------------------------------

    async def _watch(self, run: RunExecution) -> None:
        process = run.process
        if process is None:
            raise RuntimeError(f"Run {run.test_id} has no agent process")
        returncode: Optional[int] = None
        try:
            await asyncio.gather(
                self._pump(run, "stdout", process.stdout),
                self._pump(run, "stderr", process.stderr),
            )
            returncode = await process.wait()
        except Exception as e:
            logger.error("[%s] Lost agent process: %s", run.test.name, e)
            returncode = process.returncode
        finally:
            await self._on_process_exit(run, returncode)

    async def _pump(self, run: RunExecution, channel: Channel, stream: ByteStream) -> None:
        # Only whole lines reach the parser; a trailing partial line waits for the next read.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                tail = pending + decoder.decode(b"", final=True)
                if tail:
                    self._dispatch_output(run, channel, tail)
                return
            complete, newline, pending = (pending + decoder.decode(chunk)).rpartition("\n")
            if newline:
                self._dispatch_output(run, channel, complete + newline)

    def handle_output(self, test_id: str, channel: Channel, text: str) -> None:
        """Feed a chunk of agent output for a test. Unknown test ids are ignored."""
        run = self._executions.get(test_id)
        if run is None:
            logger.debug("Discarding output for unknown test %s", test_id)
            return
        self._dispatch_output(run, channel, text)

    def _dispatch_output(self, run: RunExecution, channel: Channel, text: str) -> None:
        run.append_output(channel, text)
        if self._executions.get(run.test_id) is not run:
            return

        self._emit(LogMessage(test_id=run.test_id, channel=channel, text=text.strip()))
        for event in self.parser.parse(text):
            for message in run.apply(event):
                self._emit(message)

    async def _on_process_exit(self, run: RunExecution, returncode: Optional[int]) -> None:
        finished = run.on_exit(returncode)
        logger.info("[%s] Agent exited with code %s (%s)",
                    run.test.name, returncode, run.state.value)
        await self._stop_capture(run)
        if finished is not None:
            self._emit_for(run, finished)
        if run in self._retired:
            self._retired.remove(run)
            if run.log is not None:
                run.log.close()

    # ------------------------------------------------------------------
    # Frame capture
    # ------------------------------------------------------------------

    async def _start_capture(self, run: RunExecution) -> None:
        if self.capture_provider is None or not self.config.screencast.enabled:
            return
        tab = run.tab
        if tab is None:
            raise RuntimeError(f"Run {run.test_id} has no tab attached")

        async def on_frame(data: str, ack: FrameAck) -> None:
            self._emit_for(run, Screenshot(test_id=run.test_id, data=data, url=tab.current_url()))
            await ack()

        try:
            run.capture = await self.capture_provider.start_capture(tab, on_frame)
            logger.debug("[%s] Screencast started", run.test.name)
        except Exception as e:
            logger.warning("[%s] Could not start screencast: %s", run.test.name, e)
        if run.stop_requested or not run.is_running:
            await self._stop_capture(run)

    async def _stop_capture(self, run: RunExecution) -> None:
        capture, run.capture = run.capture, None
        if capture is None:
            return
        try:
            await capture.stop()
        except Exception as e:
            logger.warning("[%s] Stopping screencast failed: %s", run.test.name, e)

    # ------------------------------------------------------------------
    # Stop / clear / dispose
    # ------------------------------------------------------------------

    async def stop_run(self, test_id: str) -> None:
        """Ask a running test to stop.

        Sends SIGTERM now and SIGKILL after the grace period if needed. The
        run's state changes later, when the process actually exits.
        """
        run = self._executions.get(test_id)
        if run is None or not (run.is_running or run.is_launching):
            return
        await self._stop(run)

    async def _stop(self, run: RunExecution) -> None:
        if not run.request_stop():
            return
        logger.info("[%s] Stopping test", run.test.name)
        await self._stop_capture(run)

        process = run.process
        if process is None:
            return
        task = asyncio.create_task(
            terminate_gracefully(process, self.config.stop_grace_seconds),
            name=f"stop-{run.test_id}",
        )
        self._stoppers.add(task)
        task.add_done_callback(self._stoppers.discard)

    async def stop_all_runs(self) -> None:
        """Stop every running test. Safe to call when nothing is running."""
        running = [run for run in self._executions.values() if run.is_running or run.is_launching]
        if running:
            logger.info("Stopping %d running tests", len(running))
        for run in running:
            await self._stop(run)

    async def clear_all_tabs(self) -> None:
        """Close every tab in the session and forget all runs."""
        await self._clear()

    async def _clear(self) -> int:
        """Retire every run and close all tabs. Returns the new batch generation."""
        self._generation += 1
        generation = self._generation
        logger.info("Clearing all browser tabs")
        for run in list(self._executions.values()):
            self._retire(run)
        self._executions.clear()

        for run in list(self._retired):
            if run.is_running:
                await self._stop(run)
                continue
            await self._stop_capture(run)
            if run.log is not None:
                run.log.close()
            if run in self._retired:
                self._retired.remove(run)

        if self._session is not None:
            try:
                await self._session.close_all_tabs()
            except Exception as e:
                logger.warning("Closing browser tabs failed: %s", e)

        self._emit(TabsCleared())
        return generation

    def _retire(self, run: RunExecution) -> None:
        if self._executions.get(run.test_id) is run:
            del self._executions[run.test_id]
        if run not in self._retired:
            self._retired.append(run)

    async def _release(self, run: RunExecution) -> None:
        """Release a run's capture, tab and log channel without raising."""
        await self._stop_capture(run)
        tab, run.tab = run.tab, None
        if tab is not None:
            try:
                if not tab.is_closed():
                    await tab.close()
            except Exception as e:
                logger.warning("[%s] Closing tab failed: %s", run.test.name, e)
        if run.log is not None:
            run.log.close()

    async def show_logs(self, test_id: str, test_name: str = "") -> None:
        run = self._executions.get(test_id)
        if run is None or (not run.stdout and not run.stderr and run.log is None):
            self._emit(ErrorMessage(message=f"No logs available for test: {test_name or test_id}"))
            return
        self._emit(TestLogs(
            test_id=test_id,
            stdout=run.stdout_text,
            stderr=run.stderr_text,
            log_path=str(run.log.path) if run.log is not None else None,
        ))

    async def handle_command(self, command: Ready | StopTest | StopAll | ViewLogs | ClearTabs) -> None:
        """Dispatch an inbound UI command."""
        if isinstance(command, Ready):
            logger.debug("Runner UI ready")
        elif isinstance(command, StopTest):
            await self.stop_run(command.test_id)
        elif isinstance(command, StopAll):
            await self.stop_all_runs()
        elif isinstance(command, ViewLogs):
            await self.show_logs(command.test_id, command.test_name)
        elif isinstance(command, ClearTabs):
            await self.clear_all_tabs()
        else:
            raise TypeError(f"Unknown command: {command!r}")

    async def dispose(self) -> None:
        """Tear everything down. Idempotent, and never raises."""
        if self._disposed:
            return
        self._disposed = True
        logger.debug("Disposing execution coordinator")

        runs = list(self._executions.values()) + self._retired
        for run in runs:
            if run.is_running:
                try:
                    await self._stop(run)
                except Exception as e:
                    logger.warning("[%s] Stopping run failed: %s", run.test.name, e)

        if self._stoppers:
            await asyncio.gather(*list(self._stoppers), return_exceptions=True)

        # Let watchers record real exit codes, then cancel any that are stuck.
        if self._watchers:
            await asyncio.wait(list(self._watchers), timeout=self.config.stop_grace_seconds)
        for task in list(self._watchers):
            task.cancel()
        if self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)

        for run in runs:
            await self._stop_capture(run)
            if run.log is not None:
                run.log.close()

        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception as e:
                logger.warning("Error closing browser: %s", e)

        self._sinks.clear()
