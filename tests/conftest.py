"""Pytest configuration and shared fixtures."""

import asyncio
import signal
from pathlib import Path
from typing import Optional

import pytest

from webpilot.executor.coordinator import ExecutionCoordinator
from webpilot.executor.interfaces import AgentLaunchError
from webpilot.models.config import RunnerConfig, ScreencastConfig
from webpilot.models.workspace import TestAction, TestItem


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def runner_config(tmp_path: Path) -> RunnerConfig:
    """Create a runner configuration rooted in a temporary workspace."""
    return RunnerConfig(
        workspace_root=str(tmp_path),
        launch_delay_seconds=0,
        stop_grace_seconds=0.05,
        screencast=ScreencastConfig(enabled=True),
    )


def _build_test(test_id: str = "tc_001", name: str = "", steps: int = 2) -> TestItem:
    """Create a TestItem with ``steps`` numbered actions."""
    return TestItem(
        id=test_id,
        name=name or f"Test {test_id}",
        url="https://example.com",
        full_path=f"/workspace/.webtestpilot/.test/{test_id}.json",
        actions=[
            TestAction(action=f"Do step {i}", expected_result=f"Step {i} done")
            for i in range(1, steps + 1)
        ],
    )


@pytest.fixture
def make_test():
    """Factory for test definitions: make_test(test_id, name=..., steps=...)."""
    return _build_test


@pytest.fixture
def test_item() -> TestItem:
    """Create a single two-step test definition."""
    return _build_test()


# ============================================================================
# Agent Process Fakes
# ============================================================================


class FakeProcess:
    """In-process stand-in for an agent subprocess.

    Output is fed into real ``asyncio.StreamReader`` objects; ``exit()``
    closes both streams and resolves ``wait()``.
    """

    def __init__(self, pid: int = 4242, ignore_terminate: bool = False):
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.pid = pid
        self.returncode: Optional[int] = None
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = asyncio.get_running_loop().create_future()

    def write_stdout(self, text: str) -> None:
        self.stdout.feed_data(text.encode("utf-8"))

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode("utf-8"))

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set_result(code)

    async def wait(self) -> int:
        return await asyncio.shield(self._exited)

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.exit(-signal.SIGTERM)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-signal.SIGKILL)


class FakeLauncher:
    """Process launcher that records spawns and hands out FakeProcess objects."""

    def __init__(self, fail_for: set[str] | None = None, auto_exit: Optional[int] = None,
                 ignore_terminate: bool = False):
        self.fail_for = fail_for or set()
        self.auto_exit = auto_exit
        self.ignore_terminate = ignore_terminate
        self.spawned: list[tuple[str, str]] = []
        self.processes: dict[str, FakeProcess] = {}
        # When set, spawn blocks until the event fires.
        self.gate: Optional[asyncio.Event] = None

    async def spawn(self, test: TestItem, target_id: str) -> FakeProcess:
        if self.gate is not None:
            await self.gate.wait()
        if test.id in self.fail_for:
            raise AgentLaunchError(f"Failed to start agent process for {test.id}")
        process = FakeProcess(pid=1000 + len(self.spawned), ignore_terminate=self.ignore_terminate)
        self.spawned.append((test.id, target_id))
        self.processes[test.id] = process
        if self.auto_exit is not None:
            asyncio.get_running_loop().call_soon(process.exit, self.auto_exit)
        return process


# ============================================================================
# Browser Fakes
# ============================================================================


class FakeTab:
    def __init__(self, target_id: str, url: str = "https://example.com/"):
        self.target_id = target_id
        self.url = url
        self.closed = False

    def current_url(self) -> str:
        return self.url

    def is_closed(self) -> bool:
        return self.closed

    async def close(self) -> None:
        self.closed = True


class FakeSession:
    """Browser session whose n-th ``new_tab`` call (1-based) can be made to fail."""

    def __init__(self, fail_on: set[int] | None = None, fail_close: bool = False):
        self.fail_on = fail_on or set()
        self.fail_close = fail_close
        self.opened: list[FakeTab] = []
        self.close_all_calls = 0
        self.closed = False
        self._requests = 0

    async def new_tab(self) -> FakeTab:
        self._requests += 1
        if self._requests in self.fail_on:
            raise RuntimeError("Tab creation failed")
        tab = FakeTab(f"target-{self._requests}")
        self.opened.append(tab)
        return tab

    def tabs(self) -> list[FakeTab]:
        return [t for t in self.opened if not t.closed]

    async def close_all_tabs(self) -> None:
        self.close_all_calls += 1
        for tab in self.opened:
            tab.closed = True

    async def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise RuntimeError("Browser already gone")


class FakeBrowserProvider:
    def __init__(self, session: FakeSession | None = None, error: Exception | None = None):
        self.session = session or FakeSession()
        self.error = error
        self.endpoints: list[str] = []

    async def connect(self, endpoint: str) -> FakeSession:
        self.endpoints.append(endpoint)
        if self.error is not None:
            raise self.error
        return self.session


class FakeCaptureStream:
    def __init__(self, tab: FakeTab, on_frame):
        self.tab = tab
        self.on_frame = on_frame
        self.stopped = False
        self.acks = 0

    async def push(self, data: str) -> None:
        async def ack() -> None:
            self.acks += 1

        await self.on_frame(data, ack)

    async def stop(self) -> None:
        self.stopped = True


class FakeCaptureProvider:
    def __init__(self):
        self.streams: list[FakeCaptureStream] = []

    async def start_capture(self, tab: FakeTab, on_frame) -> FakeCaptureStream:
        stream = FakeCaptureStream(tab, on_frame)
        self.streams.append(stream)
        return stream


# ============================================================================
# Sink
# ============================================================================


class RecordingSink:
    """Sink that keeps every event it receives, in order."""

    def __init__(self):
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.type == event_type]

    def finished(self, test_id: str) -> list:
        return [e for e in self.of_type("testFinished") if e.test_id == test_id]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


# ============================================================================
# Coordinator
# ============================================================================




class CoordinatorHarness:
    """An ExecutionCoordinator wired to fakes, plus handles on every fake."""

    def __init__(self, config: RunnerConfig, session: FakeSession, launcher: FakeLauncher,
                 connect_error: Exception | None = None, store=None):
        self.session = session
        self.provider = FakeBrowserProvider(session, error=connect_error)
        self.launcher = launcher
        self.capture = FakeCaptureProvider()
        self.sink = RecordingSink()
        self.coordinator = ExecutionCoordinator(
            config,
            browser_provider=self.provider,
            launcher=launcher,
            capture_provider=self.capture,
            store=store,
        )
        self.coordinator.subscribe(self.sink)

    def process(self, test_id: str) -> FakeProcess:
        return self.launcher.processes[test_id]

    async def settle(self, rounds: int = 20) -> None:
        """Let pump tasks drain whatever output has been fed so far."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def finish_all(self, code: int = 0, timeout: float = 2.0) -> None:
        for process in self.launcher.processes.values():
            process.exit(code)
        await asyncio.wait_for(self.coordinator.wait_for_all(), timeout=timeout)


@pytest.fixture
def harness_factory(runner_config: RunnerConfig):
    """Factory for coordinator harnesses.

    Keyword arguments: ``fail_tabs_on`` (1-based tab requests that raise),
    ``fail_spawn_for`` (test ids whose launch raises), ``ignore_terminate``,
    ``fail_close``, ``connect_error`` and ``store``.
    """

    def factory(fail_tabs_on: set[int] | None = None, fail_spawn_for: set[str] | None = None,
                ignore_terminate: bool = False, fail_close: bool = False,
                connect_error: Exception | None = None, store=None) -> CoordinatorHarness:
        return CoordinatorHarness(
            runner_config,
            session=FakeSession(fail_on=fail_tabs_on, fail_close=fail_close),
            launcher=FakeLauncher(fail_for=fail_spawn_for, ignore_terminate=ignore_terminate),
            connect_error=connect_error,
            store=store,
        )

    return factory


@pytest.fixture
def fake_process_factory():
    """Factory for FakeProcess objects; call from inside a running event loop."""
    return FakeProcess


@pytest.fixture
def fake_launcher_factory():
    return FakeLauncher


@pytest.fixture
def fake_provider_factory():
    """Factory for (provider, session) pairs used by CLI-level tests."""

    def factory() -> tuple[FakeBrowserProvider, FakeSession]:
        session = FakeSession()
        return FakeBrowserProvider(session), session

    return factory
