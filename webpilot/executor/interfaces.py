"""Collaborator interfaces consumed by the executor, plus executor errors.

The coordinator only talks to the browser, the agent process, the frame
capture and the definition store through these protocols, so tests and
alternative backends can supply their own implementations.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol

from webpilot.models.messages import SinkEvent
from webpilot.models.workspace import Definition, EnvironmentItem, FolderItem, TestItem


class RunnerError(Exception):
    """Base class for errors raised while launching or driving a run."""


class BrowserNotConnectedError(RunnerError):
    """Raised when a tab is requested before the browser session exists."""


class AgentLaunchError(RunnerError):
    """Raised when the external test agent cannot be started."""


class EventSink(Protocol):
    def emit(self, event: SinkEvent) -> None: ...


class ByteStream(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class AgentProcessHandle(Protocol):
    stdout: ByteStream
    stderr: ByteStream

    @property
    def pid(self) -> Optional[int]: ...

    @property
    def returncode(self) -> Optional[int]: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessLauncher(Protocol):
    async def spawn(self, test: TestItem, target_id: str) -> AgentProcessHandle: ...


class BrowserTab(Protocol):
    @property
    def target_id(self) -> str: ...

    def current_url(self) -> str: ...

    def is_closed(self) -> bool: ...

    async def close(self) -> None: ...


class BrowserSession(Protocol):
    async def new_tab(self) -> BrowserTab: ...

    def tabs(self) -> list[BrowserTab]: ...

    async def close_all_tabs(self) -> None: ...

    async def close(self) -> None: ...


class BrowserSessionProvider(Protocol):
    async def connect(self, endpoint: str) -> BrowserSession: ...


FrameAck = Callable[[], Awaitable[None]]
FrameHandler = Callable[[str, FrameAck], Awaitable[None]]


class CaptureStream(Protocol):
    async def stop(self) -> None: ...


class FrameCaptureProvider(Protocol):
    async def start_capture(self, tab: BrowserTab, on_frame: FrameHandler) -> CaptureStream: ...


class DefinitionStore(Protocol):
    def get_by_id(self, item_id: str) -> Optional[Definition]: ...

    def get_by_folder(self, folder_id: str) -> list[TestItem]: ...

    def get_folder(self, folder_id: str) -> Optional[FolderItem]: ...

    def update(self, path: str, definition: Definition) -> None: ...


class EnvironmentSelector(Protocol):
    def selected(self) -> Optional[EnvironmentItem]: ...
