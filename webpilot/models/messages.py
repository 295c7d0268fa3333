"""Messages exchanged with the UI: outbound sink events and inbound commands.

Both directions are closed tagged unions keyed on a literal field, so a new
message kind has to be added to the union (and to every exhaustive match)
before it can be sent or handled.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from webpilot.models.run_result import RunResult


def _now_ms() -> int:
    return int(time.time() * 1000)


class _Message(BaseModel):
    """Base for wire messages: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Outbound (coordinator -> sink)
# ---------------------------------------------------------------------------


class Connected(_Message):
    type: Literal["connected"] = "connected"
    folder_name: str = ""


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    message: str


class TestStarted(_Message):
    type: Literal["testStarted"] = "testStarted"
    test_id: str
    test_name: str = ""
    url: str = ""
    target_id: str = ""
    total_steps: int = 0


class StepUpdate(_Message):
    type: Literal["stepUpdate"] = "stepUpdate"
    test_id: str
    step_number: int
    status: str  # started, passed, failed, verifying, verifyPassed, verifyFailed
    message: str = ""
    action: Optional[str] = None
    error: Optional[str] = None


class StatusUpdate(_Message):
    """Display-only progress text derived from annotation events."""
    type: Literal["statusUpdate"] = "statusUpdate"
    test_id: str
    message: str
    event_type: str = ""


class LogMessage(_Message):
    type: Literal["logMessage"] = "logMessage"
    test_id: str
    channel: Literal["stdout", "stderr"]
    text: str
    timestamp: int = Field(default_factory=_now_ms)


class Screenshot(_Message):
    type: Literal["screenshot"] = "screenshot"
    test_id: str
    data: str
    url: str = ""
    timestamp: int = Field(default_factory=_now_ms)


class TestFinished(_Message):
    type: Literal["testFinished"] = "testFinished"
    test_id: str
    result: RunResult
    duration: int = 0  # milliseconds


class TestLogs(_Message):
    type: Literal["testLogs"] = "testLogs"
    test_id: str
    stdout: str = ""
    stderr: str = ""
    log_path: Optional[str] = None


class TabsCleared(_Message):
    type: Literal["tabsCleared"] = "tabsCleared"


SinkEvent = Annotated[
    Union[
        Connected,
        ErrorMessage,
        TestStarted,
        StepUpdate,
        StatusUpdate,
        LogMessage,
        Screenshot,
        TestFinished,
        TestLogs,
        TabsCleared,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Inbound (UI -> coordinator)
# ---------------------------------------------------------------------------


class Ready(_Message):
    command: Literal["ready"] = "ready"


class StopTest(_Message):
    command: Literal["stopTest"] = "stopTest"
    test_id: str


class StopAll(_Message):
    command: Literal["stopAll"] = "stopAll"


class ViewLogs(_Message):
    command: Literal["viewLogs"] = "viewLogs"
    test_id: str
    test_name: str = ""


class ClearTabs(_Message):
    command: Literal["clearTabs"] = "clearTabs"


PanelCommand = Annotated[
    Union[Ready, StopTest, StopAll, ViewLogs, ClearTabs],
    Field(discriminator="command"),
]

_command_adapter: TypeAdapter = TypeAdapter(PanelCommand)


def parse_command(payload: dict[str, Any]) -> Ready | StopTest | StopAll | ViewLogs | ClearTabs:
    """Validate a raw inbound payload into a typed command.

    Raises pydantic.ValidationError for unknown commands or missing fields.
    """
    return _command_adapter.validate_python(payload)
