"""Log event structures produced by the log parser."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class StepEvent(BaseModel):
    kind: Literal["step"] = "step"
    step: int = Field(ge=0)
    action: Optional[str] = None
    status: Literal["started", "passed", "failed"]
    error: Optional[str] = None
    raw: str = ""


class VerificationEvent(BaseModel):
    kind: Literal["verification"] = "verification"
    step: int = Field(ge=0)
    expectation: Optional[str] = None
    status: Literal["verifying", "verifyPassed", "verifyFailed"]
    error: Optional[str] = None
    raw: str = ""


class BugEvent(BaseModel):
    kind: Literal["bug"] = "bug"
    message: str
    raw: str = ""


class NewTabEvent(BaseModel):
    kind: Literal["newTab"] = "newTab"
    target_id: str
    raw: str = ""


class LocatingEvent(BaseModel):
    kind: Literal["locating"] = "locating"
    raw: str
    description: Optional[str] = None


class ReIdentifyingEvent(BaseModel):
    kind: Literal["reIdentifying"] = "reIdentifying"
    raw: str


class CodeEvent(BaseModel):
    kind: Literal["code"] = "code"
    raw: str


class AbstractingEvent(BaseModel):
    kind: Literal["abstracting"] = "abstracting"
    raw: str


class ProposingActionEvent(BaseModel):
    kind: Literal["proposingAction"] = "proposingAction"
    raw: str


class OtherEvent(BaseModel):
    kind: Literal["other"] = "other"
    raw: str


LogEvent = Annotated[
    Union[
        StepEvent,
        VerificationEvent,
        BugEvent,
        NewTabEvent,
        LocatingEvent,
        ReIdentifyingEvent,
        CodeEvent,
        AbstractingEvent,
        ProposingActionEvent,
        OtherEvent,
    ],
    Field(discriminator="kind"),
]

# Events that only carry display text and never mutate run state.
DisplayEvent = Union[
    LocatingEvent,
    ReIdentifyingEvent,
    CodeEvent,
    AbstractingEvent,
    ProposingActionEvent,
    OtherEvent,
]
