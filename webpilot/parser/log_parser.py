"""Log parser — turns raw agent output chunks into structured log events.

Recognised per-line markers:

- ``VERIFYING_STEP_N: expectation`` / ``VERIFYING_STEP_N_PASSED`` /
  ``VERIFYING_STEP_N_FAILED: error``
- ``STEP_N: action`` / ``STEP_N_PASSED`` / ``STEP_N_FAILED: error``
- ``Locating element to click: "description"``
- ``Bug reported: message``
- ``NEW_TAB_OPENED: targetId``

Some agent messages span several lines (generated code, page abstraction,
reasoning). When one of their sentinels appears anywhere in a chunk, the
whole chunk becomes a single event and no per-line matching happens.
"""

from __future__ import annotations

import re
from typing import Callable, Literal

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

PROPOSED_CODE = "Proposed code:"
ABSTRACTING_PAGE = "Abstracting page..."
REASONING_NEXT_ACTION = "Reasoning next action..."
CHECKING_REIDENTIFICATION = "Checking page re-identification"

_LINE_SPLIT = re.compile(r"\r?\n")
_BUG_REPORT = re.compile(r"Bug reported:[ \t]*(.*)")


def _verifying(m: re.Match, line: str) -> LogEvent:
    return VerificationEvent(
        step=int(m.group(1)), expectation=m.group(2).strip(),
        status="verifying", raw=line,
    )


def _verify_passed(m: re.Match, line: str) -> LogEvent:
    return VerificationEvent(step=int(m.group(1)), status="verifyPassed", raw=line)


def _verify_failed(m: re.Match, line: str) -> LogEvent:
    return VerificationEvent(
        step=int(m.group(1)), status="verifyFailed",
        error=m.group(2).strip(), raw=line,
    )


def _step_started(m: re.Match, line: str) -> LogEvent:
    return StepEvent(
        step=int(m.group(1)), action=m.group(2).strip(), status="started", raw=line,
    )


def _step_passed(m: re.Match, line: str) -> LogEvent:
    return StepEvent(step=int(m.group(1)), status="passed", raw=line)


def _step_failed(m: re.Match, line: str) -> LogEvent:
    return StepEvent(
        step=int(m.group(1)), status="failed", error=m.group(2).strip(), raw=line,
    )


def _locating(m: re.Match, line: str) -> LogEvent:
    return LocatingEvent(raw=line, description=m.group(1))


def _bug(m: re.Match, line: str) -> LogEvent:
    return BugEvent(message=m.group(1).strip(), raw=line)


def _new_tab(m: re.Match, line: str) -> LogEvent:
    return NewTabEvent(target_id=m.group(1).strip(), raw=line)


# Order matters: VERIFYING_STEP_ forms must be tried before STEP_ forms,
# otherwise "STEP_" would match inside "VERIFYING_STEP_".
_LINE_PATTERNS: tuple[tuple[re.Pattern, Callable[[re.Match, str], LogEvent]], ...] = (
    (re.compile(r"VERIFYING_STEP_([0-9]+):\s*(.+)"), _verifying),
    (re.compile(r"VERIFYING_STEP_([0-9]+)_PASSED"), _verify_passed),
    (re.compile(r"VERIFYING_STEP_([0-9]+)_FAILED:\s*(.+)"), _verify_failed),
    (re.compile(r"STEP_([0-9]+):\s*(.+)"), _step_started),
    (re.compile(r"STEP_([0-9]+)_PASSED"), _step_passed),
    (re.compile(r"STEP_([0-9]+)_FAILED:\s*(.+)"), _step_failed),
    (re.compile(r'Locating element to click:\s*"(.+)"'), _locating),
    (re.compile(r"Bug reported:\s*(.+)$"), _bug),
    (re.compile(r"NEW_TAB_OPENED:\s*(.+)$"), _new_tab),
)


def _parse_aggregate(text: str) -> LogEvent | None:
    """Match the chunk-wide sentinels, in precedence order."""
    if PROPOSED_CODE in text:
        return CodeEvent(raw=text.partition(PROPOSED_CODE)[2].strip())
    if ABSTRACTING_PAGE in text:
        return AbstractingEvent(raw=ABSTRACTING_PAGE)
    if REASONING_NEXT_ACTION in text:
        return ProposingActionEvent(raw=REASONING_NEXT_ACTION)
    if CHECKING_REIDENTIFICATION in text:
        return ReIdentifyingEvent(raw=CHECKING_REIDENTIFICATION)
    return None


def _parse_line(line: str) -> LogEvent | None:
    for pattern, build in _LINE_PATTERNS:
        m = pattern.search(line)
        if m is None:
            continue
        try:
            return build(m, line)
        except ValueError:
            # Unparseable step number: drop the line, keep the rest of the chunk.
            return None
    return None


def parse_log_events(text: str, basic: bool = False) -> list[LogEvent]:
    """Parse a chunk of agent output into an ordered list of events.

    Pure function of ``text``. Blank lines are dropped. Unrecognised lines
    are dropped too, unless ``basic`` is set, in which case each becomes an
    ``OtherEvent`` carrying the line verbatim.
    """
    if not text:
        return []

    aggregate = _parse_aggregate(text)
    if aggregate is not None:
        return [aggregate]

    events: list[LogEvent] = []
    for line in _LINE_SPLIT.split(text):
        if not line:
            continue
        event = _parse_line(line)
        if event is not None:
            events.append(event)
        elif basic:
            events.append(OtherEvent(raw=line))
    return events


def parse_bug_reports(text: str) -> list[str]:
    """Collect every ``Bug reported: <message>`` line, in order of appearance."""
    reports = []
    for m in _BUG_REPORT.finditer(text):
        message = m.group(1).strip()
        if message:
            reports.append(message)
    return reports


class LogEventParser:
    """Stateless parser facade; safe to share between concurrent runs."""

    def __init__(self, mode: Literal["rich", "basic"] = "rich"):
        self.mode = mode

    def parse(self, chunk: str) -> list[LogEvent]:
        return parse_log_events(chunk, basic=self.mode == "basic")

    def bug_reports(self, text: str) -> list[str]:
        return parse_bug_reports(text)
