"""Console sink — renders coordinator events to the terminal with rich."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from webpilot.models.messages import (
    Connected,
    ErrorMessage,
    LogMessage,
    SinkEvent,
    StatusUpdate,
    StepUpdate,
    TabsCleared,
    TestFinished,
    TestLogs,
    TestStarted,
)
from webpilot.models.run_result import BatchSummary, RunState

_STATUS_STYLE = {
    RunState.PASSED: "green",
    RunState.FAILED: "red",
    RunState.STOPPED: "yellow",
    RunState.ERRORED: "red",
    RunState.RUNNING: "blue",
    RunState.PENDING: "dim",
}


class ConsoleSink:
    """Prints one line per event, prefixed with the test name."""

    def __init__(self, console: Console | None = None, show_logs: bool = False):
        self.console = console or Console()
        self.show_logs = show_logs
        self._names: dict[str, str] = {}

    def _label(self, test_id: str) -> str:
        return escape(self._names.get(test_id, test_id))

    def emit(self, event: SinkEvent) -> None:
        if isinstance(event, Connected):
            self.console.print(f"[green]Connected to browser[/green] {event.folder_name}")
        elif isinstance(event, ErrorMessage):
            self.console.print(f"[red]{escape(event.message)}[/red]")
        elif isinstance(event, TestStarted):
            self._names[event.test_id] = event.test_name or event.test_id
            self.console.print(
                f"[bold blue]▶ {self._label(event.test_id)}[/bold blue] "
                f"({event.total_steps} steps, tab {event.target_id})"
            )
        elif isinstance(event, StepUpdate):
            self.console.print(f"  \\[{self._label(event.test_id)}] {escape(event.message)}")
        elif isinstance(event, StatusUpdate):
            style = "red" if event.event_type == "bug" else "dim"
            self.console.print(f"  \\[{self._label(event.test_id)}] [{style}]{escape(event.message)}[/{style}]")
        elif isinstance(event, LogMessage):
            if self.show_logs and event.text:
                style = "red" if event.channel == "stderr" else "dim"
                self.console.print(f"[{style}]{self._label(event.test_id)} | {escape(event.text)}[/{style}]",
                                   markup=True, highlight=False)
        elif isinstance(event, TestFinished):
            status = event.result.status
            style = _STATUS_STYLE.get(status, "white")
            line = f"[{style}]■ {self._label(event.test_id)}: {status.value.upper()}[/{style}]"
            line += f" ({event.duration / 1000:.1f}s)"
            self.console.print(line)
            for error in event.result.errors:
                self.console.print(f"    [red]{escape(error)}[/red]")
        elif isinstance(event, TestLogs):
            self.console.print(event.stdout, markup=False, highlight=False)
            if event.stderr:
                self.console.print(event.stderr, style="red", markup=False, highlight=False)
        elif isinstance(event, TabsCleared):
            self.console.print("[dim]All browser tabs closed[/dim]")


def render_summary(console: Console, summary: BatchSummary) -> None:
    """Print the batch results table."""
    table = Table(title=f"Results: {summary.folder_name or summary.batch_id}")
    table.add_column("Test", style="bold")
    table.add_column("Status")
    table.add_column("Steps")
    table.add_column("Duration")
    table.add_column("Errors")
    for r in summary.test_results:
        style = _STATUS_STYLE.get(r.status, "white")
        table.add_row(
            escape(r.test_name or r.test_id),
            f"[{style}]{r.status.value}[/{style}]",
            f"{r.steps_executed}/{r.total_steps}",
            f"{r.duration_ms / 1000:.1f}s",
            escape("; ".join(r.errors)),
        )
    console.print(table)
    console.print(
        f"[green]{summary.passed} passed[/green], [red]{summary.failed} failed[/red], "
        f"[yellow]{summary.stopped} stopped[/yellow], [red]{summary.errored} errored[/red] "
        f"in {summary.duration_seconds:.1f}s"
    )
