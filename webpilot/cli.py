"""CLI entry point for the parallel web test runner."""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from webpilot.browser.screencast import ScreencastCapture
from webpilot.browser.session import PlaywrightBrowserProvider
from webpilot.executor.agent_process import AgentLauncher
from webpilot.executor.coordinator import ExecutionCoordinator
from webpilot.executor.interfaces import EventSink
from webpilot.models.config import RunnerConfig
from webpilot.models.events import StepEvent, VerificationEvent
from webpilot.models.workspace import TEST_MENU_ID, TestItem
from webpilot.parser.log_parser import parse_log_events
from webpilot.reporter.console_sink import ConsoleSink, render_summary
from webpilot.reporter.reporter import BatchReporter
from webpilot.store.workspace_store import EnvironmentSelection, WorkspaceStore

console = Console()

DEFAULT_CONFIG = "webpilot-config.json"

_CHUNK_SEPARATOR = re.compile(r"\n\s*\n")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_config(path: str) -> RunnerConfig:
    try:
        return RunnerConfig.load(path)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {path}[/red]")
        console.print("Run 'webpilot init' to create a default config.")
        sys.exit(1)


def _load_store(cfg: RunnerConfig) -> WorkspaceStore:
    store = WorkspaceStore(cfg.data_path)
    store.initialize()
    store.load()
    return store


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Run browser agent tests in parallel, one tab per test."""
    setup_logging(verbose)


@cli.command()
@click.option("--cdp-endpoint", default="http://localhost:9222", help="Chrome DevTools endpoint")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def init(cdp_endpoint: str, config: str) -> None:
    """Create a default configuration file and workspace folders."""
    config_path = Path(config)
    if config_path.exists():
        if not click.confirm(f"{config_path} already exists. Overwrite?"):
            return

    cfg = RunnerConfig(cdp_endpoint=cdp_endpoint)
    cfg.save(config_path)
    WorkspaceStore(cfg.data_path).initialize()
    console.print(f"[green]Created {config_path}[/green]")
    console.print(f"Test definitions go in [blue]{cfg.data_path / '.test'}[/blue]")
    console.print("\nStart Chrome with --remote-debugging-port=9222, then run:")
    console.print("  [blue]webpilot run <folder>[/blue]")


async def _run_batch(
    cfg: RunnerConfig,
    store: WorkspaceStore,
    tests: list[TestItem],
    folder_name: str,
    sinks: list[EventSink],
) -> bool:
    coordinator = ExecutionCoordinator(
        cfg,
        browser_provider=PlaywrightBrowserProvider(cfg.viewport),
        launcher=AgentLauncher(cfg, store, EnvironmentSelection(store)),
        capture_provider=ScreencastCapture(cfg.screencast),
        store=store,
    )
    for sink in sinks:
        coordinator.subscribe(sink)

    try:
        if not await coordinator.connect(folder_name):
            console.print(
                f"[red]Could not connect to {cfg.cdp_endpoint}.[/red] "
                "Make sure Chrome is running with --remote-debugging-port=9222"
            )
            return False
        await coordinator.start_batch(tests)
        await coordinator.wait_for_all()
        return True
    except asyncio.CancelledError:
        await coordinator.stop_all_runs()
        raise
    finally:
        await coordinator.dispose()


@cli.command()
@click.argument("folder", default=TEST_MENU_ID)
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@click.option("--show-logs", is_flag=True, help="Echo agent stdout/stderr")
@click.option("--no-screencast", is_flag=True, help="Do not stream tab frames")
def run(folder: str, config: str, show_logs: bool, no_screencast: bool) -> None:
    """Run every test in FOLDER in parallel."""
    cfg = _load_config(config)
    if no_screencast:
        cfg.screencast.enabled = False

    store = _load_store(cfg)
    folder_id = store.find_folder(folder)
    if folder_id is None:
        console.print(f"[red]Folder not found: {folder}[/red]")
        sys.exit(1)
    tests = store.get_by_folder(folder_id)
    folder_item = store.get_folder(folder_id)
    folder_name = folder_item.name if folder_item else folder
    if not tests:
        console.print(f'[yellow]No test cases found in folder "{folder_name}"[/yellow]')
        return

    reporter = BatchReporter(folder_name, {t.id: t.name for t in tests})
    sinks: list[EventSink] = [ConsoleSink(console, show_logs=show_logs), reporter]
    try:
        connected = asyncio.run(_run_batch(cfg, store, tests, folder_name, sinks))
    except KeyboardInterrupt:
        console.print("[yellow]Test execution stopped by user[/yellow]")
        connected = True

    summary = reporter.build_summary()
    console.print()
    render_summary(console, summary)
    path = reporter.write_report(Path(cfg.report_output_dir))
    console.print(f"  JSON report: [blue]{path}[/blue]")

    if not connected or summary.failed or summary.errored:
        sys.exit(1)


@cli.command("list")
@click.argument("folder", default=TEST_MENU_ID)
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def list_tests(folder: str, config: str) -> None:
    """List the tests in FOLDER (recursively)."""
    cfg = _load_config(config)
    store = _load_store(cfg)
    folder_id = store.find_folder(folder)
    if folder_id is None:
        console.print(f"[red]Folder not found: {folder}[/red]")
        sys.exit(1)

    tests = store.get_by_folder(folder_id)
    if not tests:
        console.print("[yellow]No tests found[/yellow]")
        return
    table = Table(title=f"Tests in {folder}")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("URL")
    table.add_column("Steps")
    for t in tests:
        table.add_row(t.id, escape(t.name), t.url, str(len(t.actions)))
    console.print(table)


@cli.command()
@click.argument("log_file", type=click.File("r"))
@click.option("--basic", is_flag=True, help="Keep unrecognised lines as 'other' events")
def parse(log_file, basic: bool) -> None:
    """Parse an agent log and print the events it contains.

    Blank-line separated blocks are parsed as separate output chunks.
    """
    text = log_file.read()
    table = Table(title="Log events")
    table.add_column("#", style="dim")
    table.add_column("Kind", style="bold")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Detail")

    count = 0
    for chunk in _CHUNK_SEPARATOR.split(text):
        for event in parse_log_events(chunk, basic=basic):
            count += 1
            if isinstance(event, StepEvent):
                row = (str(event.step), event.status, event.error or event.action or "")
            elif isinstance(event, VerificationEvent):
                row = (str(event.step), event.status, event.error or event.expectation or "")
            else:
                detail = getattr(event, "message", None) or getattr(event, "target_id", None) or event.raw
                row = ("", "", detail)
            table.add_row(str(count), event.kind, row[0], row[1], escape(row[2]))

    if count == 0:
        console.print("[yellow]No events found[/yellow]")
        return
    console.print(table)


@cli.group()
def env() -> None:
    """Manage the environment used for new runs."""
    pass


@env.command("list")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def env_list(config: str) -> None:
    """List environments, marking the selected one."""
    cfg = _load_config(config)
    store = _load_store(cfg)
    selection = EnvironmentSelection(store)
    environments = store.environments()
    if not environments:
        console.print("[yellow]No environments configured[/yellow]")
        return
    for item in environments:
        marker = "[green]*[/green]" if selection.is_selected(item.id) else " "
        console.print(f" {marker} {escape(item.name)} [dim]({item.id})[/dim]")


@env.command("select")
@click.argument("name_or_id")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def env_select(name_or_id: str, config: str) -> None:
    """Select the environment passed to the agent."""
    cfg = _load_config(config)
    store = _load_store(cfg)
    match = next(
        (e for e in store.environments() if name_or_id in (e.id, e.name)), None
    )
    if match is None:
        console.print(f"[red]Environment not found: {name_or_id}[/red]")
        sys.exit(1)
    EnvironmentSelection(store).select(match.id)
    console.print(f"[green]Selected environment:[/green] {escape(match.name)}")


@env.command("clear")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def env_clear(config: str) -> None:
    """Run without an environment file."""
    cfg = _load_config(config)
    EnvironmentSelection(_load_store(cfg)).clear()
    console.print("[green]Environment selection cleared[/green]")


if __name__ == "__main__":
    cli()
