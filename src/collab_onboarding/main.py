"""
Collab Onboarding - CLI Entry Point.

Usage:
    collab-onboarding status            Show flow progress
    collab-onboarding step <id> '<json>' Save a step
    collab-onboarding options <id>      List interests/skills options
    collab-onboarding queue             Show the offline queue
    collab-onboarding sync              Replay the offline queue
    collab-onboarding errors            Show the error log
    collab-onboarding reset             Start onboarding over
"""

import asyncio
import json
import logging

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .container import ServiceContainer, build_container

app = typer.Typer(
    name="collab-onboarding",
    help="Collab Onboarding - drive and inspect the profile setup flow.",
    add_completion=False,
)
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level")) -> None:
    from .config import settings

    logging.basicConfig(
        level="DEBUG" if verbose else settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _start() -> ServiceContainer:
    container = build_container()
    if not asyncio.run(container.orchestrator.initialize()):
        console.print("[red]❌ No usable session (guest mode disabled and no backend session)[/red]")
        raise typer.Exit(1)
    return container


@app.command()
def status() -> None:
    """Show where the flow currently stands."""
    container = _start()
    progress = container.orchestrator.get_progress()
    session = container.session_store.session

    table = Table(show_header=False, box=None)
    table.add_row("Identity", f"{session.identity_id} ({session.kind.value})")
    table.add_row("Current step", progress.current_step)
    table.add_row("Route", container.orchestrator.route_for(progress.current_step))
    table.add_row("Completed", ", ".join(progress.completed_steps) or "-")
    table.add_row("Skipped", ", ".join(progress.skipped_steps) or "-")
    table.add_row("Progress", f"{progress.percentage_complete}%")
    table.add_row("Minutes left", str(progress.estimated_minutes_remaining))
    table.add_row("Offline queue", str(container.orchestrator.get_offline_queue_size()))

    title = "[bold green]Complete[/bold green]" if progress.is_complete else "Onboarding"
    console.print(Panel.fit(table, title=title, border_style="green" if progress.is_complete else "blue"))


@app.command()
def step(
    step_id: str = typer.Argument(..., help="Step id, e.g. profile"),
    data: str = typer.Argument("{}", help="Step data as a JSON object"),
    offline: bool = typer.Option(False, "--offline", help="Save locally and queue for sync"),
) -> None:
    """Validate and save one step."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        console.print(f"[red]❌ Invalid JSON: {e}[/red]")
        raise typer.Exit(2)

    container = _start()
    orchestrator = container.orchestrator

    async def run():
        if offline:
            await orchestrator.set_online(False)
        return await orchestrator.execute_step(step_id, payload)

    result = asyncio.run(run())
    if not result.success:
        console.print(f"[red]❌ {result.error}[/red]")
        for error in result.errors:
            console.print(f"   • {error}")
        raise typer.Exit(1)

    for warning in result.warnings:
        console.print(f"[yellow]⚠️  {warning}[/yellow]")
    note = " [dim](queued for sync)[/dim]" if result.queued else (
        " [dim](saved locally)[/dim]" if result.pending_sync else ""
    )
    console.print(f"✅ Saved {step_id}{note}")
    console.print(f"   Next: {result.next_step} → {orchestrator.route_for(result.next_step)}")


@app.command()
def options(step_id: str = typer.Argument(..., help="interests or skills")) -> None:
    """List the selectable options for a step."""
    container = _start()
    items = asyncio.run(container.orchestrator.get_step_options(step_id))
    if not items:
        console.print(f"[dim]No options for {step_id}[/dim]")
        return
    table = Table(title=f"{step_id} options")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    for item in items:
        table.add_row(str(item.get("id")), str(item.get("name")))
    console.print(table)


@app.command()
def queue() -> None:
    """Show offline queue items."""
    container = _start()
    items = container.recovery.queue_snapshot()
    if not items:
        console.print("[dim]Offline queue is empty[/dim]")
        return
    table = Table(title="Offline queue")
    table.add_column("Step")
    table.add_column("Enqueued")
    table.add_column("Status")
    for item in items:
        table.add_row(item.step_id, item.enqueued_at, "synced" if item.synced else "pending")
    console.print(table)


@app.command()
def sync() -> None:
    """Replay queued step saves against the backend."""
    container = _start()
    orchestrator = container.orchestrator

    async def run():
        if not orchestrator.is_online:
            # Reconnecting replays the queue
            return await orchestrator.set_online(True)
        return await orchestrator.sync_offline_data()

    result = asyncio.run(run())
    color = "green" if result.success else "yellow"
    console.print(f"[{color}]Synced {result.synced_count}/{result.total} pending operations[/{color}]")
    if not result.success:
        raise typer.Exit(1)


@app.command()
def errors(limit: int = typer.Option(10, "--limit", "-n", help="Most recent entries to show")) -> None:
    """Show the local error log and stats."""
    container = _start()
    stats = container.recovery.error_stats()
    console.print(
        f"Total errors: {stats['total_errors']}  "
        f"Pending operations: {stats['pending_operations']}  "
        f"Migration pending: {'yes' if stats['migration_pending'] else 'no'}"
    )
    records = container.recovery.error_log()[-limit:]
    if not records:
        return
    table = Table()
    table.add_column("When", style="dim")
    table.add_column("Operation")
    table.add_column("Kind")
    table.add_column("Message")
    for record in records:
        table.add_row(record.occurred_at, record.operation, record.error_kind.value, record.message)
    console.print(table)


@app.command()
def reset(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")) -> None:
    """Clear onboarding state, offline queue and error log."""
    if not yes and not typer.confirm("Reset onboarding progress?"):
        raise typer.Exit(0)
    container = _start()
    current = asyncio.run(container.orchestrator.reset())
    console.print(f"✅ Onboarding reset, back to {current}")


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"Collab Onboarding version {__version__}")


if __name__ == "__main__":
    app()
