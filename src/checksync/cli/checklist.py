"""Checklist commands: check, uncheck, list, status."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import console, describe_state, home_option, open_cli_engine, report_state
from ..engine import SyncOrchestrator


def _open_started(home: str) -> SyncOrchestrator:
    engine = open_cli_engine(home)
    if not engine.auth.is_authenticated:
        engine.close()
        console.print("[yellow]Sign in required.[/] Run [bold]checksync login[/].")
        sys.exit(1)
    engine.start(refresh=False)
    return engine


def _mark(home: str, items: tuple[str, ...], done: bool) -> None:
    engine = _open_started(home)
    try:
        for item in items:
            engine.set_item(item, done)
        if engine.flush():
            ok = report_state(engine)
        else:
            ok = engine.persist_local()
            console.print("  [dim]Saved locally (auto-sync off).[/]")
    finally:
        engine.close()
    if not ok:
        sys.exit(1)


def register_checklist_commands(main: click.Group) -> None:
    """Register check, uncheck, list and status."""

    @main.command("check")
    @home_option
    @click.argument("items", nargs=-1, required=True)
    def check(home, items):
        """Mark ITEMS as done."""
        _mark(home, items, True)

    @main.command("uncheck")
    @home_option
    @click.argument("items", nargs=-1, required=True)
    def uncheck(home, items):
        """Mark ITEMS as not done."""
        _mark(home, items, False)

    @main.command("list")
    @home_option
    def list_items(home):
        """Show every item and its state."""
        engine = _open_started(home)
        engine.close()
        snapshot = engine.snapshot
        if not snapshot:
            console.print("[dim]Checklist is empty.[/]")
            return

        table = Table(title="Checklist", show_header=True)
        table.add_column("Item", style="cyan")
        table.add_column("Done", justify="center")
        for key in sorted(snapshot):
            table.add_row(key, "[green]✓[/]" if snapshot[key] is True else "[dim]·[/]")
        console.print(table)

    @main.command("status")
    @home_option
    def status(home):
        """Show account, endpoint and checklist summary."""
        engine = open_cli_engine(home)
        engine.close()
        identity = engine.auth.identity
        config = engine.config
        if identity is None:
            console.print(Panel(
                "Sign in to enable cloud storage and sync your progress across devices.",
                title="Cloud Storage (offline)",
                border_style="yellow",
            ))
            return

        record = engine.local.get(identity.id)
        data = record.data if record else {}
        done = sum(1 for v in data.values() if v is True)
        console.print(Panel(
            f"User: [cyan]{identity.email}[/]\n"
            f"Endpoint: {config.endpoint or '[yellow]none[/]'}\n"
            f"Auto-sync: {'[green]on[/]' if config.auto_sync else '[dim]off[/]'}\n"
            f"Items: [bold]{done}[/]/{len(data)} done\n"
            f"Last modified: {record.timestamp.isoformat() if record else '[dim]never[/]'}\n"
            f"Sync: {describe_state(engine.state, config.has_endpoint)}",
            title="Cloud Storage",
            border_style="cyan",
        ))
