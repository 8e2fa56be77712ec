"""Sync commands: sync (push), pull (load from cloud)."""

from __future__ import annotations

import sys

import click

from ._common import console, home_option, open_cli_engine, report_state
from ..models import SyncStatus


def register_sync_commands(main: click.Group) -> None:
    """Register sync and pull."""

    @main.command("sync")
    @home_option
    def sync_now(home):
        """Save the checklist locally and push it to the cloud.

        Without a configured endpoint the checklist is only saved locally.
        """
        engine = open_cli_engine(home)
        try:
            if not engine.auth.is_authenticated:
                console.print("[yellow]Sign in required.[/] Run [bold]checksync login[/].")
                sys.exit(1)
            engine.start(refresh=False)
            console.print(f"\n  Syncing [bold]{len(engine.snapshot)}[/] item(s)...")
            engine.sync()
            ok = report_state(engine)
        finally:
            engine.close()
        console.print()
        if not ok:
            sys.exit(1)

    @main.command("pull")
    @home_option
    def pull(home):
        """Replace the local checklist with the cloud copy."""
        engine = open_cli_engine(home)
        try:
            if not engine.auth.is_authenticated:
                console.print("[yellow]Sign in required.[/] Run [bold]checksync login[/].")
                sys.exit(1)
            if not engine.config.has_endpoint:
                console.print("[yellow]No cloud endpoint.[/] Run [bold]checksync config set --endpoint URL[/].")
                sys.exit(1)
            engine.start(refresh=False)
            data = engine.load_from_cloud()
            if data is not None:
                console.print(f"\n  [green]Loaded {len(data)} item(s) from cloud.[/]")
            elif engine.state.status is SyncStatus.OFFLINE and not engine.state.error:
                console.print("\n  [dim]No cloud data yet; local checklist kept.[/]")
            ok = report_state(engine) and engine.state.error is None
        finally:
            engine.close()
        console.print()
        if not ok:
            sys.exit(1)
