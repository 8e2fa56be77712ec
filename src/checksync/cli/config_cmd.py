"""Settings commands: show, set, test-endpoint."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.panel import Panel

from ._common import console, home_option, open_cli_engine, report_state
from ..config import load_settings, save_settings
from ..models import SyncStatus
from ..remote import RemoteStoreClient


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group()
    def config():
        """Cloud endpoint and sync preferences."""

    @config.command("show")
    @home_option
    def config_show(home):
        """Show storage and application settings."""
        home_path = Path(home).expanduser()
        engine = open_cli_engine(home)
        engine.close()
        settings = load_settings(home_path)
        storage = engine.config
        console.print(Panel(
            f"Endpoint: {storage.endpoint or '[yellow]none (local storage only)[/]'}\n"
            f"Auto-sync: {'[green]on[/]' if storage.auto_sync else '[dim]off[/]'}\n"
            f"Debounce: {settings.debounce_seconds:g}s\n"
            f"Timeout: {settings.request_timeout:g}s\n"
            f"Namespace: {settings.namespace}\n"
            f"Home: [dim]{home_path}[/]",
            title="Settings",
            border_style="cyan",
        ))

    @config.command("set")
    @home_option
    @click.option("--endpoint", default=None, help="Cloud endpoint URL; empty string clears it.")
    @click.option("--auto-sync/--no-auto-sync", default=None, help="Push changes automatically.")
    @click.option("--debounce", type=click.FloatRange(min=0), default=None, help="Seconds of quiet before an auto-sync.")
    @click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Request timeout in seconds.")
    def config_set(home, endpoint, auto_sync, debounce, timeout):
        """Change the cloud endpoint, auto-sync preference or sync timing.

        A new endpoint is loaded from straight away when signed in.

        Examples:

            checksync config set --endpoint https://your-app.netlify.app/.netlify/functions

            checksync config set --no-auto-sync

            checksync config set --debounce 5 --timeout 30
        """
        if endpoint is None and auto_sync is None and debounce is None and timeout is None:
            console.print(
                "[yellow]Nothing to change.[/] Pass --endpoint, --auto-sync, --debounce or --timeout."
            )
            sys.exit(1)

        if debounce is not None or timeout is not None:
            home_path = Path(home).expanduser()
            settings = load_settings(home_path)
            if debounce is not None:
                settings.debounce_seconds = debounce
            if timeout is not None:
                settings.request_timeout = timeout
            path = save_settings(settings, home_path)
            console.print(
                f"\n  Debounce: [cyan]{settings.debounce_seconds:g}s[/]"
                f"  Timeout: [cyan]{settings.request_timeout:g}s[/]  [dim]({path})[/]"
            )
            if endpoint is None and auto_sync is None:
                console.print()
                return

        engine = open_cli_engine(home)
        try:
            current = engine.config
            if engine.auth.is_authenticated:
                engine.start(refresh=False)
            data = engine.save_settings(
                endpoint=current.endpoint if endpoint is None else endpoint,
                auto_sync=current.auto_sync if auto_sync is None else auto_sync,
            )
            updated = engine.config
            console.print(
                f"\n  Endpoint: [cyan]{updated.endpoint or 'none'}[/]"
                f"  Auto-sync: {'on' if updated.auto_sync else 'off'}"
            )
            if data is not None:
                console.print(f"  [green]Loaded {len(data)} item(s) from cloud.[/]")
            if engine.state.status is not SyncStatus.IDLE:
                report_state(engine)
        finally:
            engine.close()
        console.print()

    @config.command("test-endpoint")
    @home_option
    @click.argument("url", required=False)
    def config_test_endpoint(home, url):
        """Check that URL (or the configured endpoint) answers the load contract."""
        home_path = Path(home).expanduser()
        engine = open_cli_engine(home)
        engine.close()
        target = url or engine.config.endpoint
        if not target:
            console.print("[yellow]No endpoint given or configured.[/]")
            sys.exit(1)

        client = RemoteStoreClient(timeout=load_settings(home_path).request_timeout)
        console.print(f"\n  Testing [cyan]{target}[/]...", end=" ")
        if client.check_endpoint(target):
            console.print("[green]reachable[/]\n")
        else:
            console.print("[red]unreachable[/]\n")
            sys.exit(1)
