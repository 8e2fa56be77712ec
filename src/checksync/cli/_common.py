"""Shared utilities for all CLI command modules.

Provides the Rich console, the ``--home`` option, status formatting,
and the helper that opens a sync engine for a command.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
from rich.console import Console

from .. import CHECKSYNC_HOME
from ..config import AppSettings, load_settings, setup_logging
from ..engine import SyncOrchestrator, open_engine
from ..models import StatusSnapshot, SyncStatus

console = Console()
logger = logging.getLogger("checksync.cli")

home_option = click.option(
    "--home",
    default=CHECKSYNC_HOME,
    type=click.Path(),
    help="Checksync home directory.",
)


def status_icon(status: SyncStatus) -> str:
    """Map a sync status to a Rich-formatted indicator.

    Args:
        status: Current sync status.

    Returns:
        str: Rich markup string for the status.
    """
    return {
        SyncStatus.IDLE: "[dim]Not synced[/]",
        SyncStatus.SYNCING: "[bold cyan]Syncing...[/]",
        SyncStatus.SYNCED: "[bold green]Synced[/]",
        SyncStatus.OFFLINE: "[bold yellow]Offline[/]",
        SyncStatus.ERROR: "[bold red]Sync failed[/]",
    }.get(status, "[dim]UNKNOWN[/]")


def describe_state(state: StatusSnapshot, has_endpoint: bool) -> str:
    """One-line description of where syncing stands."""
    if state.status is SyncStatus.SYNCED and state.last_synced_at:
        return f"{status_icon(state.status)} {state.last_synced_at:%H:%M:%S}"
    if state.status is SyncStatus.OFFLINE and not state.error:
        detail = "Local storage only" if has_endpoint else "No cloud endpoint"
        return f"{status_icon(state.status)} [dim]({detail})[/]"
    return status_icon(state.status)


def configure_logging(home: str) -> AppSettings:
    """Point logging at ``home`` and return that home's settings.

    Honors the group-level ``--verbose`` flag and the home's
    ``log_to_file`` setting.
    """
    home_path = Path(home).expanduser()
    settings = load_settings(home_path)
    ctx = click.get_current_context(silent=True)
    verbose = bool(ctx and ctx.find_root().obj and ctx.find_root().obj.get("verbose"))
    setup_logging(verbose=verbose, home=home_path, to_file=settings.log_to_file)
    return settings


def open_cli_engine(home: str) -> SyncOrchestrator:
    """Open the engine for ``home`` using its config.yaml."""
    settings = configure_logging(home)
    return open_engine(Path(home).expanduser(), settings)


def report_state(engine: SyncOrchestrator) -> bool:
    """Print the engine's status and any error.

    Returns:
        bool: False if the last operation ended in error.
    """
    state = engine.state
    console.print(f"  Status: {describe_state(state, engine.config.has_endpoint)}")
    if state.error:
        console.print(f"  [red]{state.error}[/]")
    if state.auth_expired:
        console.print("  [yellow]Run [bold]checksync logout[/] and sign in again.[/]")
    return state.status is not SyncStatus.ERROR
