"""Backup commands: export, import."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from ._common import console, home_option, open_cli_engine, report_state
from ..errors import ImportFormatError


def register_transfer_commands(main: click.Group) -> None:
    """Register export and import."""

    @main.command("export")
    @home_option
    @click.option("--output", "-o", default=None, type=click.Path(), help="File or directory to write.")
    def export_cmd(home, output):
        """Write the whole checklist to a portable JSON file.

        Examples:

            checksync export

            checksync export -o ~/backups/
        """
        engine = open_cli_engine(home)
        try:
            if engine.auth.is_authenticated:
                engine.start(refresh=False)
            path = engine.export_snapshot(Path(output).expanduser() if output else None)
        finally:
            engine.close()
        console.print(f"\n  [green]Exported {len(engine.snapshot)} item(s)[/] to [cyan]{path}[/]\n")

    @main.command("import")
    @home_option
    @click.argument("source", type=click.Path(exists=True, dir_okay=False))
    def import_cmd(home, source):
        """Replace the checklist with a previously exported file.

        When auto-sync is on and you are signed in, the imported
        checklist is pushed to the cloud right away.
        """
        engine = open_cli_engine(home)
        try:
            if engine.auth.is_authenticated:
                engine.start(refresh=False)
            try:
                status = engine.import_snapshot(Path(source))
            except ImportFormatError as exc:
                console.print(f"[bold red]{exc}[/]")
                sys.exit(1)
            console.print(f"\n  [green]Imported {len(engine.snapshot)} item(s).[/]")
            if not engine.auth.is_authenticated:
                console.print("  [yellow]Not signed in: imported into this session only.[/]")
            ok = report_state(engine) if status is not None else True
        finally:
            engine.close()
        console.print()
        if not ok:
            sys.exit(1)
