"""
checksync CLI: checklist state with optional cloud sync.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: checksync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ..config import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="checksync")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging to stderr.")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """checksync: your checklist, local first, synced when you want."""
    ctx.obj = {"verbose": verbose}
    # each command re-runs this for its own --home, adding the file log
    setup_logging(verbose=verbose)


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .auth_cmd import register_auth_commands
from .checklist import register_checklist_commands
from .sync_cmd import register_sync_commands
from .config_cmd import register_config_commands
from .transfer import register_transfer_commands
from .serve import register_serve_commands

register_auth_commands(main)
register_checklist_commands(main)
register_sync_commands(main)
register_config_commands(main)
register_transfer_commands(main)
register_serve_commands(main)
