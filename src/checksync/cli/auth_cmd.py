"""Identity commands: login, logout, whoami."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.panel import Panel

from ._common import console, home_option, open_cli_engine, report_state
from ..auth import StaticIdentityProvider, UserinfoIdentityProvider
from ..config import load_settings
from ..errors import AuthError
from ..models import UserIdentity


def register_auth_commands(main: click.Group) -> None:
    """Register login, logout and whoami."""

    @main.command("login")
    @home_option
    @click.option("--token", required=True, help="Bearer token from your identity provider.")
    @click.option("--no-verify", is_flag=True, help="Trust --user-id/--email instead of asking the provider.")
    @click.option("--user-id", default=None, help="User id (with --no-verify).")
    @click.option("--email", default=None, help="Email (with --no-verify).")
    @click.option("--name", default=None, help="Display name (with --no-verify).")
    def login(home, token, no_verify, user_id, email, name):
        """Sign in with an existing access token.

        The token is resolved to an identity through the configured
        userinfo endpoint, unless --no-verify is given.

        Examples:

            checksync login --token ya29.a0Af...

            checksync login --token devtoken --no-verify --user-id u1 --email me@example.com
        """
        engine = open_cli_engine(home)
        if no_verify:
            if not user_id or not email:
                console.print("[red]--no-verify needs --user-id and --email.[/]")
                sys.exit(1)
            given = name.split()[0] if name else None
            provider = StaticIdentityProvider(
                UserIdentity(id=user_id, email=email, name=name, given_name=given), token
            )
        else:
            settings = load_settings(Path(home).expanduser())
            provider = UserinfoIdentityProvider(token, userinfo_url=settings.userinfo_url)

        try:
            identity = engine.auth.sign_in(provider)
        except AuthError as exc:
            console.print(f"[bold red]Sign-in failed:[/] {exc}")
            sys.exit(1)
        finally:
            engine.close()

        console.print(f"\n  Signed in as [cyan]{identity.email}[/] [dim]({identity.id})[/]")
        console.print(f"  Items: [bold]{len(engine.snapshot)}[/]")
        report_state(engine)
        console.print()

    @main.command("logout")
    @home_option
    @click.option("--forget-data", is_flag=True, help="Also delete this user's local checklist.")
    def logout(home, forget_data):
        """Sign out and forget the stored token."""
        engine = open_cli_engine(home)
        try:
            identity = engine.sign_out(forget_data=forget_data)
            if identity is None:
                console.print("[dim]Not signed in.[/]")
                return
            console.print("[green]Signed out.[/]")
            if forget_data:
                console.print(f"  [dim]Local checklist for {identity.id} deleted.[/]")
        finally:
            engine.close()

    @main.command("whoami")
    @home_option
    def whoami(home):
        """Show the signed-in identity."""
        engine = open_cli_engine(home)
        engine.close()
        identity = engine.auth.identity
        if identity is None:
            console.print("[yellow]Sign in required.[/] Run [bold]checksync login[/].")
            sys.exit(1)
        console.print(Panel(
            f"Name: [cyan]{identity.name or '-'}[/]\n"
            f"Email: {identity.email}\n"
            f"Id: [dim]{identity.id}[/]",
            title="Signed in",
            border_style="green",
        ))
