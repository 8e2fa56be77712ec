"""Reference endpoint command: serve."""

from __future__ import annotations

import sys

import click

from ._common import configure_logging, console, home_option
from ..models import UserIdentity
from ..server import (
    DEFAULT_PORT,
    RemoteServer,
    StaticTokenVerifier,
    TokenVerifier,
    UserinfoTokenVerifier,
)


def _parse_token(value: str) -> tuple[str, UserIdentity]:
    """Parse ``TOKEN=USER_ID:EMAIL``."""
    token, sep, rest = value.partition("=")
    user_id, sep2, email = rest.partition(":")
    if not (sep and sep2 and token and user_id and email):
        raise click.BadParameter(f"expected TOKEN=USER_ID:EMAIL, got {value!r}")
    return token, UserIdentity(id=user_id, email=email)


def register_serve_commands(main: click.Group) -> None:
    """Register the serve command."""

    @main.command("serve")
    @home_option
    @click.option("--host", default="127.0.0.1", help="Bind address.")
    @click.option("--port", default=DEFAULT_PORT, type=int, help="Bind port.")
    @click.option(
        "--token", "tokens", multiple=True,
        help="Accept TOKEN for USER_ID:EMAIL instead of asking the userinfo endpoint.",
    )
    def serve(home, host, port, tokens):
        """Run the reference save/load endpoint (records kept in memory).

        Examples:

            checksync serve --token devtoken=u1:me@example.com

            checksync serve --port 9000
        """
        settings = configure_logging(home)
        verifier: TokenVerifier
        if tokens:
            verifier = StaticTokenVerifier(dict(_parse_token(t) for t in tokens))
        else:
            verifier = UserinfoTokenVerifier(settings.userinfo_url)

        try:
            server = RemoteServer(verifier, host=host, port=port)
        except OSError as exc:
            console.print(f"[bold red]Cannot bind {host}:{port}:[/] {exc}")
            sys.exit(1)

        console.print(f"\n  Endpoint: [cyan]{server.url}[/]  [dim](Ctrl+C to stop)[/]\n")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            console.print("\n  [dim]Stopped.[/]")
        finally:
            server.stop()
