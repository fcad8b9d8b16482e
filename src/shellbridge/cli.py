"""CLI entry point for shellbridge."""

from __future__ import annotations

import asyncio
import logging

import typer

from shellbridge.command import resolve_shell_command, resolve_terminal_type
from shellbridge.config import ShellBridgeConfig
from shellbridge.errors import ConfigurationError

app = typer.Typer(
    name="shellbridge",
    help="Serve an interactive system shell over SSH, one PTY per channel.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # asyncssh logs every packet-level event at INFO
    logging.getLogger("asyncssh").setLevel(logging.INFO if verbose else logging.WARNING)


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Address to listen on."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on."),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path (JSON)."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
) -> None:
    """Run the SSH shell server until interrupted."""
    from shellbridge.transport.ssh import serve as serve_ssh

    setup_logging(verbose)

    try:
        config = ShellBridgeConfig.load(config_file)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if host:
        config.server.host = host
    if port:
        config.server.port = port

    try:
        asyncio.run(serve_ssh(config))
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        typer.echo("Interrupted.")


@app.command()
def resolve(
    term: str | None = typer.Option(
        None, "--term", "-t", help="Terminal type a client would negotiate."
    ),
) -> None:
    """Show the shell command and TERM a new session would use."""
    try:
        command = resolve_shell_command()
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"shell: {' '.join(command)}")
    typer.echo(f"term:  {resolve_terminal_type(term)}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
