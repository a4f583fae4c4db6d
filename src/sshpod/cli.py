"""Typer CLI for sshpod."""

from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer

from sshpod import __version__

app = typer.Typer(
    name="sshpod",
    help="ProxyCommand helper for ssh/scp/sftp to Kubernetes Pods.",
    add_completion=False,
    no_args_is_help=True,
)

LOG_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def version_callback(value: bool) -> None:
    """Print version information and exit."""
    if value:
        typer.echo(f"sshpod {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Send sshpod log records to stderr.

    stdout belongs to the ssh client once the tunnel is up, so logging must
    never touch it.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[sshpod] %(message)s"))
    root = logging.getLogger("sshpod")
    root.handlers[:] = [handler]
    root.setLevel(LOG_LEVELS.get(level.lower(), logging.ERROR))
    root.propagate = False


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show sshpod version and exit.",
        ),
    ] = False,
) -> None:
    """ProxyCommand helper for ssh/scp/sftp to Kubernetes Pods."""


@app.command()
def proxy(
    host: Annotated[
        str,
        typer.Option("--host", help="Target host, e.g. pod--api.namespace--ns.sshpod"),
    ],
    user: Annotated[
        Optional[str],
        typer.Option("--user", help="SSH login user (defaults to local user)."),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", help="Port requested by ssh (accepted for compatibility)."),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="Log level: error, warning, info, debug."),
    ] = "error",
) -> None:
    """ProxyCommand entry point: bridge stdin/stdout to sshd in a Pod."""
    from sshpod.exceptions import SshpodError
    from sshpod.proxy import run

    setup_logging(log_level)

    # Turn termination into SystemExit so port-forward cleanup runs
    signal.signal(signal.SIGINT, lambda s, f: sys.exit(130))
    signal.signal(signal.SIGTERM, lambda s, f: sys.exit(143))
    signal.signal(signal.SIGHUP, lambda s, f: sys.exit(129))

    try:
        exit_code = run(host, user=user, port=port)
    except SshpodError as e:
        typer.echo(f"error: {e.stage}: {e}", err=True)
        raise typer.Exit(1) from None

    raise typer.Exit(exit_code)


@app.command()
def configure() -> None:
    """Update ~/.ssh/config with the sshpod ProxyCommand block."""
    from sshpod.configure import default_executable, write_ssh_config

    ssh_dir = Path.home() / ".ssh"
    try:
        outcome = write_ssh_config(ssh_dir, default_executable())
    except OSError as e:
        typer.echo(f"Error: failed to update {ssh_dir / 'config'}: {e}", err=True)
        raise typer.Exit(1) from None

    if outcome is None:
        typer.echo(f"No changes needed for {ssh_dir / 'config'}")
        return

    config_path, backup_path = outcome
    typer.echo(f"Updated {config_path}")
    if backup_path is not None:
        typer.echo(f"Backup saved to {backup_path}")
