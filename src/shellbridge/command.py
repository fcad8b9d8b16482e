"""Command resolution — which shell to run and which TERM to advertise."""

from __future__ import annotations

import os
import shutil

from shellbridge.errors import ConfigurationError

DEFAULT_TERM = "xterm"


def resolve_shell_command() -> list[str]:
    """Return ``[shell, "-i"]`` for an interactive login-less shell.

    ``$SHELL`` wins when set and non-empty, otherwise the first ``sh`` on
    ``$PATH``.

    Raises:
        ConfigurationError: Neither is available.
    """
    shell = os.environ.get("SHELL")
    if shell:
        return [shell, "-i"]

    shell = shutil.which("sh")
    if shell:
        return [shell, "-i"]

    raise ConfigurationError(
        "no shell available: SHELL environment variable not set and sh not found"
    )


def resolve_terminal_type(term: str | None = None) -> str:
    """Pick the TERM value for a spawned process.

    Args:
        term: Terminal type negotiated by a pty request, if any.
    """
    if term:
        return term
    return os.environ.get("TERM") or DEFAULT_TERM


def split_command(command: str) -> list[str]:
    """Split an exec request's command string on whitespace."""
    return command.split()
