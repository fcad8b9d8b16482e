"""Exception types raised by shellbridge."""

from __future__ import annotations

import enum


class ShellBridgeError(Exception):
    """Base class for all shellbridge errors."""


class ConfigurationError(ShellBridgeError):
    """No usable shell, or an invalid configuration value.

    Fatal to the spawn attempt that hit it; never retried.
    """


class SpawnError(ShellBridgeError):
    """The PTY process could not be created."""


class UnhandledEventError(ShellBridgeError):
    """An event has no handler in the session's current state.

    Raised and caught inside the session dispatcher only.
    """

    def __init__(self, event: object, state: object) -> None:
        super().__init__(f"unhandled event {event!r} in state {state}")
        self.event = event
        self.state = state


class TerminationReason(enum.Enum):
    """Which path drove a session to ``CLOSED``."""

    PROCESS_EXIT = "process_exit"
    PEER = "peer"  # Remote side sent exit-status / exit-signal
    TEARDOWN = "teardown"  # Transport dropped the channel
