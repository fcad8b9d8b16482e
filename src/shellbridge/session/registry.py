"""Session registry — creates and tracks one ShellSession per channel."""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any

from shellbridge.errors import TerminationReason
from shellbridge.pty.process import PTYSpawner
from shellbridge.session.state import SessionMode, ShellSession

if TYPE_CHECKING:
    from shellbridge.pty.process import ProcessSpawner
    from shellbridge.transport.base import ConnectionHandle

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Factory and bookkeeping for channel sessions.

    The registry ensures:
    - Every channel gets a fresh session bound to its transport handle
    - Subsystem channels get an eagerly spawned session for their command
    - All sessions are torn down on cleanup (no orphan processes)
    """

    def __init__(
        self,
        spawner: ProcessSpawner | None = None,
        subsystems: dict[str, list[str] | None] | None = None,
    ) -> None:
        self._spawner: ProcessSpawner = spawner or PTYSpawner()
        self._subsystems: dict[str, list[str] | None] = dict(subsystems or {})
        self._sessions: dict[int, ShellSession] = {}
        self._ids = itertools.count(1)

    def open_session(self, handle: ConnectionHandle) -> ShellSession:
        """Create an interactive session for a newly opened channel."""
        channel_id = next(self._ids)
        session = ShellSession.interactive(self._spawner)
        session.on_channel_open(channel_id, handle)
        self._sessions[channel_id] = session
        logger.debug("Opened session for channel %d", channel_id)
        return session

    def has_subsystem(self, name: str) -> bool:
        return name in self._subsystems

    def open_subsystem(
        self, channel_id: int, name: str, handle: ConnectionHandle
    ) -> ShellSession:
        """Turn ``channel_id`` into a subsystem session for ``name``.

        The channel's interactive session (still unconfigured) is discarded
        and replaced by a subsystem session whose process is already running.

        Raises:
            KeyError: ``name`` is not a configured subsystem.
            ConfigurationError: No command configured and no shell found.
            SpawnError: The subsystem process could not be created.
        """
        command = self._subsystems[name]
        session = ShellSession.subsystem(self._spawner, command)
        session.on_channel_open(channel_id, handle)

        previous = self._sessions.get(channel_id)
        if previous is not None:
            previous.on_terminate(TerminationReason.TEARDOWN)
        self._sessions[channel_id] = session
        logger.info("Channel %d started subsystem %r", channel_id, name)
        return session

    def get(self, channel_id: int) -> ShellSession | None:
        return self._sessions.get(channel_id)

    def close_session(
        self,
        channel_id: int,
        reason: TerminationReason = TerminationReason.TEARDOWN,
    ) -> None:
        """Forget a channel, tearing its session down if still open."""
        session = self._sessions.pop(channel_id, None)
        if session is not None:
            session.on_terminate(reason)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [
            {
                "channel_id": channel_id,
                "mode": s.mode.value,
                "state": s.state.value,
                "subsystem": s.mode is SessionMode.SUBSYSTEM,
            }
            for channel_id, s in self._sessions.items()
        ]

    def cleanup(self) -> None:
        """Tear down every session. Called on shutdown."""
        for channel_id in list(self._sessions):
            self.close_session(channel_id)
        logger.info("All sessions cleaned up")

    def __len__(self) -> int:
        return len(self._sessions)
