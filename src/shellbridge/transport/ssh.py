"""SSH transport — serves ShellSessions over asyncssh.

asyncssh owns the protocol (handshake, encryption, channel framing) and
calls back into one ``SSHChannelSession`` per ``session`` channel. Those
callbacks are translated into session events and dispatched synchronously
on the event loop, so a request's reply is known by the time asyncssh
needs it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Any

import asyncssh

from shellbridge.errors import ConfigurationError, ShellBridgeError
from shellbridge.session.events import (
    ChannelData,
    ChannelEof,
    ChannelEvent,
    EnvRequest,
    ExecRequest,
    PtyRequest,
    ShellRequest,
    SignalRequest,
    WindowChange,
)
from shellbridge.session.registry import SessionRegistry

if TYPE_CHECKING:
    from shellbridge.config import ShellBridgeConfig
    from shellbridge.session.state import ShellSession

logger = logging.getLogger(__name__)

HOST_KEY_ALGORITHM = "ssh-ed25519"


class AsyncSSHHandle:
    """ConnectionHandle for a single asyncssh channel.

    asyncssh answers a channel request with the return value of the
    session callback, so ``reply_request`` only records the outcome for
    the adapter to return. asyncssh also has no way to send an exit status
    without closing, so the status is held until ``close()``.
    """

    def __init__(self, chan: asyncssh.SSHServerChannel) -> None:
        self._chan = chan
        self._exit_status: int | None = None
        self.last_reply: bool | None = None

    def reply_request(self, want_reply: bool, success: bool, channel_id: int) -> None:
        self.last_reply = success

    def send(self, channel_id: int, data: bytes) -> None:
        try:
            self._chan.write(data)
        except OSError as e:
            logger.debug("Channel %d not writable: %s", channel_id, e)

    def send_eof(self, channel_id: int) -> None:
        try:
            self._chan.write_eof()
        except OSError as e:
            logger.debug("Channel %d eof failed: %s", channel_id, e)

    def send_exit_status(self, channel_id: int, status: int) -> None:
        self._exit_status = status

    def close(self, channel_id: int) -> None:
        if self._exit_status is not None:
            self._chan.exit(self._exit_status)
        else:
            self._chan.close()


class SSHChannelSession(asyncssh.SSHServerSession):
    """Adapter from asyncssh session callbacks to a ShellSession."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry
        self._chan: asyncssh.SSHServerChannel | None = None
        self._handle: AsyncSSHHandle | None = None
        self._session: ShellSession | None = None
        self.channel_id: int | None = None

    # ------------------------------------------------------------------
    # Channel lifecycle
    # ------------------------------------------------------------------

    def connection_made(self, chan: asyncssh.SSHServerChannel) -> None:
        self._chan = chan
        self._handle = AsyncSSHHandle(chan)
        self._session = self._registry.open_session(self._handle)
        self.channel_id = self._session.channel_id

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.info("Channel %s lost: %s", self.channel_id, exc)
        if self.channel_id is not None:
            self._registry.close_session(self.channel_id)

    # ------------------------------------------------------------------
    # Requests (answered synchronously)
    # ------------------------------------------------------------------

    def pty_requested(
        self,
        term_type: str,
        term_size: tuple[int, int, int, int],
        term_modes: dict[int, int],
    ) -> bool:
        columns, rows = term_size[0], term_size[1]
        return self._request(
            PtyRequest(
                channel_id=self._cid(),
                want_reply=True,
                term=term_type,
                columns=columns,
                rows=rows,
                modes=dict(term_modes),
            )
        )

    def shell_requested(self) -> bool:
        return self._start(ShellRequest(channel_id=self._cid(), want_reply=True))

    def exec_requested(self, command: str) -> bool:
        return self._start(
            ExecRequest(channel_id=self._cid(), want_reply=True, command=command)
        )

    def subsystem_requested(self, subsystem: str) -> bool:
        if not self._registry.has_subsystem(subsystem):
            logger.warning(
                "Channel %s asked for unknown subsystem %r", self.channel_id, subsystem
            )
            return False
        if self._handle is None:
            return False
        try:
            self._session = self._registry.open_subsystem(
                self._cid(), subsystem, self._handle
            )
        except ShellBridgeError as e:
            logger.error("Subsystem %r failed to start: %s", subsystem, e)
            return False
        return True

    def break_received(self, msec: int) -> bool:
        logger.debug("Channel %s break (%d ms) not supported", self.channel_id, msec)
        return False

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def data_received(self, data: bytes, datatype: int | None) -> None:
        self._deliver(ChannelData(channel_id=self._cid(), data=data, stream=datatype or 0))

    def eof_received(self) -> bool:
        self._deliver(ChannelEof(channel_id=self._cid()))
        # Stay half-open: the process keeps running and producing output
        return True

    def signal_received(self, signal: str) -> None:
        self._deliver(SignalRequest(channel_id=self._cid(), name=signal))

    def terminal_size_changed(
        self, width: int, height: int, pixwidth: int, pixheight: int
    ) -> None:
        self._deliver(WindowChange(channel_id=self._cid(), columns=width, rows=height))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cid(self) -> int:
        if self.channel_id is None:
            raise ShellBridgeError("channel is not open")
        return self.channel_id

    def _deliver(self, event: ChannelEvent) -> None:
        if self._session is not None:
            self._session.on_protocol_event(event)

    def _request(self, event: ChannelEvent) -> bool:
        if self._handle is None:
            return False
        self._handle.last_reply = None
        self._deliver(event)
        return bool(self._handle.last_reply)

    def _start(self, event: ChannelEvent) -> bool:
        """Deliver an exec/shell request, ending the channel if spawn fails."""
        self._replay_environment()
        try:
            return self._request(event)
        except ShellBridgeError as e:
            logger.error("Channel %s could not start: %s", self.channel_id, e)
            if self._chan is not None:
                # Let asyncssh send the failure reply before the close
                asyncio.get_running_loop().call_soon(self._chan.close)
            return False

    def _replay_environment(self) -> None:
        """Feed env requests asyncssh stored on the channel to the session."""
        if self._chan is None:
            return
        for key, value in self._chan.get_environment().items():
            self._deliver(
                EnvRequest(
                    channel_id=self._cid(),
                    want_reply=False,
                    key=_text(key),
                    value=_text(value),
                )
            )


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ShellBridgeServer(asyncssh.SSHServer):
    """Per-connection asyncssh server: one SSHChannelSession per channel."""

    def __init__(self, registry: SessionRegistry, auth_required: bool = True) -> None:
        self._registry = registry
        self._auth_required = auth_required

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        peer = conn.get_extra_info("peername")
        logger.info("Connection from %s", peer[0] if peer else "unknown")

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.info("Connection closed with error: %s", exc)

    def begin_auth(self, username: str) -> bool:
        return self._auth_required

    def session_requested(self) -> SSHChannelSession:
        return SSHChannelSession(self._registry)


def ensure_host_keys(paths: list[str]) -> list[str]:
    """Return ``paths`` expanded, generating any key file that is missing."""
    resolved = []
    for path in paths:
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            logger.warning(
                "Host key %s missing, generating %s key", path, HOST_KEY_ALGORITHM
            )
            key = asyncssh.generate_private_key(HOST_KEY_ALGORITHM)
            key.write_private_key(path)
            os.chmod(path, 0o600)
        resolved.append(path)
    return resolved


async def start_server(
    config: ShellBridgeConfig,
    registry: SessionRegistry | None = None,
) -> tuple[asyncssh.SSHAcceptor, SessionRegistry]:
    """Start listening for SSH connections.

    Raises:
        ConfigurationError: No host keys configured, or the authorized
            keys file does not exist.
    """
    if not config.server.host_keys:
        raise ConfigurationError("at least one host key is required")
    host_keys = ensure_host_keys(config.server.host_keys)

    authorized_keys = None
    if config.server.authorized_keys:
        authorized_keys = os.path.expanduser(config.server.authorized_keys)
        if not os.path.exists(authorized_keys):
            raise ConfigurationError(f"authorized keys file not found: {authorized_keys}")
    else:
        logger.warning("Authentication disabled: any client may open a shell")

    if registry is None:
        registry = SessionRegistry(subsystems=config.subsystem_commands())

    acceptor = await asyncssh.create_server(
        lambda: ShellBridgeServer(registry, auth_required=authorized_keys is not None),
        config.server.host,
        config.server.port,
        server_host_keys=host_keys,
        authorized_client_keys=authorized_keys,
        allow_pty=True,
        line_editor=False,
        encoding=None,
    )
    logger.info("Listening on %s:%d", config.server.host, config.server.port)
    return acceptor, registry


async def serve(config: ShellBridgeConfig) -> None:
    """Run the server until cancelled."""
    acceptor, registry = await start_server(config)
    try:
        await acceptor.wait_closed()
    finally:
        acceptor.close()
        registry.cleanup()
