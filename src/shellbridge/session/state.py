"""ShellSession — the per-channel bridge between a channel and a PTY process.

One session exists per channel. It consumes two event streams:

* channel events from the transport (pty/env negotiation, exec/shell
  requests, data, window changes, peer exit), and
* process events from the PTY (output chunks and the final exit),

and turns them into process operations (spawn/write/resize/close) and
channel operations (replies, data, exit status, eof, close).

Interactive sessions start ``IDLE`` and spawn lazily when an exec or
shell request arrives; everything before that is configuration.
Subsystem sessions spawn eagerly from ``start()`` and never accept
configuration requests. Both modes share the same relay and termination
logic.

All methods must be called from a single thread (the event loop that
drives the transport and the PTY reader), which serializes the two
streams without locks.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from shellbridge.command import (
    resolve_shell_command,
    resolve_terminal_type,
    split_command,
)
from shellbridge.errors import (
    ConfigurationError,
    SpawnError,
    TerminationReason,
    UnhandledEventError,
)
from shellbridge.session.events import (
    ChannelData,
    ChannelEvent,
    ChannelUp,
    EnvRequest,
    EventType,
    ExecRequest,
    ProcessEvent,
    ProcessExit,
    ProcessOutput,
    PtyRequest,
    ShellRequest,
    WindowChange,
    describe,
)

if TYPE_CHECKING:
    from shellbridge.pty.process import ProcessHandle, ProcessSpawner
    from shellbridge.transport.base import ConnectionHandle

logger = logging.getLogger(__name__)


class SessionMode(enum.Enum):
    INTERACTIVE = "interactive"
    SUBSYSTEM = "subsystem"


class SessionState(enum.Enum):
    """Lifecycle states for a session."""

    NEW = "new"  # No channel-up yet
    IDLE = "idle"
    CONFIGURING = "configuring"  # At least one pty/env request accepted
    RUNNING = "running"  # Process spawned, relay active
    CLOSED = "closed"


_CONFIGURABLE = (SessionState.IDLE, SessionState.CONFIGURING)


@dataclass
class PtyOptions:
    """Terminal parameters negotiated by a pty request."""

    term: str
    columns: int
    rows: int
    modes: dict[int, int] = field(default_factory=dict)


class ShellSession:
    """State machine for one channel.

    Args:
        spawner: Creates the PTY process on exec/shell (or at ``start()``).
        mode: Interactive (lazy spawn) or subsystem (eager spawn).
        command: Subsystem command. ``None`` falls back to the user's shell.
    """

    def __init__(
        self,
        spawner: ProcessSpawner,
        mode: SessionMode = SessionMode.INTERACTIVE,
        command: list[str] | None = None,
    ) -> None:
        self.mode = mode
        self.command = command
        self.state = SessionState.NEW
        self.channel_id: int | None = None
        self.process: ProcessHandle | None = None
        self.pty_options: PtyOptions | None = None
        self.environment: dict[str, str] = {}
        self.termination_reason: TerminationReason | None = None

        self._spawner = spawner
        self._handle: ConnectionHandle | None = None
        # Subsystem output/exit that beat channel-up
        self._pending_output: list[bytes] = []
        self._pending_exit: int | None = None

        self._handlers: dict[EventType, Callable[[Any], None]] = {
            EventType.PTY_REQUEST: self._on_pty_request,
            EventType.ENV_REQUEST: self._on_env_request,
            EventType.EXEC_REQUEST: self._on_exec_request,
            EventType.SHELL_REQUEST: self._on_shell_request,
            EventType.DATA: self._on_data,
            EventType.WINDOW_CHANGE: self._on_window_change,
            EventType.EOF: self._on_eof,
            EventType.SIGNAL: self._on_signal,
            EventType.EXIT_SIGNAL: self._on_peer_exit,
            EventType.EXIT_STATUS: self._on_peer_exit,
            EventType.PROCESS_OUTPUT: self._on_process_output,
            EventType.PROCESS_EXIT: self._on_process_exit,
        }

    @classmethod
    def interactive(cls, spawner: ProcessSpawner) -> ShellSession:
        return cls(spawner, SessionMode.INTERACTIVE)

    @classmethod
    def subsystem(
        cls, spawner: ProcessSpawner, command: list[str] | None = None
    ) -> ShellSession:
        """Build a subsystem session and spawn its process immediately."""
        session = cls(spawner, SessionMode.SUBSYSTEM, command=command)
        session.start()
        return session

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the subsystem process before any channel event.

        Raises:
            ConfigurationError: No command configured and no shell found.
            SpawnError: The process could not be created.
        """
        if self.mode is not SessionMode.SUBSYSTEM:
            raise SpawnError("only subsystem sessions spawn at start")
        command = self.command or resolve_shell_command()
        self._spawn(command, {"TERM": resolve_terminal_type()})

    def on_channel_open(self, channel_id: int, handle: ConnectionHandle) -> None:
        """Bind the session to its channel."""
        if self._handle is not None or self.state is SessionState.CLOSED:
            logger.error(
                "[%s] unexpected channel-up for channel %s", self._tag(), channel_id
            )
            return

        self.channel_id = channel_id
        self._handle = handle
        if self.state is SessionState.NEW:
            self.state = SessionState.IDLE
        logger.debug("[%s] channel %s up", self._tag(), channel_id)

        pending, self._pending_output = self._pending_output, []
        for data in pending:
            handle.send(channel_id, data)
        if self._pending_exit is not None:
            self._finish(self._pending_exit)

    def on_protocol_event(self, event: ChannelEvent) -> None:
        """Handle one event from the transport.

        Raises:
            ConfigurationError: A shell request found no shell to run.
            SpawnError: An exec/shell request failed to spawn its process.
        """
        if isinstance(event, ChannelUp):
            self.on_channel_open(event.channel_id, event.handle)
            return
        if event.channel_id != self.channel_id:
            self._unhandled(event)
            return
        self._dispatch(event)

    def on_process_event(self, event: ProcessEvent) -> None:
        """Handle an output chunk or the exit of the owned process."""
        if self.process is None or event.process is not self.process:
            logger.debug("[%s] dropping stale %s", self._tag(), describe(event))
            return
        self._dispatch(event)

    def on_terminate(
        self, reason: TerminationReason = TerminationReason.TEARDOWN
    ) -> bool:
        """Tear the session down. Returns False if it was already closed."""
        return self._close(reason, close_channel=False)

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, event: ChannelEvent | ProcessEvent) -> None:
        if self.state is SessionState.CLOSED:
            logger.debug("[%s] closed, ignoring %s", self._tag(), describe(event))
            return
        handler = self._handlers.get(event.type)
        try:
            if handler is None:
                raise UnhandledEventError(event, self.state)
            handler(event)
        except UnhandledEventError:
            self._unhandled(event)

    def _unhandled(self, event: Any) -> None:
        logger.error(
            "[%s] unhandled message in state %s: %r",
            self._tag(),
            self.state.value,
            event,
        )

    def _reject(self, event: Any) -> None:
        """Refuse a request that is illegal in the current state."""
        self._reply(getattr(event, "want_reply", False), False)
        raise UnhandledEventError(event, self.state)

    def _reply(self, want_reply: bool, success: bool) -> None:
        if self._handle is not None and self.channel_id is not None:
            self._handle.reply_request(want_reply, success, self.channel_id)

    # ------------------------------------------------------------------
    # Configuration phase
    # ------------------------------------------------------------------

    def _configurable(self) -> bool:
        return self.mode is SessionMode.INTERACTIVE and self.state in _CONFIGURABLE

    def _on_pty_request(self, event: PtyRequest) -> None:
        if not self._configurable():
            self._reject(event)
        self.pty_options = PtyOptions(
            term=event.term,
            columns=event.columns,
            rows=event.rows,
            modes=dict(event.modes),
        )
        self.state = SessionState.CONFIGURING
        self._reply(event.want_reply, True)

    def _on_env_request(self, event: EnvRequest) -> None:
        if not self._configurable():
            self._reject(event)
        self.environment[event.key] = event.value
        self.state = SessionState.CONFIGURING
        self._reply(event.want_reply, True)

    def _on_exec_request(self, event: ExecRequest) -> None:
        if not self._configurable():
            self._reject(event)
        self._run(event, lambda: split_command(event.command))

    def _on_shell_request(self, event: ShellRequest) -> None:
        if not self._configurable():
            self._reject(event)
        self._run(event, resolve_shell_command)

    def _run(
        self, event: ExecRequest | ShellRequest, resolve: Callable[[], list[str]]
    ) -> None:
        try:
            self._spawn(resolve(), self.spawn_environment())
        except (ConfigurationError, SpawnError) as e:
            logger.error("[%s] %s failed: %s", self._tag(), event.type.value, e)
            self._reply(event.want_reply, False)
            raise
        self._reply(event.want_reply, True)

    def spawn_environment(self) -> dict[str, str]:
        """Negotiated environment plus a TERM default."""
        env = dict(self.environment)
        if "TERM" not in env:
            term = self.pty_options.term if self.pty_options else None
            env["TERM"] = resolve_terminal_type(term)
        return env

    def _spawn(self, command: list[str], env: dict[str, str]) -> None:
        if self.process is not None:
            raise SpawnError("process already spawned for this session")
        if not command:
            raise SpawnError("empty command")

        executable, *args = command
        size: dict[str, int] = {}
        if self.pty_options is not None:
            size = {"columns": self.pty_options.columns, "rows": self.pty_options.rows}

        self.process = self._spawner.spawn(
            executable,
            args,
            env=env,
            on_output=self._process_output_cb,
            on_exit=self._process_exit_cb,
            **size,
        )
        self.state = SessionState.RUNNING
        logger.info("[%s] running %s", self._tag(), " ".join(command))

    def _process_output_cb(self, process: ProcessHandle, data: bytes) -> None:
        self.on_process_event(ProcessOutput(process=process, data=data))

    def _process_exit_cb(self, process: ProcessHandle, exit_code: int) -> None:
        self.on_process_event(ProcessExit(process=process, exit_code=exit_code))

    # ------------------------------------------------------------------
    # Running phase
    # ------------------------------------------------------------------

    def _on_data(self, event: ChannelData) -> None:
        if self.state is not SessionState.RUNNING or self.process is None:
            logger.debug(
                "[%s] dropping %d bytes before process start",
                self._tag(),
                len(event.data),
            )
            return
        if event.stream != 0:
            logger.debug("[%s] ignoring data on stream %d", self._tag(), event.stream)
            return
        try:
            self.process.write(event.data)
        except OSError as e:
            logger.warning("[%s] write to process failed: %s", self._tag(), e)

    def _on_window_change(self, event: WindowChange) -> None:
        if self.state is not SessionState.RUNNING or self.process is None:
            raise UnhandledEventError(event, self.state)
        self.process.resize(event.columns, event.rows)

    def _on_eof(self, event: ChannelEvent) -> None:
        # The process keeps running; the client may still read its output.
        logger.debug("[%s] client eof", self._tag())

    def _on_signal(self, event: ChannelEvent) -> None:
        logger.debug("[%s] not forwarding signal %r", self._tag(), event)

    def _on_peer_exit(self, event: ChannelEvent) -> None:
        logger.info("[%s] peer sent %s", self._tag(), event.type.value)
        self._close(TerminationReason.PEER, close_channel=True)

    def _on_process_output(self, event: ProcessOutput) -> None:
        if self._handle is None or self.channel_id is None:
            self._pending_output.append(event.data)
            return
        self._handle.send(self.channel_id, event.data)

    def _on_process_exit(self, event: ProcessExit) -> None:
        if self._handle is None:
            self._pending_exit = event.exit_code
            return
        self._finish(event.exit_code)

    def _finish(self, exit_code: int) -> None:
        if self._handle is None or self.channel_id is None:
            return
        self._handle.send_exit_status(self.channel_id, exit_code)
        self._handle.send_eof(self.channel_id)
        self._close(TerminationReason.PROCESS_EXIT, close_channel=True)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _close(self, reason: TerminationReason, close_channel: bool) -> bool:
        if self.state is SessionState.CLOSED:
            return False
        self.state = SessionState.CLOSED
        self.termination_reason = reason

        process, self.process = self.process, None
        if process is not None:
            process.close()
        if close_channel and self._handle is not None and self.channel_id is not None:
            self._handle.close(self.channel_id)

        logger.info("[%s] closed (%s)", self._tag(), reason.value)
        return True

    def _tag(self) -> str:
        return f"{self.mode.value}:{self.channel_id}"
