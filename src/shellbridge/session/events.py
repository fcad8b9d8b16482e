"""Session events — the messages a ShellSession consumes.

Two independent producers feed a session: the transport (client-driven
channel events) and the PTY process (output and exit notifications).
Both are expressed as small immutable dataclasses tagged with an
``EventType`` so a session can dispatch on them uniformly.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from shellbridge.pty.process import ProcessHandle
    from shellbridge.transport.base import ConnectionHandle


class EventType(enum.Enum):
    CHANNEL_UP = "channel_up"
    PTY_REQUEST = "pty_request"
    ENV_REQUEST = "env_request"
    EXEC_REQUEST = "exec_request"
    SHELL_REQUEST = "shell_request"
    DATA = "data"
    WINDOW_CHANGE = "window_change"
    EOF = "eof"
    SIGNAL = "signal"
    EXIT_SIGNAL = "exit_signal"
    EXIT_STATUS = "exit_status"
    PROCESS_OUTPUT = "process_output"
    PROCESS_EXIT = "process_exit"


# ---------------------------------------------------------------------------
# Channel events (transport -> session)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChannelEvent:
    """Base for every event that arrives from the transport."""

    type: ClassVar[EventType]

    channel_id: int


@dataclass(frozen=True)
class ChannelUp(ChannelEvent):
    type: ClassVar[EventType] = EventType.CHANNEL_UP

    handle: ConnectionHandle = field(repr=False, compare=False)


@dataclass(frozen=True)
class PtyRequest(ChannelEvent):
    """Client asked for a pseudo-terminal."""

    type: ClassVar[EventType] = EventType.PTY_REQUEST

    want_reply: bool
    term: str
    columns: int
    rows: int
    modes: dict[int, int] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class EnvRequest(ChannelEvent):
    type: ClassVar[EventType] = EventType.ENV_REQUEST

    want_reply: bool
    key: str
    value: str


@dataclass(frozen=True)
class ExecRequest(ChannelEvent):
    type: ClassVar[EventType] = EventType.EXEC_REQUEST

    want_reply: bool
    command: str


@dataclass(frozen=True)
class ShellRequest(ChannelEvent):
    type: ClassVar[EventType] = EventType.SHELL_REQUEST

    want_reply: bool


@dataclass(frozen=True)
class ChannelData(ChannelEvent):
    """Raw bytes from the client. Only ``stream`` 0 reaches the process."""

    type: ClassVar[EventType] = EventType.DATA

    data: bytes
    stream: int = 0


@dataclass(frozen=True)
class WindowChange(ChannelEvent):
    type: ClassVar[EventType] = EventType.WINDOW_CHANGE

    columns: int
    rows: int


@dataclass(frozen=True)
class ChannelEof(ChannelEvent):
    type: ClassVar[EventType] = EventType.EOF


@dataclass(frozen=True)
class SignalRequest(ChannelEvent):
    type: ClassVar[EventType] = EventType.SIGNAL

    name: str


@dataclass(frozen=True)
class ExitSignal(ChannelEvent):
    type: ClassVar[EventType] = EventType.EXIT_SIGNAL

    signal: str
    core_dumped: bool = False
    message: str = ""


@dataclass(frozen=True)
class ExitStatus(ChannelEvent):
    type: ClassVar[EventType] = EventType.EXIT_STATUS

    status: int


# ---------------------------------------------------------------------------
# Process events (PTY process -> session)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcessEvent:
    """Base for notifications produced by a spawned process."""

    type: ClassVar[EventType]

    process: ProcessHandle = field(repr=False, compare=False)


@dataclass(frozen=True)
class ProcessOutput(ProcessEvent):
    type: ClassVar[EventType] = EventType.PROCESS_OUTPUT

    data: bytes = b""


@dataclass(frozen=True)
class ProcessExit(ProcessEvent):
    type: ClassVar[EventType] = EventType.PROCESS_EXIT

    exit_code: int = 0


def describe(event: Any) -> str:
    """Short, log-friendly rendering of an event."""
    event_type = getattr(event, "type", None)
    name = event_type.value if isinstance(event_type, EventType) else type(event).__name__
    channel_id = getattr(event, "channel_id", None)
    if channel_id is None:
        return name
    return f"{name}[{channel_id}]"
