"""Channel sessions — the state machine bridging a channel to a PTY process."""

from shellbridge.session.registry import SessionRegistry
from shellbridge.session.state import (
    PtyOptions,
    SessionMode,
    SessionState,
    ShellSession,
)

__all__ = [
    "PtyOptions",
    "SessionMode",
    "SessionRegistry",
    "SessionState",
    "ShellSession",
]
