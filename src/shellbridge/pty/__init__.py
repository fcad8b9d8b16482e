"""PTY process management — children running on their own pseudo-terminal.

Each spawned process gets a fresh PTY pair, its own session and process
group, and reports output and exit back through callbacks on the event
loop thread.
"""

from shellbridge.pty.process import (
    ProcessHandle,
    ProcessSpawner,
    PTYProcess,
    PTYSpawner,
    PTYStatus,
)

__all__ = [
    "ProcessHandle",
    "ProcessSpawner",
    "PTYProcess",
    "PTYSpawner",
    "PTYStatus",
]
