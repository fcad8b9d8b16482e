"""Transport adapters — bridge a wire protocol onto ShellSession events."""

from shellbridge.transport.base import ConnectionHandle

__all__ = ["ConnectionHandle"]
