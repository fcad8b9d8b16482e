"""Outbound transport contract used by sessions."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ConnectionHandle(Protocol):
    """Capability a session uses to talk back to its channel.

    Owned by the transport; a session only keeps a reference. Every call
    names the channel it targets so one handle can serve a whole
    connection.
    """

    def reply_request(self, want_reply: bool, success: bool, channel_id: int) -> None:
        """Acknowledge a channel request. No-op when ``want_reply`` is false."""
        ...

    def send(self, channel_id: int, data: bytes) -> None: ...

    def send_eof(self, channel_id: int) -> None: ...

    def send_exit_status(self, channel_id: int, status: int) -> None: ...

    def close(self, channel_id: int) -> None: ...
