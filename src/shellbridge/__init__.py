"""shellbridge — bridge SSH session channels to local PTY processes."""

__version__ = "0.1.0"
