"""Shared fakes for session tests: a recording transport and an in-memory spawner."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from shellbridge.errors import SpawnError


class RecordingHandle:
    """ConnectionHandle that records every outbound call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []

    def reply_request(self, want_reply: bool, success: bool, channel_id: int) -> None:
        self.calls.append(("reply", want_reply, success, channel_id))

    def send(self, channel_id: int, data: bytes) -> None:
        self.calls.append(("send", channel_id, data))

    def send_eof(self, channel_id: int) -> None:
        self.calls.append(("eof", channel_id))

    def send_exit_status(self, channel_id: int, status: int) -> None:
        self.calls.append(("exit_status", channel_id, status))

    def close(self, channel_id: int) -> None:
        self.calls.append(("close", channel_id))

    def of(self, kind: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == kind]


@dataclass
class FakeProcess:
    executable: str
    args: list[str]
    env: dict[str, str]
    columns: int | None
    rows: int | None
    on_output: Any
    on_exit: Any
    written: list[bytes] = field(default_factory=list)
    resizes: list[tuple[int, int]] = field(default_factory=list)
    closed: int = 0

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def resize(self, columns: int, rows: int) -> None:
        self.resizes.append((columns, rows))

    def close(self) -> None:
        self.closed += 1

    # Simulate the PTY side
    def emit(self, data: bytes) -> None:
        self.on_output(self, data)

    def exit(self, code: int = 0) -> None:
        self.on_exit(self, code)


class FakeSpawner:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.spawned: list[FakeProcess] = []

    def spawn(
        self,
        executable: str,
        args: list[str],
        *,
        env: dict[str, str],
        on_output: Any,
        on_exit: Any,
        columns: int | None = None,
        rows: int | None = None,
    ) -> FakeProcess:
        if self.fail:
            raise SpawnError(f"failed to spawn {executable!r}")
        process = FakeProcess(
            executable=executable,
            args=list(args),
            env=dict(env),
            columns=columns,
            rows=rows,
            on_output=on_output,
            on_exit=on_exit,
        )
        self.spawned.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.spawned[-1]


@pytest.fixture
def handle() -> RecordingHandle:
    return RecordingHandle()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Known SHELL/TERM so resolution is deterministic."""
    monkeypatch.setenv("SHELL", "/bin/testsh")
    monkeypatch.delenv("TERM", raising=False)
    return monkeypatch
