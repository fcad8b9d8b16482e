"""Tests for shellbridge.pty.process against real PTY children."""

from __future__ import annotations

import asyncio
import os
import sys
import time

import pytest

from shellbridge.errors import SpawnError
from shellbridge.pty.process import (
    KILL_GRACE,
    PTYProcess,
    PTYSpawner,
    PTYStatus,
    exit_status,
)

pytestmark = pytest.mark.skipif(
    sys.platform == "win32", reason="PTYs need a POSIX platform"
)

TIMEOUT = 10.0


class Recorder:
    """Collects PTY callbacks and lets a test await them."""

    def __init__(self) -> None:
        self.output = bytearray()
        self.exits: list[int] = []
        self.exited = asyncio.Event()

    def on_output(self, process: object, data: bytes) -> None:
        self.output.extend(data)

    def on_exit(self, process: object, code: int) -> None:
        self.exits.append(code)
        self.exited.set()

    async def wait_for(self, needle: bytes) -> None:
        async def _poll() -> None:
            while needle not in self.output:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), TIMEOUT)

    async def wait_exit(self) -> int:
        await asyncio.wait_for(self.exited.wait(), TIMEOUT)
        return self.exits[-1]


def _spawn(rec: Recorder, command: list[str], **kwargs) -> PTYProcess:
    return PTYSpawner().spawn(
        command[0],
        command[1:],
        env=kwargs.pop("env", {}),
        on_output=rec.on_output,
        on_exit=rec.on_exit,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# exit_status
# ---------------------------------------------------------------------------


class TestExitStatus:
    def test_normal(self) -> None:
        assert exit_status(0) == 0
        assert exit_status(42) == 42

    def test_signal(self) -> None:
        assert exit_status(-9) == 137
        assert exit_status(-15) == 143


# ---------------------------------------------------------------------------
# Spawning and exit
# ---------------------------------------------------------------------------


class TestSpawn:
    async def test_echo(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["echo", "hi"])
        assert await rec.wait_exit() == 0
        process.close()
        assert b"hi" in rec.output
        assert process.status is PTYStatus.EXITED
        assert process.exit_code == 0

    async def test_exit_code(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["sh", "-c", "exit 3"])
        assert await rec.wait_exit() == 3
        process.close()

    async def test_killed_by_signal(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["sh", "-c", "kill -TERM $$"])
        assert await rec.wait_exit() == 143
        process.close()

    async def test_environment(self) -> None:
        rec = Recorder()
        process = _spawn(
            rec, ["sh", "-c", 'echo "[$SB_VALUE]"'], env={"SB_VALUE": "xyz"}
        )
        await rec.wait_exit()
        process.close()
        assert b"[xyz]" in rec.output

    async def test_initial_size(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["stty", "size"], columns=100, rows=40)
        await rec.wait_exit()
        process.close()
        assert b"40 100" in rec.output

    async def test_missing_executable(self) -> None:
        with pytest.raises(SpawnError):
            _spawn(Recorder(), ["/nonexistent/shellbridge-test"])

    async def test_empty_command(self) -> None:
        with pytest.raises(SpawnError, match="empty command"):
            PTYProcess(command=[]).start()


# ---------------------------------------------------------------------------
# Input, resize, close
# ---------------------------------------------------------------------------


class TestInteraction:
    async def test_raw_round_trip(self) -> None:
        payload = b"abc\x01\x02 xyz\r\n\x7f!"
        rec = Recorder()
        process = _spawn(rec, ["sh", "-c", "stty raw -echo && echo READY && exec cat"])
        await rec.wait_for(b"READY")
        for i in range(0, len(payload), 3):
            process.write(payload[i : i + 3])
        await rec.wait_for(payload)
        process.close()
        assert bytes(rec.output).split(b"READY", 1)[1].lstrip(b"\r\n") == payload

    async def test_cat_exits_on_eof(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["cat"])
        process.write(b"hello\n")
        await rec.wait_for(b"hello\r\nhello")
        process.write(b"\x04")
        assert await rec.wait_exit() == 0
        process.close()
        assert rec.output.count(b"hello") == 2

    async def test_resize(self) -> None:
        rec = Recorder()
        process = _spawn(
            rec,
            ["sh", "-c", "echo READY; read x; stty size"],
            columns=80,
            rows=24,
        )
        await rec.wait_for(b"READY")
        process.resize(120, 50)
        process.write(b"\n")
        await rec.wait_exit()
        process.close()
        assert b"50 120" in rec.output

    async def test_close_kills_without_exit_callback(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["sleep", "30"])
        assert process.alive
        process.close()
        process.close()
        await asyncio.sleep(0.2)
        assert process.status is PTYStatus.KILLED
        assert not process.alive
        assert rec.exits == []

    async def test_write_after_exit(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["true"])
        await rec.wait_exit()
        with pytest.raises(BrokenPipeError):
            process.write(b"x")
        process.close()


# ---------------------------------------------------------------------------
# Input backpressure and release
# ---------------------------------------------------------------------------


class TestBackpressure:
    async def test_write_returns_when_child_not_reading(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["sh", "-c", "stty raw -echo; echo READY; sleep 30"])
        await rec.wait_for(b"READY")

        started = time.monotonic()
        process.write(b"x" * 200_000)
        process.write(b"y" * 1000)
        assert time.monotonic() - started < 0.5
        assert process.pending_input > 0

        # Loop stays responsive while input is queued
        await asyncio.sleep(0.05)
        assert process.alive

        process.close()
        assert process.pending_input == 0
        assert process.status is PTYStatus.KILLED

    async def test_queued_input_reaches_cat_in_order(self) -> None:
        payload = b"".join(b"%06d\n" % i for i in range(20_000))
        rec = Recorder()
        process = _spawn(rec, ["sh", "-c", "stty raw -echo && echo READY && exec cat"])
        await rec.wait_for(b"READY")

        for i in range(0, len(payload), 7000):
            process.write(payload[i : i + 7000])
        await rec.wait_for(payload)
        assert process.pending_input == 0
        process.close()
        assert bytes(rec.output).split(b"READY", 1)[1].lstrip(b"\r\n") == payload

    async def test_close_does_not_wait_for_hangup_immune_child(self) -> None:
        rec = Recorder()
        process = _spawn(rec, ["sh", "-c", "trap '' HUP; echo READY; sleep 30"])
        await rec.wait_for(b"READY")
        pid = process.pid
        assert pid is not None

        started = time.monotonic()
        process.close()
        assert time.monotonic() - started < 0.5
        assert process.status is PTYStatus.KILLED

        async def _reaped() -> None:
            while True:
                try:
                    os.kill(pid, 0)
                except ProcessLookupError:
                    return
                await asyncio.sleep(0.05)

        await asyncio.wait_for(_reaped(), KILL_GRACE + TIMEOUT)
        assert rec.exits == []
