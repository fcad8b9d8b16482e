"""PTY process — a child process attached to a fresh pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import uuid
from dataclasses import dataclass, field
from typing import Callable, Protocol

from shellbridge.errors import SpawnError

logger = logging.getLogger(__name__)

READ_SIZE = 4096
KILL_GRACE = 1.0


class ProcessHandle(Protocol):
    """What a session may do with the process it owns."""

    def write(self, data: bytes) -> None: ...

    def resize(self, columns: int, rows: int) -> None: ...

    def close(self) -> None:
        """Release the process, killing it first if it is still running."""
        ...


OutputCallback = Callable[[ProcessHandle, bytes], None]
ExitCallback = Callable[[ProcessHandle, int], None]


class ProcessSpawner(Protocol):
    def spawn(
        self,
        executable: str,
        args: list[str],
        *,
        env: dict[str, str],
        on_output: OutputCallback,
        on_exit: ExitCallback,
        columns: int | None = None,
        rows: int | None = None,
    ) -> ProcessHandle: ...


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY process."""

    NEW = "new"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for the group to die
    KILLED = "killed"  # Killed by us
    EXITED = "exited"  # Process exited on its own


def exit_status(returncode: int) -> int:
    """Map a Popen return code onto a shell-style 0..255 exit status."""
    if returncode < 0:
        return (128 - returncode) & 0xFF
    return returncode & 0xFF


def _set_winsize(fd: int, columns: int, rows: int) -> None:
    packed = struct.pack("HHHH", max(rows, 1), max(columns, 1), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, packed)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the slave end by now.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


@dataclass
class PTYProcess:
    """A process running on its own pseudo-terminal.

    Output is read from the PTY master with ``loop.add_reader`` so every
    chunk is delivered on the event loop thread, in the order the child
    wrote it. When the child closes the terminal the process is reaped and
    ``on_exit`` fires exactly once, unless the process was killed through
    ``close()``. Input the terminal cannot take yet is queued and flushed
    from the loop, so no call here blocks.
    """

    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    on_output: OutputCallback | None = None
    on_exit: ExitCallback | None = None
    columns: int | None = None
    rows: int | None = None
    cwd: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    _master_fd: int = field(default=-1, init=False, repr=False)
    _proc: subprocess.Popen | None = field(default=None, init=False, repr=False)
    _pgid: int = field(default=0, init=False, repr=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False, repr=False)
    _watch_task: asyncio.Task | None = field(default=None, init=False, repr=False)
    _eof: asyncio.Future | None = field(default=None, init=False, repr=False)
    _reap_task: asyncio.Task | None = field(default=None, init=False, repr=False)
    _pending: bytearray = field(default_factory=bytearray, init=False, repr=False)
    _writing: bool = field(default=False, init=False, repr=False)
    _status: PTYStatus = field(default=PTYStatus.NEW, init=False)
    _exit_code: int | None = field(default=None, init=False)

    def start(self) -> None:
        """Spawn the child. Must be called with an event loop running.

        Raises:
            SpawnError: Empty command, PTY allocation or exec failure.
        """
        if self._status is not PTYStatus.NEW:
            raise SpawnError(f"PTY process {self.id} already started")
        if not self.command:
            raise SpawnError("empty command")

        loop = asyncio.get_running_loop()

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"could not allocate a pty: {e}") from e

        env = {**os.environ, **self.env}

        try:
            if self.columns is not None and self.rows is not None:
                _set_winsize(slave_fd, self.columns, self.rows)
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=self.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(f"failed to spawn {self.command[0]!r}: {e}") from e
        finally:
            # Parent never keeps the slave end
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        self._pgid = os.getpgid(self._proc.pid)
        self._status = PTYStatus.RUNNING

        self._loop = loop
        self._eof = loop.create_future()
        loop.add_reader(master_fd, self._on_readable)
        self._watch_task = loop.create_task(self._watch())

        logger.info(
            "PTY process %s started: pid=%d cmd=%s",
            self.id,
            self._proc.pid,
            " ".join(self.command),
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO: every slave fd is closed, i.e. the child is gone
            if e.errno != errno.EIO:
                logger.debug("PTY process %s read failed: %s", self.id, e)
            data = b""

        if not data:
            self._stop_io()
            if self._eof is not None and not self._eof.done():
                self._eof.set_result(None)
            return

        if self.on_output is not None and self._status is PTYStatus.RUNNING:
            try:
                self.on_output(self, data)
            except Exception:
                logger.exception("Error in on_output callback for PTY %s", self.id)

    def _on_writable(self) -> None:
        try:
            written = os.write(self._master_fd, self._pending)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug(
                "PTY process %s dropped %d input bytes: %s",
                self.id,
                len(self._pending),
                e,
            )
            self._stop_writing()
            return
        del self._pending[:written]
        if not self._pending:
            self._stop_writing()

    def _stop_writing(self) -> None:
        self._pending.clear()
        if not self._writing:
            return
        self._writing = False
        if self._loop is not None and not self._loop.is_closed():
            try:
                self._loop.remove_writer(self._master_fd)
            except (ValueError, OSError):
                pass

    def _stop_io(self) -> None:
        self._stop_writing()
        if self._master_fd < 0 or self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.remove_reader(self._master_fd)
        except (ValueError, OSError):
            pass

    async def _watch(self) -> None:
        """Wait for the terminal to hang up, then reap the child."""
        if self._eof is None or self._proc is None:
            return
        await self._eof
        loop = asyncio.get_running_loop()
        returncode = await loop.run_in_executor(None, self._proc.wait)

        # Only report if nobody killed us in the meantime
        if self._status is not PTYStatus.RUNNING:
            return
        self._status = PTYStatus.EXITED
        self._exit_code = exit_status(returncode)
        logger.info("PTY process %s exited (code=%d)", self.id, self._exit_code)
        if self.on_exit is not None:
            try:
                self.on_exit(self, self._exit_code)
            except Exception:
                logger.exception("Error in on_exit callback for PTY %s", self.id)

    def write(self, data: bytes) -> None:
        """Queue bytes for the child's terminal input. Never blocks.

        Whatever the PTY does not accept right away is kept in order and
        flushed from the event loop as the child reads.
        """
        if self._status is not PTYStatus.RUNNING:
            raise BrokenPipeError(f"PTY process {self.id} is not running")
        if not data:
            return
        if self._pending:
            self._pending.extend(data)
            return

        try:
            written = os.write(self._master_fd, data)
        except BlockingIOError:
            written = 0
        if written == len(data):
            return

        self._pending.extend(memoryview(data)[written:])
        if self._loop is not None and not self._writing:
            self._loop.add_writer(self._master_fd, self._on_writable)
            self._writing = True

    @property
    def pending_input(self) -> int:
        """Bytes written but not yet accepted by the PTY."""
        return len(self._pending)

    def resize(self, columns: int, rows: int) -> None:
        if self._status is not PTYStatus.RUNNING:
            return
        try:
            _set_winsize(self._master_fd, columns, rows)
        except OSError as e:
            logger.warning("Resize of PTY %s failed: %s", self.id, e)
            return
        self.columns, self.rows = columns, rows

    def close(self) -> None:
        """Kill the process group if still running and close the master fd."""
        if self._status is PTYStatus.RUNNING:
            self._kill()
            if self._watch_task is not None:
                self._watch_task.cancel()
        self._stop_io()
        if self._master_fd >= 0:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = -1

    def _kill(self) -> None:
        """SIGHUP the group now; SIGKILL it later if it has not gone."""
        self._status = PTYStatus.KILLING
        if self._signal(signal.SIGHUP):
            if self._loop is not None and self._loop.is_running():
                self._reap_task = self._loop.create_task(self._reap())
            elif not self._wait(KILL_GRACE):
                self._signal(signal.SIGKILL)
                self._wait(KILL_GRACE)
        logger.info("Killed PTY process %s (pgid=%d)", self.id, self._pgid)
        self._status = PTYStatus.KILLED

    async def _reap(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            if not await loop.run_in_executor(None, self._wait, KILL_GRACE):
                self._signal(signal.SIGKILL)
                await loop.run_in_executor(None, self._wait, KILL_GRACE)
        except asyncio.CancelledError:
            # Loop shutting down: don't leave a SIGHUP-immune child behind
            self._signal(signal.SIGKILL)
            raise

    def _signal(self, sig: signal.Signals) -> bool:
        """Signal the process group. Returns False once it is gone."""
        try:
            os.killpg(self._pgid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
            return False
        except OSError as e:
            logger.warning("Error killing PTY %s: %s", self.id, e)
            return False
        return True

    def _wait(self, timeout: float) -> bool:
        if self._proc is None:
            return True
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    @property
    def alive(self) -> bool:
        return self._status is PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    async def wait_for_exit(self, timeout: float = 10.0) -> int | None:
        """Wait for the watcher to reap the child. Returns None on timeout."""
        if self._watch_task is None:
            return None
        try:
            await asyncio.wait_for(asyncio.shield(self._watch_task), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._exit_code


class PTYSpawner:
    """Default ProcessSpawner: every process gets its own PTY."""

    def __init__(self, cwd: str | None = None) -> None:
        self._cwd = cwd

    def spawn(
        self,
        executable: str,
        args: list[str],
        *,
        env: dict[str, str],
        on_output: OutputCallback,
        on_exit: ExitCallback,
        columns: int | None = None,
        rows: int | None = None,
    ) -> PTYProcess:
        process = PTYProcess(
            command=[executable, *args],
            env=env,
            on_output=on_output,
            on_exit=on_exit,
            columns=columns,
            rows=rows,
            cwd=self._cwd,
        )
        process.start()
        return process
