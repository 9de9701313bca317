"""PTY process: one shell running on a pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import functools
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field
from typing import Callable

from termbroker.errors import ProcessSpawnError

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
KILL_GRACE_SECONDS = 2.0


class ProcessStatus(enum.Enum):
    """Lifecycle states for a PTY process."""

    PENDING = "pending"  # Constructed, spawn() not called yet
    RUNNING = "running"
    KILLING = "killing"  # Hangup sent, waiting for the process to die
    EXITED = "exited"


def set_winsize(fd: int, cols: int, rows: int) -> None:
    """Apply terminal geometry to a pty file descriptor."""
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def get_winsize(fd: int) -> tuple[int, int]:
    """Return ``(cols, rows)`` of a pty file descriptor."""
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    rows, cols, _, _ = struct.unpack("HHHH", packed)
    return cols, rows


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


@dataclass
class PTYProcess:
    """A shell subprocess attached to a pseudo-terminal.

    The process runs in its own process group (``start_new_session``) so
    the whole tree can be signalled at once. Output is read from the
    master fd by an event-loop reader and handed to the ``on_output``
    callback chunk by chunk, in the order the process produced it. When
    the process goes away, ``on_exit`` fires exactly once, after the last
    output chunk.

    Writes and resizes share one lock so they are applied in the order
    they were requested.
    """

    command: list[str] = field(default_factory=lambda: ["/bin/bash"])
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=dict)
    term: str = "xterm-256color"

    # Internal state
    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pid: int = field(default=0, init=False)
    _pgid: int = field(default=0, init=False)
    _status: ProcessStatus = field(default=ProcessStatus.PENDING, init=False)
    _exit_code: int | None = field(default=None, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _io_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _exit_task: asyncio.Task | None = field(default=None, init=False)
    _exited: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _kill_timer: asyncio.TimerHandle | None = field(default=None, init=False)
    _on_output: Callable[[bytes], None] | None = field(default=None, init=False)
    _on_exit: Callable[[int | None], None] | None = field(default=None, init=False)

    def set_on_output(self, callback: Callable[[bytes], None]) -> None:
        """Set the callback receiving every output chunk."""
        self._on_output = callback

    def set_on_exit(self, callback: Callable[[int | None], None]) -> None:
        """Set the callback invoked once with the exit code when the process ends."""
        self._on_exit = callback

    async def spawn(self, cols: int, rows: int) -> None:
        """Start the process on a new PTY with the given geometry.

        The fork and exec run in the default executor.

        Raises:
            ProcessSpawnError: The command or working directory is unusable.
            RuntimeError: ``spawn()`` was already called on this wrapper.
        """
        if self._status is not ProcessStatus.PENDING or self._loop is not None:
            raise RuntimeError("PTYProcess.spawn() called more than once")
        loop = self._loop = asyncio.get_running_loop()

        master_fd, slave_fd = pty.openpty()
        set_winsize(master_fd, cols, rows)

        env = {**os.environ, **self.env}
        env["TERM"] = self.term
        env["COLORTERM"] = "truecolor"
        env.setdefault("LANG", "en_US.UTF-8")

        start = functools.partial(
            subprocess.Popen,
            self.command,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
            env=env,
            cwd=self.cwd,
            close_fds=True,
        )
        try:
            self._proc = await loop.run_in_executor(None, start)
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            self._status = ProcessStatus.EXITED
            self._exited.set()
            raise ProcessSpawnError(
                f"Failed to start {' '.join(self.command)!r} in {self.cwd}: {e}"
            ) from e
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pid = self._proc.pid
        self._pgid = os.getpgid(self._pid)
        self._status = ProcessStatus.RUNNING

        loop.add_reader(self._master_fd, self._on_readable)

        logger.info(
            "PTY process started: pid=%d pgid=%d cwd=%s cmd=%s",
            self._pid,
            self._pgid,
            self.cwd,
            " ".join(self.command),
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_CHUNK)
        except OSError:
            # EIO once the slave side is closed by every holder.
            data = b""

        if data:
            if self._on_output:
                self._on_output(data)
            return

        loop = asyncio.get_running_loop()
        loop.remove_reader(self._master_fd)
        if self._exit_task is None:
            self._exit_task = loop.create_task(self._finish())

    async def _finish(self) -> None:
        """Reap the child, release the fd, and fire the exit callback once."""
        loop = asyncio.get_running_loop()
        exit_code: int | None = None
        if self._proc is not None:
            exit_code = await loop.run_in_executor(None, self._proc.wait)

        async with self._io_lock:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = -1

        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

        self._exit_code = exit_code
        self._status = ProcessStatus.EXITED
        logger.info("PTY process %d exited (code=%s)", self._pid, exit_code)

        try:
            if self._on_exit:
                self._on_exit(exit_code)
        except Exception:
            logger.exception("Error in on_exit callback for pid %d", self._pid)
        finally:
            self._exited.set()

    async def write(self, data: bytes) -> None:
        """Forward bytes to the process's terminal input.

        Silently drops the write when the process has already exited.
        """
        if not data or not self.alive:
            return
        async with self._io_lock:
            if self._master_fd < 0:
                return
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._write_all, self._master_fd, data)
            except OSError as e:
                logger.debug("Write to pid %d lost: %s", self._pid, e)

    @staticmethod
    def _write_all(fd: int, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            view = view[written:]

    async def resize(self, cols: int, rows: int) -> None:
        """Update terminal geometry. No-op once the process has exited."""
        if not self.alive:
            return
        async with self._io_lock:
            if self._master_fd < 0:
                return
            try:
                set_winsize(self._master_fd, cols, rows)
            except OSError as e:
                logger.debug("Resize of pid %d failed: %s", self._pid, e)

    def kill(self) -> None:
        """Hang up the whole process group; SIGKILL follows after a grace period.

        The exit callback still fires through the normal read-EOF path.
        """
        if self._status is not ProcessStatus.RUNNING:
            return

        self._status = ProcessStatus.KILLING
        self._signal_group(signal.SIGHUP)
        if self._loop is not None:
            self._kill_timer = self._loop.call_later(
                KILL_GRACE_SECONDS, self._signal_group, signal.SIGKILL
            )

    def _signal_group(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self._pgid, sig)
            logger.info("Sent %s to PTY process group %d", sig.name, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except PermissionError as e:
            logger.warning("Cannot signal process group %d: %s", self._pgid, e)

    async def wait(self) -> int | None:
        """Wait until the exit callback has run. Returns the exit code."""
        if self._status is ProcessStatus.PENDING:
            raise RuntimeError("PTYProcess.wait() called before spawn()")
        await self._exited.wait()
        return self._exit_code

    @property
    def alive(self) -> bool:
        return self._status is ProcessStatus.RUNNING

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def winsize(self) -> tuple[int, int] | None:
        """Current ``(cols, rows)`` as seen by the kernel, or None after exit."""
        if self._master_fd < 0:
            return None
        return get_winsize(self._master_fd)
