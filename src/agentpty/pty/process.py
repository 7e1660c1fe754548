"""PTY process — one external program attached to its own pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import subprocess
import termios
from typing import Callable, Protocol

from agentpty.errors import ProcessError

logger = logging.getLogger(__name__)

READ_SIZE = 4096
REAP_INTERVAL = 0.05
WRITE_WAIT = 1.0

DataCallback = Callable[[str], None]
ExitCallback = Callable[["int | None"], None]


class ProcessHandle(Protocol):
    """What the spawner needs from a running process.

    ``PTYProcess`` is the real implementation; tests inject doubles.
    """

    @property
    def pid(self) -> int: ...

    @property
    def alive(self) -> bool: ...

    async def start(self) -> None: ...

    def write(self, data: str) -> None: ...

    def send_signal(self, sig: int) -> None: ...

    async def wait(self) -> int | None: ...


ProcessFactory = Callable[..., ProcessHandle]


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the PTY slave (already on fd 0)
    # the controlling terminal so Ctrl+C written to the master raises SIGINT.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PTYProcess:
    """A managed process inside a pseudo-terminal.

    Wraps an interactive CLI with:
    - Process group isolation (start_new_session) for safe tree-killing
    - The PTY slave as controlling terminal, so control bytes become signals
    - An async reader that hands decoded output to ``on_data``
    - Exit detection that reaps the child and calls ``on_exit`` exactly once

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop on macOS.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        on_data: DataCallback,
        on_exit: ExitCallback,
        cols: int = 120,
        rows: int = 40,
    ) -> None:
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.cols = cols
        self.rows = rows
        self._on_data = on_data
        self._on_exit = on_exit
        self._master_fd: int = -1
        self._proc: subprocess.Popen | None = None
        self._pid: int = 0
        self._pgid: int = 0
        self._reader_task: asyncio.Task | None = None
        self._exited: asyncio.Future[int | None] | None = None

    async def start(self) -> None:
        """Spawn the process in a new PTY with its own session."""
        loop = asyncio.get_running_loop()
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, self.rows, self.cols)
            self._proc = subprocess.Popen(
                self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env=self.env,
                cwd=self.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise ProcessError(f"Failed to launch {self.argv[0]}: {e}") from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pid = self._proc.pid
        try:
            self._pgid = os.getpgid(self._pid)
        except ProcessLookupError:
            self._pgid = self._pid  # start_new_session makes the child a group leader

        self._exited = loop.create_future()
        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "PTY process started: pid=%d pgid=%d cmd=%s",
            self._pid,
            self._pgid,
            " ".join(self.argv),
        )

    async def _read_loop(self) -> None:
        """Read from the PTY master until the slave side closes.

        The master fd is non-blocking and watched with ``add_reader``, so an
        idle session holds no executor thread no matter how many run at once.
        """
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        eof: asyncio.Future[None] = loop.create_future()

        def on_readable() -> None:
            try:
                data = os.read(self._master_fd, READ_SIZE)
            except BlockingIOError:
                return
            except OSError:
                # EIO once every slave fd is closed
                data = b""
            if not data:
                if not eof.done():
                    eof.set_result(None)
                return
            text = decoder.decode(data)
            if text:
                self._dispatch(text)

        try:
            os.set_blocking(self._master_fd, False)
            loop.add_reader(self._master_fd, on_readable)
            try:
                await eof
            finally:
                loop.remove_reader(self._master_fd)
        except Exception as e:
            logger.debug("PTY reader for pid %d ended: %s", self._pid, e)
        finally:
            tail = decoder.decode(b"", final=True)
            if tail:
                self._dispatch(tail)
            await self._finish()

    def _dispatch(self, text: str) -> None:
        try:
            self._on_data(text)
        except Exception:
            logger.exception("Error in on_data callback for pid %d", self._pid)

    async def _reap(self) -> int | None:
        # The slave can close a moment before the child is reapable
        if self._proc is None:
            return None
        while True:
            exit_code = self._proc.poll()
            if exit_code is not None:
                return exit_code
            await asyncio.sleep(REAP_INTERVAL)

    async def _finish(self) -> None:
        exit_code = await self._reap()

        try:
            os.close(self._master_fd)
        except OSError:
            pass

        logger.info("PTY process %d exited (code=%s)", self._pid, exit_code)
        if self._exited is not None and not self._exited.done():
            self._exited.set_result(exit_code)
        try:
            self._on_exit(exit_code)
        except Exception:
            logger.exception("Error in on_exit callback for pid %d", self._pid)

    def write(self, data: str) -> None:
        """Write text to the process's terminal input."""
        if not self.alive:
            raise ProcessError(f"Process {self._pid} is not running")
        payload = data.encode("utf-8")
        while payload:
            try:
                written = os.write(self._master_fd, payload)
            except BlockingIOError:
                # Terminal input queue is full; let the child drain it
                _, writable, _ = select.select([], [self._master_fd], [], WRITE_WAIT)
                if not writable:
                    raise ProcessError(f"Process {self._pid} is not reading its input")
                continue
            except OSError as e:
                raise ProcessError(f"Write to process {self._pid} failed: {e}") from e
            payload = payload[written:]

    def send_signal(self, sig: int) -> None:
        """Signal the whole process group."""
        try:
            os.killpg(self._pgid, sig)
            logger.info(
                "Sent %s to pid %d (pgid=%d)", signal.Signals(sig).name, self._pid, self._pgid
            )
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except PermissionError as e:
            logger.warning("Cannot signal pgid %d: %s", self._pgid, e)

    async def wait(self) -> int | None:
        """Wait for the process to exit and return its exit code."""
        if self._exited is None:
            return None
        return await asyncio.shield(self._exited)

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._exited is not None and not self._exited.done()

    @property
    def exit_code(self) -> int | None:
        if self._exited is not None and self._exited.done():
            return self._exited.result()
        return None
