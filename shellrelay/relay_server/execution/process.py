"""Managed child processes.

Two backings share the ``ManagedProcess`` interface:

- ``PtyProcess`` -- interactive session on a pseudoterminal.  Output is read
  from the master fd with ``loop.add_reader`` (no threads), decoded
  incrementally as UTF-8 and handed to a single output handler in production
  order.  Writes that would block are queued and flushed with
  ``loop.add_writer``.
- ``PipeProcess`` -- non-interactive agent run with stdin/stdout/stderr pipes,
  consumed line by line by the chat dispatcher.

Both fire their exit callbacks exactly once, after the process has been
reaped (and, for ptys, after remaining output has been drained).
"""

from __future__ import annotations

import abc
import asyncio
import codecs
import fcntl
import os
import signal
import struct
import termios
from collections.abc import AsyncIterator, Callable

from loguru import logger

from shellrelay.relay_server.models.enums import Provider

READ_CHUNK = 64 * 1024
EOF_GRACE = 1.0
"""Seconds to wait for the pty to drain after the child is reaped.

A grandchild that inherited the slave side can keep it open indefinitely.
"""

OutputHandler = Callable[[str], None]
ExitCallback = Callable[["ManagedProcess"], None]


def set_winsize(fd: int, columns: int, rows: int) -> None:
    """Set the window size of the terminal behind *fd*."""
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, columns, 0, 0))


def get_winsize(fd: int) -> tuple[int, int]:
    """Return ``(columns, rows)`` of the terminal behind *fd*."""
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
    rows, columns, _, _ = struct.unpack("HHHH", packed)
    return columns, rows


class ManagedProcess(abc.ABC):
    """A spawned child owned by the ``ProcessSupervisor``."""

    pty_backed = False

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        provider: Provider,
        session_key: str,
        columns: int = 0,
        rows: int = 0,
    ) -> None:
        self.provider = provider
        self.session_key = session_key
        self.columns = columns
        self.rows = rows
        self.exit_code: int | None = None

        self._proc = proc
        self._exit_event = asyncio.Event()
        self._exit_callbacks: list[ExitCallback] = []
        self._escalation: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        state = f"exited={self.exit_code}" if self.exited else "running"
        return f"<{type(self).__name__} pid={self.pid} key={self.session_key!r} {state}>"

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def exited(self) -> bool:
        return self._exit_event.is_set()

    # -- Exit notification -----------------------------------------------------

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Run *callback* once when the process exits (soon, if it already has)."""
        if self.exited:
            asyncio.get_running_loop().call_soon(callback, self)
            return
        self._exit_callbacks.append(callback)

    async def wait(self) -> int | None:
        await self._exit_event.wait()
        return self.exit_code

    def _finalize(self, exit_code: int | None) -> None:
        if self._exit_event.is_set():
            return
        self.exit_code = exit_code
        self._exit_event.set()
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None
        logger.debug("Process exited: pid={} key={} code={}", self.pid, self.session_key, exit_code)

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Exit callback failed for pid {}", self.pid)

    # -- Control ---------------------------------------------------------------

    @abc.abstractmethod
    def write(self, data: bytes) -> None:
        """Forward *data* to the child's stdin.  A no-op once it has exited."""

    def resize(self, columns: int, rows: int) -> None:
        """Pipe-backed processes have no terminal geometry."""

    def terminate(self, grace_period: float) -> None:
        """SIGTERM the process group, escalating to SIGKILL after *grace_period*."""
        if self.exited:
            return
        self._signal_group(signal.SIGTERM)
        if self._escalation is None:
            loop = asyncio.get_running_loop()
            self._escalation = loop.call_later(grace_period, self._signal_group, signal.SIGKILL)

    def _signal_group(self, sig: signal.Signals) -> None:
        if self.exited:
            return
        try:
            # Spawned with start_new_session, so pid == pgid.
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            logger.warning("Cannot signal process group {} ({})", self.pid, sig.name)


class PtyProcess(ManagedProcess):
    """Interactive child attached to the slave side of a pseudoterminal."""

    pty_backed = True

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        *,
        provider: Provider,
        session_key: str,
        columns: int,
        rows: int,
    ) -> None:
        super().__init__(proc, provider=provider, session_key=session_key, columns=columns, rows=rows)
        self._fd: int | None = master_fd
        self._loop = asyncio.get_running_loop()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._handler: OutputHandler | None = None
        self._reading = False
        self._paused = False
        self._eof = asyncio.Event()
        self._pending = bytearray()
        self._exit_task = self._loop.create_task(self._watch_exit())

    # -- Output ----------------------------------------------------------------

    def start_reading(self, handler: OutputHandler) -> None:
        """Begin delivering decoded output to *handler*."""
        self._handler = handler
        if not self._paused:
            self._add_reader()

    def pause_reading(self) -> None:
        """Stop reading the master fd; the child blocks once the pty buffer fills."""
        self._paused = True
        self._remove_reader()

    def resume_reading(self) -> None:
        self._paused = False
        if self._handler is not None:
            self._add_reader()

    @property
    def reading_paused(self) -> bool:
        return self._paused

    def _add_reader(self) -> None:
        if self._reading or self._fd is None or self._eof.is_set():
            return
        self._loop.add_reader(self._fd, self._on_readable)
        self._reading = True

    def _remove_reader(self) -> None:
        if self._reading and self._fd is not None:
            self._loop.remove_reader(self._fd)
        self._reading = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, READ_CHUNK)  # type: ignore[arg-type]
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO once every slave fd is closed.
            data = b""
        if not data:
            self._on_eof()
            return
        self._emit(self._decoder.decode(data))

    def _on_eof(self) -> None:
        self._remove_reader()
        self._emit(self._decoder.decode(b"", final=True))
        self._eof.set()

    def _emit(self, text: str) -> None:
        if text and self._handler is not None:
            self._handler(text)

    # -- Input -----------------------------------------------------------------

    def write(self, data: bytes) -> None:
        """Write to the child's terminal.  Silently dropped once the child is gone."""
        if self.exited or self._fd is None or not data:
            return
        if self._pending:
            self._pending += data
            return
        try:
            written = os.write(self._fd, data)
        except BlockingIOError:
            written = 0
        except OSError as exc:
            logger.debug("Dropping input for pid {}: {}", self.pid, exc)
            return
        if written < len(data):
            self._pending += data[written:]
            self._loop.add_writer(self._fd, self._flush_pending)

    def _flush_pending(self) -> None:
        if self._fd is None:
            self._pending.clear()
            return
        try:
            written = os.write(self._fd, self._pending)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.debug("Dropping {} queued bytes for pid {}: {}", len(self._pending), self.pid, exc)
            written = len(self._pending)
        del self._pending[:written]
        if not self._pending:
            self._loop.remove_writer(self._fd)

    # -- Geometry --------------------------------------------------------------

    def resize(self, columns: int, rows: int) -> None:
        if self.exited or self._fd is None:
            return
        try:
            set_winsize(self._fd, columns, rows)
        except OSError as exc:
            logger.debug("Resize failed for pid {}: {}", self.pid, exc)
            return
        self.columns = columns
        self.rows = rows

    def window_size(self) -> tuple[int, int] | None:
        """Geometry as reported by the OS, ``None`` once the pty is closed."""
        if self._fd is None:
            return None
        return get_winsize(self._fd)

    # -- Lifecycle -------------------------------------------------------------

    async def _watch_exit(self) -> None:
        code = await self._proc.wait()
        try:
            await asyncio.wait_for(self._eof.wait(), timeout=EOF_GRACE)
        except TimeoutError:
            logger.debug("pty for pid {} still open after exit; closing", self.pid)
        self._close_master()
        self._finalize(code)

    def _close_master(self) -> None:
        self._remove_reader()
        if self._fd is None:
            return
        if self._pending:
            self._loop.remove_writer(self._fd)
            self._pending.clear()
        fd, self._fd = self._fd, None
        os.close(fd)


class PipeProcess(ManagedProcess):
    """Non-interactive child with piped stdio."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        provider: Provider,
        session_key: str,
    ) -> None:
        super().__init__(proc, provider=provider, session_key=session_key)
        self._exit_task = asyncio.get_running_loop().create_task(self._watch_exit())

    async def iter_stdout(self) -> AsyncIterator[str]:
        """Yield stdout lines (without trailing newline) until EOF."""
        assert self._proc.stdout is not None  # noqa: S101
        async for raw in self._proc.stdout:
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def iter_stderr(self) -> AsyncIterator[str]:
        assert self._proc.stderr is not None  # noqa: S101
        async for raw in self._proc.stderr:
            yield raw.decode("utf-8", errors="replace")

    def write(self, data: bytes) -> None:
        stdin = self._proc.stdin
        if self.exited or stdin is None or stdin.is_closing():
            return
        stdin.write(data)

    def close_stdin(self) -> None:
        if self._proc.stdin is not None and not self._proc.stdin.is_closing():
            self._proc.stdin.close()

    async def _watch_exit(self) -> None:
        code = await self._proc.wait()
        self._finalize(code)
