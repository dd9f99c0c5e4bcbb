"""Process supervisor -- spawns, controls and reaps session processes.

The supervisor is the only owner of child processes.  Relay loops and the
chat dispatcher hold references to ``ManagedProcess`` objects but go through
the supervisor to write, resize or kill them.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import os
import pty
import shutil
import subprocess
import sys
import termios
from collections.abc import Mapping
from pathlib import Path

from loguru import logger

from shellrelay.relay_server.execution.commands import CommandBuilder
from shellrelay.relay_server.execution.process import ManagedProcess, PipeProcess, PtyProcess, set_winsize
from shellrelay.relay_server.models.enums import Provider

PIPE_LINE_LIMIT = 16 * 1024 * 1024
"""Agent CLIs emit whole tool results as a single JSON line."""

TERMINAL_ENV = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
    "FORCE_COLOR": "3",
}


class SpawnError(RuntimeError):
    """Raised when a session process cannot be launched.  Never retried."""


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the pty slave.
    # Without a controlling terminal the child never receives SIGWINCH.
    with contextlib.suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class ProcessSupervisor:
    """Owns the lifecycle of every spawned session process."""

    def __init__(
        self,
        commands: CommandBuilder,
        *,
        kill_grace_period: float = 3.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._commands = commands
        self._kill_grace_period = kill_grace_period
        self._base_env = dict(os.environ if env is None else env)
        self._processes: set[ManagedProcess] = set()

    @property
    def commands(self) -> CommandBuilder:
        return self._commands

    @property
    def live_processes(self) -> list[ManagedProcess]:
        return [p for p in self._processes if not p.exited]

    # -- Spawn -----------------------------------------------------------------

    async def spawn(
        self,
        provider: Provider,
        working_directory: str,
        session_key: str,
        resume_id: str | None = None,
        columns: int = 80,
        rows: int = 24,
    ) -> PtyProcess:
        """Launch an interactive session process on a new pseudoterminal.

        Raises ``SpawnError`` if the working directory or a required binary is
        missing, or the OS refuses to start the process.
        """
        if sys.platform == "win32":
            msg = "Pseudoterminal sessions are not supported on Windows hosts"
            raise SpawnError(msg)

        cwd = self._check_directory(working_directory)
        argv = self._commands.terminal_argv(provider, str(cwd), resume_id=resume_id)
        self._check_binary(argv[0])
        agent_bin = self._commands.agent_binary(provider)
        if agent_bin is not None:
            self._check_binary(agent_bin)

        env = {**self._base_env, **TERMINAL_ENV}
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as exc:
            msg = f"Cannot allocate a pseudoterminal: {exc}"
            raise SpawnError(msg) from exc
        try:
            set_winsize(slave_fd, columns, rows)
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,  # noqa: PLW1509
            )
        except (OSError, subprocess.SubprocessError) as exc:
            os.close(master_fd)
            msg = f"Failed to start {argv[0]}: {exc}"
            raise SpawnError(msg) from exc
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        process = PtyProcess(
            proc,
            master_fd,
            provider=provider,
            session_key=session_key,
            columns=columns,
            rows=rows,
        )
        self._track(process)
        logger.info(
            "Spawned {} session: pid={} key={} cwd={} resume={} size={}x{}",
            provider,
            process.pid,
            session_key,
            cwd,
            resume_id,
            columns,
            rows,
        )
        return process

    async def spawn_pipe(
        self,
        provider: Provider,
        argv: list[str],
        working_directory: str,
        session_key: str,
    ) -> PipeProcess:
        """Launch a non-interactive agent run with piped stdio."""
        cwd = self._check_directory(working_directory)
        self._check_binary(argv[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=self._base_env,
                start_new_session=True,
                limit=PIPE_LINE_LIMIT,
            )
        except OSError as exc:
            msg = f"Failed to start {argv[0]}: {exc}"
            raise SpawnError(msg) from exc

        process = PipeProcess(proc, provider=provider, session_key=session_key)
        self._track(process)
        logger.info("Spawned {} run: pid={} key={} cwd={}", provider, process.pid, session_key, cwd)
        return process

    def _track(self, process: ManagedProcess) -> None:
        self._processes.add(process)
        process.add_exit_callback(self._processes.discard)

    def _check_directory(self, working_directory: str) -> Path:
        cwd = Path(working_directory).expanduser()
        if not cwd.is_dir():
            msg = f"Working directory not found: {cwd}"
            raise SpawnError(msg)
        return cwd.resolve()

    def _check_binary(self, binary: str) -> None:
        if shutil.which(binary, path=self._base_env.get("PATH")) is None:
            msg = f"{binary}: command not found"
            raise SpawnError(msg)

    # -- Control ---------------------------------------------------------------

    def write(self, process: ManagedProcess, data: bytes | str) -> None:
        """Forward input to the process.  No-op once it has exited."""
        if process.exited:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        process.write(data)

    def resize(self, process: ManagedProcess, columns: int, rows: int) -> None:
        """Update terminal geometry.  No-op for pipe-backed or exited processes."""
        if process.exited or not process.pty_backed:
            return
        process.resize(columns, rows)

    def kill(self, process: ManagedProcess) -> None:
        """Request termination.  Idempotent."""
        if process.exited:
            return
        logger.info("Killing process: pid={} key={}", process.pid, process.session_key)
        process.terminate(self._kill_grace_period)

    async def kill_all(self, timeout: float = 5.0) -> int:
        """Terminate every live process and wait for them to be reaped.

        Returns the number of processes that were still running.
        """
        live = self.live_processes
        for process in live:
            self.kill(process)
        if live:
            _, pending = await asyncio.wait([asyncio.ensure_future(p.wait()) for p in live], timeout=timeout)
            if pending:
                logger.warning("{} processes still running after {}s", len(pending), timeout)
                for task in pending:
                    task.cancel()
        return len(live)
