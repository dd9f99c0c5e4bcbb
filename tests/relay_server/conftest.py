"""Fakes and fixtures for relay-server tests.

``FakeSupervisor`` hands out ``FakeProcess`` objects instead of real
children, so registry, relay and channel tests run without a pty.  Tests
drive process behaviour explicitly with ``emit()`` and ``finish()``.
"""

from __future__ import annotations

import asyncio
import itertools
import uuid
from typing import Any

import pytest

from shellrelay.relay_server.execution.commands import CommandBuilder
from shellrelay.relay_server.models.enums import ConnectionKind, Provider
from shellrelay.relay_server.models.frames import Frame
from shellrelay.relay_server.models.session import Identity
from shellrelay.relay_server.registry import SessionRegistry

_pids = itertools.count(40000)


class FakeProcess:
    """Stands in for ``PtyProcess``."""

    pty_backed = True

    def __init__(self, provider: Provider, session_key: str, columns: int = 80, rows: int = 24) -> None:
        self.pid = next(_pids)
        self.provider = provider
        self.session_key = session_key
        self.columns = columns
        self.rows = rows
        self.exit_code: int | None = None
        self.exited = False
        self.reading_paused = False
        self.written: list[bytes] = []
        self.terminated = 0
        self._handler = None
        self._callbacks: list[Any] = []
        self._exit_event = asyncio.Event()

    def __repr__(self) -> str:
        return f"<FakeProcess pid={self.pid} key={self.session_key!r}>"

    # -- ManagedProcess surface -------------------------------------------------

    def start_reading(self, handler) -> None:
        self._handler = handler

    def pause_reading(self) -> None:
        self.reading_paused = True

    def resume_reading(self) -> None:
        self.reading_paused = False

    def add_exit_callback(self, callback) -> None:
        if self.exited:
            callback(self)
            return
        self._callbacks.append(callback)

    async def wait(self) -> int | None:
        await self._exit_event.wait()
        return self.exit_code

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def resize(self, columns: int, rows: int) -> None:
        self.columns = columns
        self.rows = rows

    def terminate(self, grace_period: float) -> None:
        self.terminated += 1
        self.finish(-15)

    # -- Test controls ----------------------------------------------------------

    def emit(self, text: str) -> None:
        assert self._handler is not None, "process output is not being read"
        self._handler(text)

    def finish(self, exit_code: int | None = 0) -> None:
        if self.exited:
            return
        self.exited = True
        self.exit_code = exit_code
        self._exit_event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)


class FakeSupervisor:
    """Records spawn requests and returns ``FakeProcess`` objects."""

    def __init__(self) -> None:
        self.commands = CommandBuilder()
        self.spawn_calls: list[dict[str, Any]] = []
        self.spawned: list[FakeProcess] = []
        self.killed: list[FakeProcess] = []
        self.fail: Exception | None = None

    async def spawn(
        self,
        provider: Provider,
        working_directory: str,
        session_key: str,
        resume_id: str | None = None,
        columns: int = 80,
        rows: int = 24,
    ) -> FakeProcess:
        self.spawn_calls.append({
            "provider": provider,
            "working_directory": working_directory,
            "session_key": session_key,
            "resume_id": resume_id,
            "columns": columns,
            "rows": rows,
        })
        # Yield so that concurrent callers interleave like a real spawn would.
        await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        process = FakeProcess(provider, session_key, columns, rows)
        self.spawned.append(process)
        return process

    def write(self, process: FakeProcess, data: bytes | str) -> None:
        if process.exited:
            return
        process.write(data.encode("utf-8") if isinstance(data, str) else data)

    def resize(self, process: FakeProcess, columns: int, rows: int) -> None:
        if process.exited:
            return
        process.resize(columns, rows)

    def kill(self, process: FakeProcess) -> None:
        self.killed.append(process)
        process.terminate(0)

    async def kill_all(self, timeout: float = 5.0) -> int:
        live = [p for p in self.spawned if not p.exited]
        for process in live:
            self.kill(process)
        return len(live)


class FakeConnection:
    """Collects the frames a relay or dispatcher sends."""

    def __init__(self, kind: ConnectionKind = ConnectionKind.SHELL_RELAY) -> None:
        self.connection_id = uuid.uuid4().hex
        self.user = Identity(username="tester")
        self.kind = kind
        self.bound_session_key: str | None = None
        self.is_open = True
        self.frames: list[Frame] = []

    def __repr__(self) -> str:
        return f"<FakeConnection {self.connection_id[:8]}>"

    async def send_frame(self, frame: Frame) -> bool:
        if not self.is_open:
            return False
        self.frames.append(frame)
        return True

    @property
    def types(self) -> list[str]:
        return [frame.type for frame in self.frames]

    @property
    def output(self) -> str:
        return "".join(frame.data for frame in self.frames if frame.type == "output")


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def registry(supervisor: FakeSupervisor) -> SessionRegistry:
    return SessionRegistry(supervisor, max_sessions=4, idle_timeout=60.0, output_buffer_bytes=1024)


@pytest.fixture
def make_connection():
    def _make(kind: ConnectionKind = ConnectionKind.SHELL_RELAY) -> FakeConnection:
        return FakeConnection(kind)

    return _make
