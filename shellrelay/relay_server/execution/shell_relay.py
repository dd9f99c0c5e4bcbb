"""Shell channel relay loop.

One ``ShellRelay`` per ``/shell`` connection.  It binds the connection to a
registry entry on ``init`` and then shuttles frames both ways:

    client --init/input/resize--> ShellRelay --> ProcessSupervisor
    client <--output/url_open---- ShellRelay <-- RegistryEntry.feed

All outbound frames (banner, replay, process output, exit line, errors) go
through a single queue drained by one sender task, so the client sees them
in the order they were produced.  When the queue backs up past the
high-water mark the entry pauses pty reading until the sender catches up.
"""

from __future__ import annotations

import asyncio
import contextlib
import os

from loguru import logger

from shellrelay.relay_server.connections import Connection
from shellrelay.relay_server.execution.supervisor import ProcessSupervisor, SpawnError
from shellrelay.relay_server.execution.urls import find_open_urls
from shellrelay.relay_server.log import session_logger
from shellrelay.relay_server.models.enums import Provider, RelayState
from shellrelay.relay_server.models.frames import (
    DecodeError,
    ErrorFrame,
    Frame,
    InitFrame,
    InputFrame,
    OutputFrame,
    ResizeFrame,
    UrlOpenFrame,
    decode_shell_frame,
)
from shellrelay.relay_server.models.session import session_key_for
from shellrelay.relay_server.registry import (
    RegistryEntry,
    RegistryFullError,
    SessionRegistry,
    ShuttingDownError,
)

HIGH_WATER = 256
LOW_WATER = 64

_CYAN = "\x1b[36m"
_YELLOW = "\x1b[33m"
_RED = "\x1b[31m"
_RESET = "\x1b[0m"


def banner_text(provider: Provider, project_path: str, *, resume_id: str | None, reattached: bool) -> str:
    name = provider.display_name
    if reattached:
        line = f"Reattached to {name} session in: {project_path}"
    elif resume_id:
        line = f"Resuming {name} session {resume_id} in: {project_path}"
    else:
        line = f"Starting new {name} session in: {project_path}"
    return f"{_CYAN}{line}{_RESET}\r\n"


def exit_text(exit_code: int | None) -> str:
    return f"\r\n{_YELLOW}Process exited with code {exit_code}{_RESET}\r\n"


def error_text(message: str) -> str:
    return f"\r\n{_RED}Error: {message}{_RESET}\r\n"


class ShellRelay:
    """Relay between one shell-channel connection and its session process.

    Also the ``OutputSink`` the registry entry delivers output to.
    """

    def __init__(
        self,
        connection: Connection,
        registry: SessionRegistry,
        supervisor: ProcessSupervisor,
        *,
        default_cols: int = 80,
        default_rows: int = 24,
        high_water: int = HIGH_WATER,
        low_water: int = LOW_WATER,
    ) -> None:
        self.connection = connection
        self.state = RelayState.AWAITING_INIT
        self._registry = registry
        self._supervisor = supervisor
        self._default_cols = default_cols
        self._default_rows = default_rows
        self._high_water = high_water
        self._low_water = low_water

        self._entry: RegistryEntry | None = None
        self._queue: asyncio.Queue[Frame] = asyncio.Queue()
        self._sender: asyncio.Task[None] | None = None
        self._throttled = False

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    @property
    def session_key(self) -> str | None:
        return self._entry.session_key if self._entry is not None else None

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Start the sender task.  Must be called before frames are handled."""
        if self._sender is None:
            self._sender = asyncio.create_task(self._send_loop())

    async def drain(self) -> None:
        """Wait until every queued frame has been handed to the connection."""
        await self._queue.join()

    async def close(self) -> None:
        """Unbind from the session.  The process keeps running."""
        if self.state is RelayState.CLOSED:
            return
        self.state = RelayState.CLOSED
        if self._entry is not None:
            self._registry.detach(self._entry.session_key, self.connection_id)
            session_logger(self._entry.session_key).info("Shell relay {} closed; session left running", self.connection)
        if self._sender is not None:
            self._sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sender

    # -- Inbound ---------------------------------------------------------------

    async def handle_message(self, raw: str | bytes) -> None:
        """Decode and act on one client frame."""
        if self.state is RelayState.CLOSED:
            return
        try:
            frame = decode_shell_frame(raw)
        except DecodeError as exc:
            logger.debug("Shell relay {}: {}", self.connection, exc)
            self._enqueue(ErrorFrame(error=str(exc)))
            return

        match frame:
            case InitFrame():
                await self._handle_init(frame)
            case InputFrame():
                self._handle_input(frame)
            case ResizeFrame():
                self._handle_resize(frame)

    async def _handle_init(self, frame: InitFrame) -> None:
        if self.state is RelayState.ACTIVE:
            self._enqueue(ErrorFrame(error="Session already initialised on this connection"))
            return

        project_path = frame.project_path or os.getcwd()
        resume_id = frame.resume_id
        session_key = session_key_for(frame.provider, project_path, resume_id)
        columns = frame.cols or self._default_cols
        rows = frame.rows or self._default_rows

        async def spawn():
            return await self._supervisor.spawn(
                frame.provider,
                project_path,
                session_key,
                resume_id=resume_id,
                columns=columns,
                rows=rows,
            )

        try:
            entry, created = await self._registry.get_or_create(
                session_key,
                spawn,
                provider=frame.provider,
                project_path=project_path,
            )
        except (SpawnError, RegistryFullError, ShuttingDownError) as exc:
            logger.warning("Shell relay {}: cannot start session {}: {}", self.connection, session_key, exc)
            self._enqueue(OutputFrame(data=error_text(str(exc))))
            return

        if self.state is RelayState.CLOSED:
            # Client went away while the process was spawning.
            return

        self._enqueue(
            OutputFrame(data=banner_text(frame.provider, project_path, resume_id=resume_id, reattached=not created))
        )
        replay = self._registry.attach(session_key, self)
        self._entry = entry
        self.connection.bound_session_key = session_key
        self.state = RelayState.ACTIVE
        if replay:
            self._enqueue(OutputFrame(data=replay))
        if not created:
            self._supervisor.resize(entry.process, columns, rows)
        if entry.exited:
            self._enqueue(OutputFrame(data=exit_text(entry.exit_code)))

        session_logger(session_key).info(
            "Shell relay {} bound (provider={}, new={}, replay={} chars)",
            self.connection,
            frame.provider,
            created,
            len(replay),
        )

    def _handle_input(self, frame: InputFrame) -> None:
        if self._entry is None or self._entry.exited:
            return
        self._supervisor.write(self._entry.process, frame.data)

    def _handle_resize(self, frame: ResizeFrame) -> None:
        if self._entry is None:
            return
        self._supervisor.resize(self._entry.process, frame.cols, frame.rows)

    # -- OutputSink ------------------------------------------------------------

    def deliver(self, text: str) -> None:
        if self.state is RelayState.CLOSED:
            return
        for url in find_open_urls(text):
            self._enqueue(UrlOpenFrame(url=url))
        self._enqueue(OutputFrame(data=text))
        if not self._throttled and self._queue.qsize() >= self._high_water:
            self._set_throttled(True)

    def process_exited(self, exit_code: int | None) -> None:
        if self.state is RelayState.CLOSED:
            return
        self._enqueue(OutputFrame(data=exit_text(exit_code)))

    # -- Outbound --------------------------------------------------------------

    def _enqueue(self, frame: Frame) -> None:
        self._queue.put_nowait(frame)

    async def _send_loop(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.connection.send_frame(frame)
            finally:
                self._queue.task_done()
            if self._throttled and self._queue.qsize() <= self._low_water:
                self._set_throttled(False)

    def _set_throttled(self, paused: bool) -> None:
        self._throttled = paused
        if self._entry is not None:
            self._entry.throttle(self.connection_id, paused=paused)
            logger.debug("Shell relay {}: output {}", self.connection, "paused" if paused else "resumed")
