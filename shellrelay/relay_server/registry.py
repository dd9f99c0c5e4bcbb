"""In-process session registry.

Tracks terminal sessions whose processes outlive the connection that started
them, so a client can detach (tab switch, reload) and reattach later without
losing the running process or the output it produced in between.
Ephemeral -- empty on process restart.

Concurrency model: everything runs on one event loop.  Mutations that await
(spawning, removal) hold a per-key ``asyncio.Lock`` so two connections racing
on the same key serialise while unrelated keys never contend.  Attach/detach
and output delivery are synchronous and therefore atomic.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from shellrelay.relay_server.log import session_logger
from shellrelay.relay_server.models.enums import ConnectionState, Provider

if TYPE_CHECKING:
    from shellrelay.relay_server.execution.process import ManagedProcess
    from shellrelay.relay_server.execution.supervisor import ProcessSupervisor


class ShuttingDownError(RuntimeError):
    """Raised when attempting to create a session during shutdown."""


class RegistryFullError(RuntimeError):
    """Raised when ``max_sessions`` is reached and every session has a client attached."""


class OutputSink(Protocol):
    """A connection bound to a registry entry."""

    connection_id: str

    def deliver(self, text: str) -> None: ...

    def process_exited(self, exit_code: int | None) -> None: ...


class OutputBuffer:
    """Bounded buffer of output produced while no client is attached.

    Holds at most ``max_bytes`` of UTF-8 text; the oldest chunks are dropped
    first.  A single chunk larger than the limit keeps only its tail.
    """

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self._chunks: deque[str] = deque()
        self._size = 0
        self.dropped = 0

    def __len__(self) -> int:
        return self._size

    def append(self, text: str) -> None:
        if self.max_bytes <= 0:
            self.dropped += len(text.encode("utf-8"))
            return
        encoded = text.encode("utf-8")
        if len(encoded) > self.max_bytes:
            self.dropped += len(encoded) - self.max_bytes
            text = encoded[-self.max_bytes :].decode("utf-8", errors="ignore")
            encoded = text.encode("utf-8")
        self._chunks.append(text)
        self._size += len(encoded)
        while self._size > self.max_bytes:
            oldest = self._chunks.popleft()
            size = len(oldest.encode("utf-8"))
            self._size -= size
            self.dropped += size

    def drain(self) -> str:
        """Return everything buffered and empty the buffer."""
        text = "".join(self._chunks)
        self._chunks.clear()
        self._size = 0
        return text


class RegistryEntry:
    """A reattachable session: one process plus its connection bookkeeping."""

    def __init__(
        self,
        session_key: str,
        process: ManagedProcess,
        *,
        provider: Provider,
        project_path: str,
        buffer_bytes: int,
    ) -> None:
        self.session_key = session_key
        self.process = process
        self.provider = provider
        self.project_path = project_path
        self.created_at = datetime.now(UTC)
        self.detached_at: datetime | None = self.created_at
        self.buffer = OutputBuffer(buffer_bytes)
        self._sinks: dict[str, OutputSink] = {}
        self._throttled: set[str] = set()

    def __repr__(self) -> str:
        return f"<RegistryEntry {self.session_key!r} {self.state} {self.process!r}>"

    # -- Attributes read by the HTTP snapshot ----------------------------------

    @property
    def state(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self._sinks else ConnectionState.DISCONNECTED

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exited(self) -> bool:
        return self.process.exited

    @property
    def exit_code(self) -> int | None:
        return self.process.exit_code

    @property
    def buffered_bytes(self) -> int:
        return len(self.buffer)

    @property
    def connection_ids(self) -> list[str]:
        return list(self._sinks)

    # -- Output routing --------------------------------------------------------

    def feed(self, text: str) -> None:
        """Route process output to every attached sink, or buffer it."""
        if not self._sinks:
            self.buffer.append(text)
            return
        for sink in list(self._sinks.values()):
            sink.deliver(text)

    def notify_exit(self) -> None:
        for sink in list(self._sinks.values()):
            sink.process_exited(self.process.exit_code)

    def attach(self, sink: OutputSink) -> str:
        """Bind *sink* and return output buffered while detached."""
        self._sinks[sink.connection_id] = sink
        self.detached_at = None
        return self.buffer.drain()

    def detach(self, connection_id: str) -> bool:
        """Unbind a connection.  Returns ``True`` if it was attached."""
        if self._sinks.pop(connection_id, None) is None:
            return False
        self.throttle(connection_id, paused=False)
        if not self._sinks:
            self.detached_at = datetime.now(UTC)
        return True

    def throttle(self, connection_id: str, *, paused: bool) -> None:
        """Pause process output while any attached connection is backed up."""
        if paused:
            self._throttled.add(connection_id)
        else:
            self._throttled.discard(connection_id)

        pause = getattr(self.process, "pause_reading", None)
        resume = getattr(self.process, "resume_reading", None)
        if pause is None or resume is None:
            return
        if self._throttled and not self.process.reading_paused:
            pause()
        elif not self._throttled and self.process.reading_paused:
            resume()

    def idle_for(self, now: datetime) -> float:
        if self.detached_at is None:
            return 0.0
        return (now - self.detached_at).total_seconds()


ProcessFactory = Callable[[], Awaitable["ManagedProcess"]]


class SessionRegistry:
    """Registry of reattachable terminal sessions, keyed by session key.

    Constructed once at startup and passed to the relay loops; never a
    module-level singleton.

    Eviction policy: the periodic sweep kills and removes detached entries
    whose process has exited, and entries detached for longer than
    ``idle_timeout`` seconds.  A reconnect before the sweep replaces an exited
    entry with a fresh process.  At most ``max_sessions`` entries exist;
    creating one more evicts the longest-detached entry, or fails with
    ``RegistryFullError`` if every entry has a client attached.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        max_sessions: int = 32,
        idle_timeout: float = 1800.0,
        output_buffer_bytes: int = 256 * 1024,
    ) -> None:
        self._supervisor = supervisor
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self.output_buffer_bytes = output_buffer_bytes

        self._entries: dict[str, RegistryEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._shutting_down = False
        # Spawns in flight count against max_sessions until they register.
        self._reserved = 0

    # -- Per-key critical section ----------------------------------------------

    @asynccontextmanager
    async def locked(self, session_key: str) -> AsyncIterator[None]:
        """Hold the lock for *session_key*.  Locks are dropped when unused."""
        lock = self._locks.get(session_key)
        if lock is None:
            lock = self._locks[session_key] = asyncio.Lock()
        self._lock_users[session_key] = self._lock_users.get(session_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_key] -= 1
            if not self._lock_users[session_key]:
                del self._lock_users[session_key]
                del self._locks[session_key]

    # -- Mutation --------------------------------------------------------------

    async def get_or_create(
        self,
        session_key: str,
        factory: ProcessFactory,
        *,
        provider: Provider,
        project_path: str,
    ) -> tuple[RegistryEntry, bool]:
        """Return the live entry for *session_key*, spawning it via *factory* if needed.

        The second element is ``True`` when a new process was spawned.  An
        entry whose process has exited is replaced.  Exceptions from
        *factory* (``SpawnError``) propagate and nothing is registered.
        """
        async with self.locked(session_key):
            entry = self._entries.get(session_key)
            if entry is not None and not entry.exited:
                logger.debug("Registry: reuse session {} (pid={})", session_key, entry.pid)
                return entry, False
            if entry is not None:
                self._evict(session_key, reason="replaced after exit")

            if self._shutting_down:
                msg = "Server is shutting down"
                raise ShuttingDownError(msg)
            self._make_room()

            self._reserved += 1
            try:
                process = await factory()
            finally:
                self._reserved -= 1
            entry = RegistryEntry(
                session_key,
                process,
                provider=provider,
                project_path=project_path,
                buffer_bytes=self.output_buffer_bytes,
            )
            self._entries[session_key] = entry
            start_reading = getattr(process, "start_reading", None)
            if start_reading is not None:
                start_reading(entry.feed)
            process.add_exit_callback(lambda p: self._on_exit(session_key, p))
            logger.debug("Registry: register session {} (pid={})", session_key, process.pid)
            return entry, True

    async def remove(self, session_key: str) -> RegistryEntry | None:
        """Kill the process for *session_key* and evict its entry."""
        async with self.locked(session_key):
            return self._evict(session_key, reason="removed")

    async def abort(self, session_key: str) -> bool:
        """Kill-and-evict *session_key* and every other session of its project.

        ``False`` if no such session exists.
        """
        entry = self._entries.get(session_key)
        if entry is None:
            return False
        return bool(await self.remove_scoped(entry.project_path))

    async def remove_scoped(self, project_path: str) -> list[str]:
        """Evict every session that belongs to *project_path*.

        Restarting a project must catch both its fallback key and any
        resumed-session key, which can coexist for the same directory.
        """
        removed: list[str] = []
        for key in [k for k, e in self._entries.items() if _same_project(e.project_path, project_path)]:
            async with self.locked(key):
                entry = self._entries.get(key)
                if entry is not None and _same_project(entry.project_path, project_path):
                    self._evict(key, reason="project restart")
                    removed.append(key)
        return removed

    def attach(self, session_key: str, sink: OutputSink) -> str:
        """Bind *sink* to an entry; returns output buffered while detached."""
        entry = self._entries[session_key]
        replay = entry.attach(sink)
        logger.debug(
            "Registry: {} attached to {} (replay={} chars, clients={})",
            sink.connection_id,
            session_key,
            len(replay),
            len(entry.connection_ids),
        )
        return replay

    def detach(self, session_key: str, connection_id: str) -> None:
        """Unbind a connection; the process keeps running."""
        entry = self._entries.get(session_key)
        if entry is None or not entry.detach(connection_id):
            return
        logger.debug("Registry: {} detached from {} (state={})", connection_id, session_key, entry.state)

    def _evict(self, session_key: str, *, reason: str) -> RegistryEntry | None:
        entry = self._entries.pop(session_key, None)
        if entry is None:
            return None
        self._supervisor.kill(entry.process)
        session_logger(session_key).info("Registry: evict session ({})", reason)
        return entry

    def _make_room(self) -> None:
        while len(self._entries) + self._reserved >= self.max_sessions:
            detached = [e for e in self._entries.values() if e.state is ConnectionState.DISCONNECTED]
            if not detached:
                msg = f"Session limit reached ({self.max_sessions} sessions, all attached or starting)"
                raise RegistryFullError(msg)
            oldest = min(detached, key=lambda e: e.detached_at or e.created_at)
            self._evict(oldest.session_key, reason="session limit")

    def _on_exit(self, session_key: str, process: ManagedProcess) -> None:
        entry = self._entries.get(session_key)
        if entry is None or entry.process is not process:
            return
        entry.notify_exit()

    # -- Query -----------------------------------------------------------------

    def get(self, session_key: str) -> RegistryEntry | None:
        return self._entries.get(session_key)

    def entries(self) -> list[RegistryEntry]:
        """Return a snapshot of all entries."""
        return list(self._entries.values())

    def __contains__(self, session_key: str) -> bool:
        return session_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # -- Eviction sweep --------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Evict detached entries that have exited or idled past ``idle_timeout``."""
        now = now or datetime.now(UTC)
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.state is ConnectionState.DISCONNECTED
            and (entry.exited or entry.idle_for(now) > self.idle_timeout)
        ]
        evicted: list[str] = []
        for key in expired:
            if key in self._locks:
                # Someone is spawning/removing this key right now; next sweep.
                continue
            self._evict(key, reason="idle timeout")
            evicted.append(key)
        return evicted

    async def run_sweeper(self, interval: float) -> None:
        """Periodically sweep idle sessions until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New sessions are refused."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new sessions")

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def clear(self) -> int:
        """Kill and evict every entry.  Returns the number evicted."""
        keys = list(self._entries)
        for key in keys:
            self._evict(key, reason="shutdown")
        return len(keys)


def _same_project(a: str, b: str) -> bool:
    return _normalise(a) == _normalise(b)


def _normalise(path: str) -> str:
    return str(Path(path).expanduser().resolve())
