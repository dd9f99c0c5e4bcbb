"""Unit tests for SessionRegistry and OutputBuffer (fake processes, no pty)."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from shellrelay.relay_server.models.enums import ConnectionState, Provider
from shellrelay.relay_server.registry import (
    OutputBuffer,
    RegistryFullError,
    SessionRegistry,
    ShuttingDownError,
)


class Sink:
    def __init__(self, connection_id: str = "conn-1") -> None:
        self.connection_id = connection_id
        self.received: list[str] = []
        self.exits: list[int | None] = []

    def deliver(self, text: str) -> None:
        self.received.append(text)

    def process_exited(self, exit_code: int | None) -> None:
        self.exits.append(exit_code)


async def _create(registry: SessionRegistry, supervisor, key: str, project_path: str = "/work/app"):
    async def factory():
        return await supervisor.spawn(Provider.CLAUDE, project_path, key)

    return await registry.get_or_create(key, factory, provider=Provider.CLAUDE, project_path=project_path)


# ---------------------------------------------------------------------------
# OutputBuffer
# ---------------------------------------------------------------------------


def test_output_buffer_drops_oldest() -> None:
    buffer = OutputBuffer(max_bytes=10)
    buffer.append("aaaa")
    buffer.append("bbbb")
    buffer.append("cccc")

    assert len(buffer) == 8
    assert buffer.dropped == 4
    assert buffer.drain() == "bbbbcccc"
    assert len(buffer) == 0


def test_output_buffer_keeps_tail_of_oversized_chunk() -> None:
    buffer = OutputBuffer(max_bytes=4)
    buffer.append("0123456789")
    assert buffer.drain() == "6789"


def test_output_buffer_disabled() -> None:
    buffer = OutputBuffer(max_bytes=0)
    buffer.append("lost")
    assert buffer.drain() == ""
    assert buffer.dropped == 4


# ---------------------------------------------------------------------------
# get_or_create
# ---------------------------------------------------------------------------


async def test_unseen_key_spawns_once(registry: SessionRegistry, supervisor) -> None:
    entry, created = await _create(registry, supervisor, "s-1")

    assert created is True
    assert entry.session_key == "s-1"
    assert entry.state is ConnectionState.DISCONNECTED
    assert len(supervisor.spawn_calls) == 1
    assert "s-1" in registry


async def test_concurrent_get_or_create_spawns_exactly_once(registry: SessionRegistry, supervisor) -> None:
    (first, first_created), (second, second_created) = await asyncio.gather(
        _create(registry, supervisor, "s-1"),
        _create(registry, supervisor, "s-1"),
    )

    assert len(supervisor.spawn_calls) == 1
    assert first is second
    assert first.process is second.process
    assert sorted([first_created, second_created]) == [False, True]


async def test_unrelated_keys_spawn_independently(registry: SessionRegistry, supervisor) -> None:
    await asyncio.gather(_create(registry, supervisor, "a"), _create(registry, supervisor, "b"))
    assert len(supervisor.spawned) == 2
    assert len(registry) == 2


async def test_exited_entry_is_replaced(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")
    entry.process.finish(0)

    replacement, created = await _create(registry, supervisor, "s-1")

    assert created is True
    assert replacement is not entry
    assert len(supervisor.spawned) == 2


async def test_spawn_failure_registers_nothing(registry: SessionRegistry, supervisor) -> None:
    supervisor.fail = RuntimeError("boom")
    with pytest.raises(RuntimeError, match="boom"):
        await _create(registry, supervisor, "s-1")
    assert "s-1" not in registry


async def test_shutdown_refuses_new_sessions(registry: SessionRegistry, supervisor) -> None:
    registry.begin_shutdown()
    assert registry.is_shutting_down
    with pytest.raises(ShuttingDownError):
        await _create(registry, supervisor, "s-1")
    assert supervisor.spawn_calls == []


# ---------------------------------------------------------------------------
# Attach / detach and output routing
# ---------------------------------------------------------------------------


async def test_output_is_buffered_while_detached_and_replayed(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")
    entry.process.emit("before attach\r\n")

    sink = Sink()
    replay = registry.attach("s-1", sink)
    entry.process.emit("live")

    assert replay == "before attach\r\n"
    assert sink.received == ["live"]
    assert entry.state is ConnectionState.CONNECTED
    assert entry.detached_at is None


async def test_detach_leaves_process_running(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")
    sink = Sink()
    registry.attach("s-1", sink)

    registry.detach("s-1", sink.connection_id)
    entry.process.emit("while away")

    assert entry.state is ConnectionState.DISCONNECTED
    assert not entry.exited
    assert supervisor.killed == []
    assert sink.received == []
    assert entry.buffered_bytes == len("while away")


async def test_output_fans_out_to_every_attached_connection(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")
    a, b = Sink("a"), Sink("b")
    registry.attach("s-1", a)
    registry.attach("s-1", b)

    entry.process.emit("hello")

    assert a.received == ["hello"]
    assert b.received == ["hello"]
    assert sorted(entry.connection_ids) == ["a", "b"]


async def test_exit_is_reported_to_attached_sinks(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")
    sink = Sink()
    registry.attach("s-1", sink)

    entry.process.finish(2)

    assert sink.exits == [2]
    assert "s-1" in registry


async def test_throttle_pauses_until_every_connection_drains(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")
    registry.attach("s-1", Sink("a"))
    registry.attach("s-1", Sink("b"))

    entry.throttle("a", paused=True)
    entry.throttle("b", paused=True)
    assert entry.process.reading_paused is True

    entry.throttle("a", paused=False)
    assert entry.process.reading_paused is True

    registry.detach("s-1", "b")
    assert entry.process.reading_paused is False


# ---------------------------------------------------------------------------
# Abort / remove
# ---------------------------------------------------------------------------


async def test_abort_without_connection_kills_and_evicts(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")

    assert await registry.abort("s-1") is True
    assert "s-1" not in registry
    assert entry.process in supervisor.killed
    assert entry.exited


async def test_abort_unknown_key(registry: SessionRegistry) -> None:
    assert await registry.abort("nope") is False


async def test_abort_resumed_key_takes_project_fallback_with_it(registry: SessionRegistry, supervisor) -> None:
    fallback, _ = await _create(registry, supervisor, "project:/work/app", "/work/app")
    resumed, _ = await _create(registry, supervisor, "abc", "/work/app")
    other, _ = await _create(registry, supervisor, "other", "/work/other")

    assert await registry.abort("abc") is True

    assert fallback.exited
    assert resumed.exited
    assert not other.exited
    assert [e.session_key for e in registry.entries()] == ["other"]


async def test_remove_scoped_catches_fallback_and_resumed_keys(registry: SessionRegistry, supervisor) -> None:
    await _create(registry, supervisor, "project:/work/app", "/work/app")
    await _create(registry, supervisor, "resumed-id", "/work/app/")
    await _create(registry, supervisor, "other", "/work/other")

    removed = await registry.remove_scoped("/work/app")

    assert sorted(removed) == ["project:/work/app", "resumed-id"]
    assert [e.session_key for e in registry.entries()] == ["other"]


async def test_clear_kills_everything(registry: SessionRegistry, supervisor) -> None:
    await _create(registry, supervisor, "a")
    await _create(registry, supervisor, "b")

    assert registry.clear() == 2
    assert len(registry) == 0
    assert all(p.exited for p in supervisor.spawned)


# ---------------------------------------------------------------------------
# Eviction policy
# ---------------------------------------------------------------------------


async def test_sweep_evicts_idle_detached_entries(registry: SessionRegistry, supervisor) -> None:
    idle, _ = await _create(registry, supervisor, "idle")
    attached, _ = await _create(registry, supervisor, "attached")
    registry.attach("attached", Sink())

    later = datetime.now(UTC) + timedelta(seconds=registry.idle_timeout + 1)
    evicted = registry.sweep(now=later)

    assert evicted == ["idle"]
    assert idle.exited
    assert not attached.exited


async def test_sweep_evicts_exited_detached_entries_immediately(registry: SessionRegistry, supervisor) -> None:
    entry, _ = await _create(registry, supervisor, "s-1")
    entry.process.finish(0)

    assert registry.sweep() == ["s-1"]
    assert len(registry) == 0


async def test_sweep_keeps_recently_detached_entries(registry: SessionRegistry, supervisor) -> None:
    await _create(registry, supervisor, "s-1")
    assert registry.sweep() == []
    assert "s-1" in registry


async def test_session_limit_evicts_longest_detached(supervisor) -> None:
    registry = SessionRegistry(supervisor, max_sessions=2)
    oldest, _ = await _create(registry, supervisor, "a")
    newer, _ = await _create(registry, supervisor, "b")
    oldest.detached_at = datetime.now(UTC) - timedelta(minutes=5)

    await _create(registry, supervisor, "c")

    assert "a" not in registry
    assert oldest.exited
    assert not newer.exited
    assert len(registry) == 2


async def test_session_limit_with_everything_attached(supervisor) -> None:
    registry = SessionRegistry(supervisor, max_sessions=1)
    await _create(registry, supervisor, "a")
    registry.attach("a", Sink())

    with pytest.raises(RegistryFullError):
        await _create(registry, supervisor, "b")
    assert len(supervisor.spawn_calls) == 1


async def test_session_limit_holds_for_concurrent_creates(supervisor) -> None:
    registry = SessionRegistry(supervisor, max_sessions=1)

    results = await asyncio.gather(
        _create(registry, supervisor, "a"),
        _create(registry, supervisor, "b"),
        return_exceptions=True,
    )

    assert len(registry) == 1
    assert sum(isinstance(r, RegistryFullError) for r in results) == 1
    assert len(supervisor.spawn_calls) == 1
