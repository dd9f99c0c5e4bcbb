"""Project watcher tests: debounce, filtering and broadcast fan-out."""

from __future__ import annotations

import asyncio

import pytest
from loguru import logger
from watchfiles import Change

from shellrelay.relay_server.connections import ConnectedClientSet
from shellrelay.relay_server.models.enums import ConnectionKind, DebounceState
from shellrelay.relay_server.models.project import ProjectRecord
from shellrelay.relay_server.watcher import (
    Debouncer,
    ProjectsBroadcaster,
    ProjectsFilter,
    WatcherSetupError,
    change_type,
)


class StubLister:
    def __init__(self, projects: list[ProjectRecord]) -> None:
        self.projects = projects
        self.cache_clears = 0

    async def list_projects(self) -> list[ProjectRecord]:
        return self.projects

    def clear_cache(self) -> None:
        self.cache_clears += 1


@pytest.fixture
def lister() -> StubLister:
    return StubLister([ProjectRecord(name="-work-app", path="/work/app", full_path="/p/-work-app", session_count=2)])


# ---------------------------------------------------------------------------
# Debouncer
# ---------------------------------------------------------------------------


async def test_burst_of_triggers_fires_once() -> None:
    fired: list[tuple[str, str | None]] = []

    async def callback(change: str, path: str | None) -> None:
        fired.append((change, path))

    debouncer = Debouncer(0.2, callback)
    for i in range(20):
        debouncer.trigger("change", f"/p/{i}.jsonl")
        await asyncio.sleep(0.005)
    assert debouncer.state is DebounceState.PENDING
    assert fired == []

    await asyncio.sleep(0.4)
    await debouncer.wait_idle()

    assert fired == [("change", "/p/19.jsonl")]
    assert debouncer.state is DebounceState.IDLE


async def test_cancel_drops_pending_fire() -> None:
    fired: list[str] = []

    async def callback(change: str, path: str | None) -> None:
        fired.append(change)

    debouncer = Debouncer(0.05, callback)
    debouncer.trigger("add")
    debouncer.cancel()
    await asyncio.sleep(0.1)

    assert fired == []
    assert debouncer.state is DebounceState.IDLE
    assert debouncer.deadline is None


async def test_failing_callback_returns_to_idle() -> None:
    async def callback(change: str, path: str | None) -> None:
        raise OSError("listing failed")

    debouncer = Debouncer(0.01, callback)
    debouncer.trigger("unlink")
    await asyncio.sleep(0.05)
    await debouncer.wait_idle()

    assert debouncer.state is DebounceState.IDLE


# ---------------------------------------------------------------------------
# Filtering and change names
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("path", "allowed"),
    [
        ("/projects/-work-app/3f6c.jsonl", True),
        ("/projects/-work-app/node_modules/x.js", False),
        ("/projects/-work-app/.git/HEAD", False),
        ("/projects/-work-app/dist/bundle.js", False),
        ("/projects/-work-app/session.tmp", False),
        ("/projects/-work-app/.notes.swp", False),
        ("/projects/.DS_Store", False),
    ],
)
def test_projects_filter(path: str, allowed: bool) -> None:
    assert ProjectsFilter()(Change.modified, path) is allowed


def test_change_type_names(tmp_path) -> None:
    assert change_type(Change.added, str(tmp_path / "a.jsonl")) == "add"
    assert change_type(Change.added, str(tmp_path)) == "addDir"
    assert change_type(Change.modified, "/x") == "change"
    assert change_type(Change.deleted, "/x") == "unlink"


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------


async def test_broadcast_reaches_open_chat_clients(make_connection, lister, tmp_path) -> None:
    clients = ConnectedClientSet()
    open_a = make_connection(ConnectionKind.AGENT_CHAT)
    open_b = make_connection(ConnectionKind.AGENT_CHAT)
    closed = make_connection(ConnectionKind.AGENT_CHAT)
    closed.is_open = False
    for connection in (open_a, open_b, closed):
        clients.add(connection)

    broadcaster = ProjectsBroadcaster(tmp_path, lister, clients)
    delivered = await broadcaster.broadcast("add", str(tmp_path / "-work-app" / "new.jsonl"))

    assert delivered == 2
    assert lister.cache_clears == 1
    assert closed.frames == []
    frame = open_a.frames[0]
    assert frame.type == "projects_updated"
    assert frame.change_type == "add"
    assert frame.projects == [
        {
            "name": "-work-app",
            "path": "/work/app",
            "fullPath": "/p/-work-app",
            "sessionCount": 2,
            "lastActivity": None,
        }
    ]
    assert open_b.frames == open_a.frames


async def test_broadcast_with_no_clients(lister, tmp_path) -> None:
    broadcaster = ProjectsBroadcaster(tmp_path, lister, ConnectedClientSet())
    assert await broadcaster.broadcast("change") == 0


async def test_start_requires_existing_root(lister, tmp_path) -> None:
    broadcaster = ProjectsBroadcaster(tmp_path / "missing", lister, ConnectedClientSet())

    with pytest.raises(WatcherSetupError, match="does not exist"):
        await broadcaster.start()
    assert not broadcaster.running


async def test_start_and_stop(lister, tmp_path) -> None:
    broadcaster = ProjectsBroadcaster(tmp_path, lister, ConnectedClientSet(), debounce_ms=10)

    await broadcaster.start()
    assert broadcaster.running

    await broadcaster.stop()
    assert not broadcaster.running


async def test_unexpected_watch_failure_is_logged(lister, tmp_path, monkeypatch) -> None:
    async def broken_awatch(*args, **kwargs):
        raise ValueError("inotify went away")
        yield  # pragma: no cover

    monkeypatch.setattr("shellrelay.relay_server.watcher.awatch", broken_awatch)
    messages: list = []
    sink_id = logger.add(messages.append, level="ERROR")
    broadcaster = ProjectsBroadcaster(tmp_path, lister, ConnectedClientSet())
    try:
        await broadcaster.start()
        async with asyncio.timeout(2):
            while broadcaster.running:
                await asyncio.sleep(0.01)
    finally:
        logger.remove(sink_id)

    assert any("Project watcher crashed" in m.record["message"] for m in messages)
    await broadcaster.stop()
