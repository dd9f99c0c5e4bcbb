"""Project directory watcher and ``projects_updated`` broadcaster.

Agent CLIs write session files under the projects root continuously while
they run.  Bursts of change events are collapsed by a ``Debouncer`` so that
connected chat clients receive one refreshed project listing per burst::

    IDLE --event--> PENDING(deadline) --event--> PENDING(deadline')
                        |
                        +--deadline--> FIRED --broadcast done--> IDLE
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from pathlib import Path

from loguru import logger
from watchfiles import Change, DefaultFilter, awatch

from shellrelay.relay_server.connections import ConnectedClientSet
from shellrelay.relay_server.managers.projects import ProjectLister
from shellrelay.relay_server.models.enums import DebounceState
from shellrelay.relay_server.models.frames import ProjectsUpdatedFrame


class WatcherSetupError(RuntimeError):
    """Raised when the projects root cannot be watched.  Live updates are disabled."""


class ProjectsFilter(DefaultFilter):
    """Skip build output, VCS internals and editor scratch files."""

    ignore_dirs = (*DefaultFilter.ignore_dirs, "node_modules", ".git", "dist", "build")
    ignore_entity_patterns = (
        *DefaultFilter.ignore_entity_patterns,
        r"\.tmp$",
        r"\.swp$",
        r"^\.DS_Store$",
    )


def change_type(change: Change, path: str) -> str:
    """Name a watchfiles change the way clients expect (``add``, ``change``, ...)."""
    match change:
        case Change.added:
            return "addDir" if Path(path).is_dir() else "add"
        case Change.modified:
            return "change"
        case Change.deleted:
            return "unlink"
    return str(change.name)


FireCallback = Callable[[str, str | None], Awaitable[None]]


class Debouncer:
    """Trailing-edge debounce with a single timer.

    Every ``trigger`` pushes the deadline back by ``delay`` seconds; the
    callback runs once, with the most recent change, after a quiet period.
    """

    def __init__(self, delay: float, callback: FireCallback) -> None:
        self.delay = delay
        self.state = DebounceState.IDLE
        self.deadline: float | None = None
        self.change_type: str | None = None
        self.changed_file: str | None = None
        self._callback = callback
        self._timer: asyncio.TimerHandle | None = None
        self._firing: asyncio.Task[None] | None = None

    def trigger(self, change_type: str, changed_file: str | None = None) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self.change_type = change_type
        self.changed_file = changed_file
        self.deadline = loop.time() + self.delay
        self._timer = loop.call_at(self.deadline, self._fire)
        self.state = DebounceState.PENDING

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._firing is not None and not self._firing.done():
            self._firing.cancel()
        self.deadline = None
        self.state = DebounceState.IDLE

    async def wait_idle(self) -> None:
        """Wait for an in-flight callback to complete.  Its failures are logged by ``_fired``."""
        if self._firing is not None:
            await asyncio.wait([self._firing])

    def _fire(self) -> None:
        self._timer = None
        self.deadline = None
        self.state = DebounceState.FIRED
        self._firing = asyncio.get_running_loop().create_task(
            self._callback(self.change_type or "change", self.changed_file)
        )
        self._firing.add_done_callback(self._fired)

    def _fired(self, task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Debounced callback failed")
        if self.state is DebounceState.FIRED:
            self.state = DebounceState.IDLE


class ProjectsBroadcaster:
    """Watches the projects root and pushes fresh listings to chat clients."""

    def __init__(
        self,
        root: Path,
        lister: ProjectLister,
        clients: ConnectedClientSet,
        *,
        debounce_ms: int = 300,
    ) -> None:
        self.root = root.expanduser()
        self._lister = lister
        self._clients = clients
        self.debouncer = Debouncer(debounce_ms / 1000, self.broadcast)
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Begin watching.  Raises ``WatcherSetupError`` if the root is unusable."""
        if not self.root.is_dir():
            msg = f"Projects root {self.root} does not exist"
            raise WatcherSetupError(msg)
        self._stop.clear()
        self._task = asyncio.create_task(self._watch())
        logger.info("Watching {} for project changes", self.root)

    async def stop(self) -> None:
        self._stop.set()
        self.debouncer.cancel()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _watch(self) -> None:
        try:
            async for changes in awatch(self.root, watch_filter=ProjectsFilter(), stop_event=self._stop):
                for change, path in changes:
                    self.debouncer.trigger(change_type(change, path), path)
        except (OSError, RuntimeError) as exc:
            logger.warning("Project watcher stopped, live updates disabled: {}", exc)
        except Exception:
            logger.exception("Project watcher crashed, live updates disabled")

    async def broadcast(self, change: str, changed_file: str | None = None) -> int:
        """Refresh the listing and send it to every chat client.  Returns clients reached."""
        self._lister.clear_cache()
        try:
            projects = await self._lister.list_projects()
        except OSError:
            logger.exception("Project listing failed; skipping broadcast")
            return 0

        frame = ProjectsUpdatedFrame(
            projects=[p.model_dump(mode="json", by_alias=True) for p in projects],
            change_type=change,
            changed_file=changed_file,
        )
        delivered = await self._clients.broadcast(frame)
        logger.debug("projects_updated ({} {}) sent to {} clients", change, changed_file, delivered)
        return delivered
