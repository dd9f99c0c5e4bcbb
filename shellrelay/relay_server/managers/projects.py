"""Project listing read from the Claude projects directory.

Layout::

    <projects_root>/
        -home-alice-src-app/          # one directory per project (encoded cwd)
            3f6c...e1.jsonl           # one file per recorded agent session
            9a02...77.jsonl

The encoded directory name is lossy (``-`` stands for both ``/`` and a
literal dash), so the real working directory is taken from the ``cwd``
field recorded in the session files when available.  Resolved directories
are cached until ``clear_cache`` is called by the watcher.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from loguru import logger

from shellrelay.relay_server.models.project import ProjectRecord

_CWD_SCAN_LINES = 50


class ProjectLister(Protocol):
    """Source of the project listing sent with ``projects_updated``."""

    async def list_projects(self) -> list[ProjectRecord]: ...

    def clear_cache(self) -> None: ...


def decode_project_name(name: str) -> str:
    """Best-effort inverse of Claude's path encoding (``/`` -> ``-``)."""
    return name.replace("-", "/")


class ClaudeProjectsLister:
    """Scans ``projects_root`` for project directories and their session files."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()
        self._directory_cache: dict[str, str] = {}

    def clear_cache(self) -> None:
        self._directory_cache.clear()

    async def list_projects(self) -> list[ProjectRecord]:
        return await asyncio.to_thread(self._scan)

    # -- Scanning --------------------------------------------------------------

    def _scan(self) -> list[ProjectRecord]:
        if not self.root.is_dir():
            logger.debug("Projects root {} does not exist", self.root)
            return []
        records = [self._record(entry) for entry in self.root.iterdir() if entry.is_dir()]
        # Most recently active first; projects without sessions last.
        records.sort(key=lambda r: r.last_activity or datetime.min.replace(tzinfo=UTC), reverse=True)
        return records

    def _record(self, project_dir: Path) -> ProjectRecord:
        sessions = list(project_dir.glob("*.jsonl"))
        last_activity = None
        if sessions:
            newest = max(_mtime(s) for s in sessions)
            if newest:
                last_activity = datetime.fromtimestamp(newest, tz=UTC)
        return ProjectRecord(
            name=project_dir.name,
            path=self._project_directory(project_dir, sessions),
            full_path=str(project_dir),
            session_count=len(sessions),
            last_activity=last_activity,
        )

    def _project_directory(self, project_dir: Path, sessions: list[Path]) -> str:
        cached = self._directory_cache.get(project_dir.name)
        if cached is not None:
            return cached

        directory = None
        for session_file in sorted(sessions, key=_mtime, reverse=True):
            directory = _read_cwd(session_file)
            if directory:
                break
        directory = directory or decode_project_name(project_dir.name)
        self._directory_cache[project_dir.name] = directory
        return directory


def _mtime(path: Path) -> float:
    # Session files come and go while the watcher is firing.
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def _read_cwd(session_file: Path) -> str | None:
    """Return the first ``cwd`` recorded in a session file, if any."""
    try:
        with session_file.open(encoding="utf-8", errors="replace") as fh:
            for lineno, line in enumerate(fh):
                if lineno >= _CWD_SCAN_LINES:
                    break
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(record, dict) and isinstance(record.get("cwd"), str):
                    return record["cwd"]
    except OSError as exc:
        logger.debug("Cannot read {}: {}", session_file, exc)
    return None
