"""Session identity and caller identity models."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel

from shellrelay.relay_server.models.enums import Provider

FALLBACK_PREFIX = "project:"
SHELL_PREFIX = "shell:"


class Identity(BaseModel):
    """Authenticated caller, as returned by a ``TokenVerifier``."""

    username: str


def session_key_for(provider: Provider, project_path: str, session_id: str | None = None) -> str:
    """Derive the registry key for a session.

    An agent-issued ``session_id`` is the key when present.  Otherwise the key
    falls back to the working directory (``project:<path>``); plain shells use
    their own ``shell:<path>`` namespace so that a shell and a new agent
    session in the same project do not share a process.
    """
    if session_id:
        return session_id
    resolved = str(Path(project_path).expanduser().resolve())
    if provider is Provider.SHELL:
        return f"{SHELL_PREFIX}{resolved}"
    return f"{FALLBACK_PREFIX}{resolved}"
